import asyncio
import sys
import time

import pytest

from scenario_runner.errors import ProcessSpawnError
from scenario_runner.runs.models import OutputChunk, RunStatus, StreamName, TerminalStatus
from scenario_runner.runs.orchestrator import ProcessRunOrchestrator
from scenario_runner.runs.process import build_env, spawn

PY = sys.executable


def script(code):
    return ["-c", code]


@pytest.fixture
def orchestrator():
    return ProcessRunOrchestrator(kill_grace=1)


class TestTerminalStatus:
    def test_summary_line_pass(self):
        status = TerminalStatus(status=RunStatus.SUCCESS, exit_code=0)
        assert status.summary_line() == "Result: PASS (exit code 0)"

    def test_summary_line_spawn_error(self):
        status = TerminalStatus(status=RunStatus.ERROR, error="Failed to start 'nope': No such file")
        assert status.summary_line() == "Result: ERROR (exit code n/a, Failed to start 'nope': No such file)"

    def test_verdicts(self):
        assert TerminalStatus(status=RunStatus.FAILURE, exit_code=2).verdict == "FAIL"
        assert TerminalStatus(status=RunStatus.TIMEOUT).verdict == "TIMEOUT"
        assert TerminalStatus(status=RunStatus.TIMEOUT).timed_out

    def test_terminal_statuses(self):
        assert not RunStatus.PENDING.is_terminal
        assert not RunStatus.RUNNING.is_terminal
        assert RunStatus.SUCCESS.is_terminal
        assert RunStatus.ERROR.is_terminal


class TestBuildEnv:
    def test_overlay_wins(self, monkeypatch):
        monkeypatch.setenv("CI", "false")
        monkeypatch.setenv("KEEP_ME", "1")
        env = build_env({"CI": "true"})
        assert env["CI"] == "true"
        assert env["KEEP_ME"] == "1"

    def test_no_overlay_copies_environment(self, monkeypatch):
        monkeypatch.setenv("KEEP_ME", "1")
        env = build_env()
        assert env["KEEP_ME"] == "1"


class TestSpawn:
    @pytest.mark.asyncio
    async def test_missing_executable(self):
        with pytest.raises(ProcessSpawnError) as exc:
            await spawn(["definitely-not-a-real-binary-xyz"])
        assert exc.value.command == "definitely-not-a-real-binary-xyz"

    @pytest.mark.asyncio
    async def test_empty_command(self):
        with pytest.raises(ProcessSpawnError):
            await spawn([])


class TestProcessRunOrchestrator:
    @pytest.mark.asyncio
    async def test_exit_zero_is_success(self, orchestrator):
        result = await orchestrator.collect(PY, script("print('hello')"))
        assert result.status.status == RunStatus.SUCCESS
        assert result.status.exit_code == 0
        assert result.stdout == "hello\n"

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_failure(self, orchestrator):
        result = await orchestrator.collect(PY, script("import sys; print('boom'); sys.exit(3)"))
        assert result.status.status == RunStatus.FAILURE
        assert result.status.exit_code == 3
        assert "boom" in result.output

    @pytest.mark.asyncio
    async def test_missing_command_yields_error_status(self, orchestrator):
        items = [item async for item in orchestrator.run("definitely-not-a-real-binary-xyz")]
        assert len(items) == 1
        status = items[0]
        assert isinstance(status, TerminalStatus)
        assert status.status == RunStatus.ERROR
        assert status.exit_code is None
        assert "definitely-not-a-real-binary-xyz" in status.error

    @pytest.mark.asyncio
    async def test_streams_are_tagged_and_ordered(self, orchestrator):
        code = (
            "import sys, time\n"
            "print('A', flush=True)\n"
            "time.sleep(0.2)\n"
            "print('B', file=sys.stderr, flush=True)\n"
            "time.sleep(0.2)\n"
            "print('C', flush=True)\n"
        )
        items = [item async for item in orchestrator.run(PY, script(code))]
        chunks = [i for i in items if isinstance(i, OutputChunk)]

        assert isinstance(items[-1], TerminalStatus)
        assert all(isinstance(i, OutputChunk) for i in items[:-1])
        assert "".join(c.data for c in chunks if c.stream == StreamName.STDOUT) == "A\nC\n"
        assert "".join(c.data for c in chunks if c.stream == StreamName.STDERR) == "B\n"
        seqs = [c.seq for c in chunks]
        assert seqs == sorted(set(seqs))

        def seq_of(text):
            return next(c.seq for c in chunks if text in c.data)

        assert seq_of("A") < seq_of("B") < seq_of("C")

    @pytest.mark.asyncio
    async def test_total_timeout_kills_process(self, orchestrator):
        start = time.monotonic()
        result = await orchestrator.collect(
            PY, script("import time; print('started', flush=True); time.sleep(30)"), timeout=0.5
        )
        elapsed = time.monotonic() - start

        assert result.status.status == RunStatus.TIMEOUT
        assert "timed out after 0.5s" in result.status.error
        assert result.stdout == "started\n"
        assert elapsed < 0.5 + orchestrator.kill_grace + 2

    @pytest.mark.asyncio
    async def test_idle_timeout(self, orchestrator):
        result = await orchestrator.collect(
            PY, script("import time; time.sleep(30)"), timeout=20, idle_timeout=0.3
        )
        assert result.status.status == RunStatus.TIMEOUT
        assert "no output for 0.3s" in result.status.error

    @pytest.mark.asyncio
    async def test_env_overlay_reaches_child(self, orchestrator, monkeypatch):
        monkeypatch.setenv("RUN_MARKER", "parent")
        result = await orchestrator.collect(
            PY,
            script("import os; print(os.environ['RUN_MARKER'], os.environ['CI'])"),
            env_overlay={"RUN_MARKER": "overlay", "CI": "true"},
        )
        assert result.stdout.strip() == "overlay true"

    @pytest.mark.asyncio
    async def test_cwd(self, orchestrator, tmp_path):
        result = await orchestrator.collect(PY, script("import os; print(os.getcwd())"), cwd=str(tmp_path))
        assert result.stdout.strip() == str(tmp_path.resolve())

    @pytest.mark.asyncio
    async def test_cancel_running_process(self, orchestrator):
        process_run = orchestrator.create_run(
            PY, script("import time; print('up', flush=True); time.sleep(30)")
        )
        statuses = []
        async for item in orchestrator.execute(process_run):
            if isinstance(item, OutputChunk):
                assert process_run.cancel()
            else:
                statuses.append(item)

        assert len(statuses) == 1
        assert statuses[0].status == RunStatus.ERROR
        assert statuses[0].error == "cancelled"
        assert process_run.status == RunStatus.ERROR
        assert not process_run.cancel()

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, orchestrator):
        process_run = orchestrator.create_run(PY, script("print('never')"))
        assert process_run.cancel()
        items = [item async for item in orchestrator.execute(process_run)]
        assert len(items) == 1
        assert items[0].error == "cancelled"

    @pytest.mark.asyncio
    async def test_run_cannot_execute_twice(self, orchestrator):
        process_run = orchestrator.create_run(PY, script("pass"))
        [item async for item in orchestrator.execute(process_run)]
        with pytest.raises(RuntimeError):
            [item async for item in orchestrator.execute(process_run)]

    @pytest.mark.asyncio
    async def test_consumer_stopping_early_kills_child(self, orchestrator):
        process_run = orchestrator.create_run(
            PY, script("import time\nwhile True:\n    print('tick', flush=True)\n    time.sleep(0.05)")
        )
        gen = orchestrator.execute(process_run)
        first = await gen.__anext__()
        assert isinstance(first, OutputChunk)
        await gen.aclose()

        assert process_run.status == RunStatus.ERROR
        assert process_run.error == "consumer stopped before completion"

    @pytest.mark.asyncio
    async def test_concurrent_runs_do_not_interleave(self, orchestrator):
        first, second = await asyncio.gather(
            orchestrator.collect(PY, script("print('one')")),
            orchestrator.collect(PY, script("print('two')")),
        )
        assert first.stdout == "one\n"
        assert second.stdout == "two\n"

    @pytest.mark.asyncio
    async def test_run_records_fields(self, orchestrator):
        process_run = orchestrator.create_run(PY, script("print('x')"), env_overlay={"CI": "true"})
        [item async for item in orchestrator.execute(process_run)]
        data = process_run.to_dict()
        assert data["status"] == "success"
        assert data["exit_code"] == 0
        assert data["chunk_count"] >= 1
        assert data["env_overlay"] == ["CI"]
        assert data["started_at"] and data["finished_at"]


class TestActiveRuns:
    @pytest.mark.asyncio
    async def test_registry_tracks_executing_runs(self, orchestrator):
        process_run = orchestrator.create_run(PY, script("print('x')"))
        assert orchestrator.active_runs() == []

        seen = []
        async for item in orchestrator.execute(process_run):
            if isinstance(item, OutputChunk):
                seen = orchestrator.active_runs()
        assert seen == [process_run]
        assert orchestrator.active_runs() == []
        assert orchestrator.get_run(process_run.id) is None

    @pytest.mark.asyncio
    async def test_cancel_by_id(self, orchestrator):
        process_run = orchestrator.create_run(
            PY, script("import time; print('up', flush=True); time.sleep(30)")
        )
        status = None
        async for item in orchestrator.execute(process_run):
            if isinstance(item, OutputChunk):
                assert orchestrator.cancel(process_run.id)
            else:
                status = item
        assert status.error == "cancelled"
        assert not orchestrator.cancel(process_run.id)

    def test_cancel_unknown(self, orchestrator):
        assert orchestrator.cancel("nope") is False


class TestUnstartableCommands:
    @pytest.mark.asyncio
    async def test_nul_byte_in_argument(self, orchestrator):
        items = [item async for item in orchestrator.run(PY, ["-c", "print(1)\x00"])]
        assert len(items) == 1
        assert items[0].status == RunStatus.ERROR
        assert items[0].exit_code is None
        assert "null byte" in items[0].error

    @pytest.mark.asyncio
    async def test_illegal_environment_name(self, orchestrator):
        result = await orchestrator.collect(PY, script("print(1)"), env_overlay={"A=B": "x"})
        assert result.chunks == []
        assert result.status.status == RunStatus.ERROR
        assert result.status.exit_code is None

    @pytest.mark.asyncio
    async def test_spawn_wraps_value_error(self):
        with pytest.raises(ProcessSpawnError):
            await spawn([PY, "-c", "\x00"])


class TestCancelAfterOutputClosed:
    @pytest.mark.asyncio
    async def test_cancel_reaches_child_without_pipes(self, orchestrator):
        process_run = orchestrator.create_run(
            PY, script("import os, time\nos.close(1)\nos.close(2)\ntime.sleep(30)"), timeout=60
        )

        async def drain():
            return [item async for item in orchestrator.execute(process_run)]

        task = asyncio.create_task(drain())
        await asyncio.sleep(1.0)
        assert orchestrator.cancel(process_run.id)

        start = time.monotonic()
        items = await asyncio.wait_for(task, timeout=10)
        assert time.monotonic() - start < orchestrator.kill_grace + 3
        assert items[-1].status == RunStatus.ERROR
        assert items[-1].error == "cancelled"
        assert orchestrator.active_runs() == []

    @pytest.mark.asyncio
    async def test_timeout_after_output_closed(self, orchestrator):
        result = await orchestrator.collect(
            PY, script("import os, time\nos.close(1)\nos.close(2)\ntime.sleep(30)"), timeout=0.8
        )
        assert result.status.status == RunStatus.TIMEOUT
        assert "timed out after 0.8s" in result.status.error
