"""
Process run data models.
"""
import asyncio
import shlex
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any, Union


class StreamName(Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


class RunStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.PENDING, RunStatus.RUNNING)


@dataclass
class OutputChunk:
    """A piece of output as read from one of the child's streams."""
    stream: StreamName
    data: str
    seq: int

    def to_dict(self) -> dict:
        return {"stream": self.stream.value, "data": self.data, "seq": self.seq}


@dataclass
class TerminalStatus:
    """Final classification of a run. Exactly one is produced per run."""
    status: RunStatus
    exit_code: Optional[int] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCESS

    @property
    def timed_out(self) -> bool:
        return self.status == RunStatus.TIMEOUT

    @property
    def verdict(self) -> str:
        return {
            RunStatus.SUCCESS: "PASS",
            RunStatus.FAILURE: "FAIL",
            RunStatus.TIMEOUT: "TIMEOUT",
        }.get(self.status, "ERROR")

    def summary_line(self) -> str:
        if self.exit_code is not None:
            detail = f"exit code {self.exit_code}"
        else:
            detail = "exit code n/a"
        if self.error:
            detail += f", {self.error}"
        return f"Result: {self.verdict} ({detail})"

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "success": self.success,
            "exit_code": self.exit_code,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


RunItem = Union[OutputChunk, TerminalStatus]

# Queue marker for a cancellation request
CANCEL = object()


@dataclass
class ProcessRun:
    """One external command invocation."""
    command: str
    args: List[str] = field(default_factory=list)
    env_overlay: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    timeout: Optional[float] = None
    idle_timeout: Optional[float] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: RunStatus = RunStatus.PENDING
    exit_code: Optional[int] = None
    error: Optional[str] = None
    chunk_count: int = 0
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    _queue: "asyncio.Queue" = field(default_factory=asyncio.Queue, repr=False)
    _cancel_requested: bool = field(default=False, repr=False)

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.args]

    @property
    def display_command(self) -> str:
        return shlex.join(self.argv)

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def cancel(self) -> bool:
        """Ask the executing orchestrator to kill this run. Returns False if already finished."""
        if self.status.is_terminal or self._cancel_requested:
            return False
        self._cancel_requested = True
        self._queue.put_nowait((None, CANCEL))
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "command": self.display_command,
            "env_overlay": sorted(self.env_overlay),
            "cwd": self.cwd,
            "timeout": self.timeout,
            "idle_timeout": self.idle_timeout,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "error": self.error,
            "chunk_count": self.chunk_count,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class RunResult:
    """A drained run: every chunk in delivery order plus the terminal status."""
    chunks: List[OutputChunk]
    status: TerminalStatus

    @property
    def output(self) -> str:
        return "".join(c.data for c in self.chunks)

    @property
    def stdout(self) -> str:
        return "".join(c.data for c in self.chunks if c.stream == StreamName.STDOUT)

    @property
    def stderr(self) -> str:
        return "".join(c.data for c in self.chunks if c.stream == StreamName.STDERR)

    def tail(self, lines: int = 20) -> str:
        return "\n".join(self.output.splitlines()[-lines:])
