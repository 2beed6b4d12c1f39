"""
Subprocess helpers: spawning with an environment overlay and tree termination.
"""
import asyncio
import os
from typing import Dict, Optional, Sequence

import psutil

from ..errors import ProcessSpawnError
from ..logging_config import get_logger

logger = get_logger("scenario_runner.runs.process")


def build_env(overlay: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Current process environment with ``overlay`` applied on top."""
    env = dict(os.environ)
    if overlay:
        env.update({str(k): str(v) for k, v in overlay.items()})
    return env


async def spawn(
    argv: Sequence[str],
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
) -> asyncio.subprocess.Process:
    """Start ``argv`` with piped output, raising ProcessSpawnError if it cannot start."""
    if not argv or not argv[0]:
        raise ProcessSpawnError("", "empty command")
    try:
        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=cwd,
        )
    except OSError as e:
        raise ProcessSpawnError(argv[0], e.strerror or str(e)) from e
    except ValueError as e:
        # NUL bytes in argv or an unusable environment variable name
        raise ProcessSpawnError(argv[0], str(e)) from e


def _descendants(pid: int):
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.Error:
        return []


async def terminate_tree(proc: asyncio.subprocess.Process, grace: float = 5.0):
    """
    Stop a subprocess and everything it spawned.

    Sends SIGTERM to the whole tree, waits up to ``grace`` seconds for the
    direct child, then SIGKILLs whatever is left.
    """
    children = _descendants(proc.pid) if proc.returncode is None else []

    for child in children:
        try:
            child.terminate()
        except psutil.Error:
            pass
    if proc.returncode is None:
        try:
            proc.terminate()
        except ProcessLookupError:
            pass

    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
    except asyncio.TimeoutError:
        logger.warning(f"Process {proc.pid} ignored SIGTERM for {grace:g}s, killing")
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()

    for child in children:
        try:
            if child.is_running():
                child.kill()
        except psutil.Error:
            pass
