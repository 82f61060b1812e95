from __future__ import annotations

import asyncio
import codecs
import logging
import os
import time

from .engine import OutputListener
from .types import (
    SPAWN_ERROR_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    ExecutionPlan,
    ExecutionResult,
)

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096
# Grandchildren may keep the pipes open after a kill.
_DRAIN_GRACE_SECONDS = 2.0


async def _drain(
    stream: asyncio.StreamReader | None,
    sink: bytearray,
    listener: OutputListener | None,
) -> None:
    """Copy a pipe into `sink` until EOF, forwarding decoded text to `listener`.

    Example:
        ```python
        await _drain(process.stdout, buffer, print)
        ```
    """
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        sink.extend(chunk)
        if listener is not None:
            text = decoder.decode(chunk)
            if text:
                listener(text)


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """Kill a still-running child and reap it.

    Example:
        ```python
        await _terminate(process)
        ```
    """
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


class ScriptSupervisor:
    """Run generated scripts as child processes with a wall-clock timeout.

    Example:
        ```python
        supervisor = ScriptSupervisor()
        result = await supervisor.execute(plan)
        ```
    """

    def __init__(self, *, inherit_environment: bool = True) -> None:
        """Configure how the child environment is built.

        Example:
            ```python
            supervisor = ScriptSupervisor(inherit_environment=False)
            ```
        """
        self._inherit_environment = inherit_environment

    async def execute(
        self,
        plan: ExecutionPlan,
        on_output: OutputListener | None = None,
    ) -> ExecutionResult:
        """Spawn the plan's script and wait for exit or timeout.

        Example:
            ```python
            result = await ScriptSupervisor().execute(
                ExecutionPlan("python3", script, script.parent, timeout_seconds=30)
            )
            ```
        """
        started = time.perf_counter()
        try:
            process = await asyncio.create_subprocess_exec(
                plan.executable,
                str(plan.script_path),
                cwd=str(plan.working_directory),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._child_environment(plan),
            )
        except OSError as exc:
            message = f"Failed to start {plan.executable}: {exc}"
            logger.error(message)
            return ExecutionResult(
                exit_code=SPAWN_ERROR_EXIT_CODE,
                stderr=message,
                spawn_error=message,
                duration_seconds=time.perf_counter() - started,
            )

        logger.debug("Started pid %s for %s", process.pid, plan.script_path)
        stdout = bytearray()
        stderr = bytearray()
        readers = asyncio.gather(
            _drain(process.stdout, stdout, on_output),
            _drain(process.stderr, stderr, None),
        )

        timed_out = False
        try:
            try:
                await asyncio.wait_for(process.wait(), timeout=plan.timeout_seconds)
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning("Script exceeded %ss timeout; killing pid %s", plan.timeout_seconds, process.pid)
                await _terminate(process)

            try:
                await asyncio.wait_for(readers, timeout=_DRAIN_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Output pipes still open after pid %s exited", process.pid)
        except BaseException:
            logger.warning("Run of pid %s interrupted; killing it", process.pid)
            await _terminate(process)
            readers.cancel()
            await asyncio.gather(readers, return_exceptions=True)
            raise

        returncode = process.returncode
        return ExecutionResult(
            exit_code=TIMEOUT_EXIT_CODE if timed_out else returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            timed_out=timed_out,
            signal_killed=timed_out or (returncode is not None and returncode < 0),
            duration_seconds=time.perf_counter() - started,
        )

    def _child_environment(self, plan: ExecutionPlan) -> dict[str, str]:
        """Build the child environment: host variables (optionally), then the plan's.

        Example:
            ```python
            env = supervisor._child_environment(plan)
            ```
        """
        env = dict(os.environ) if self._inherit_environment else {}
        env.setdefault("PYTHONIOENCODING", "utf-8")
        env.update(plan.environment)
        return env
