"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shlex
from asyncio.subprocess import Process

from prompt_relay.dispatch.backend.base import (
    BackendRunError,
    OutputChunk,
    ProcessRunRequest,
    ProcessRunResult,
)
from prompt_relay.dispatch.models import BackendDescriptor, StopReason

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 4096
TERMINATE_GRACE_SECONDS = 2.0
EXIT_COMMAND_NOT_FOUND = 127
EXIT_CANNOT_EXECUTE = 126


class ProcessBackend:
    """Run the backend command with the prompt appended as the last argument."""

    async def run(self, request: ProcessRunRequest) -> ProcessRunResult:
        argv = build_run_args(request.backend, request.prompt)
        env = os.environ.copy()
        env.update(request.backend.env_vars)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(request.workspace_path) if request.workspace_path else None,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"CLI backend command not found: {argv[0]}",
                exit_code=EXIT_COMMAND_NOT_FOUND,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"CLI backend failed to start: {error}",
                exit_code=EXIT_CANNOT_EXECUTE,
            ) from error

        return await _supervise(process, request)


def build_run_args(backend: BackendDescriptor, prompt: str) -> list[str]:
    """Render ``command + args + [prompt]`` as an argv list."""

    command = (backend.command or "").strip()
    if not command:
        raise BackendRunError(
            f"CLI backend {backend.id!r} has no command configured.",
            exit_code=EXIT_CANNOT_EXECUTE,
        )
    return [*shlex.split(command), *backend.args, prompt]


async def _supervise(process: Process, request: ProcessRunRequest) -> ProcessRunResult:
    chunks: list[str] = []
    reader = asyncio.create_task(_pump_output(process, chunks, request))
    waiter = asyncio.create_task(process.wait())
    stopper = asyncio.create_task(request.stop_requested.wait())

    stop_reason: StopReason | None = None
    try:
        done, _ = await asyncio.wait(
            {waiter, stopper},
            timeout=request.timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if waiter not in done:
            stop_reason = StopReason.USER if stopper in done else StopReason.TIMEOUT
            if stop_reason is StopReason.TIMEOUT:
                logger.warning(
                    "Backend %s timed out after %.1fs; terminating pid %s",
                    request.backend.id,
                    request.timeout_seconds,
                    process.pid,
                )
            await _terminate_process(process)
    except asyncio.CancelledError:
        logger.warning(
            "Run on backend %s cancelled; terminating pid %s",
            request.backend.id,
            process.pid,
        )
        await asyncio.shield(_terminate_process(process))
        reader.cancel()
        waiter.cancel()
        raise
    finally:
        stopper.cancel()

    await reader
    exit_code = await waiter
    return ProcessRunResult(exit_code=exit_code, output="".join(chunks), stop_reason=stop_reason)


async def _pump_output(
    process: Process,
    chunks: list[str],
    request: ProcessRunRequest,
) -> None:
    if process.stdout is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await process.stdout.read(READ_CHUNK_BYTES)
        text = decoder.decode(data, final=not data)
        if text:
            chunks.append(text)
            if request.on_output is not None:
                request.on_output(OutputChunk(text=text))
        if not data:
            return


async def _terminate_process(process: Process) -> None:
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
