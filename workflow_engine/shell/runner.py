"""Child-process runner bound to a cancel scope.

``run`` starts one external command, wires its standard streams, waits for
it in the background and races that wait against the cancel scope. The
returned integer is either the child's exit status or one of the reserved
:class:`ExitCode` values.
"""

from __future__ import annotations

import asyncio
import io
import shlex
import time
from collections.abc import Sequence
from dataclasses import dataclass
from enum import IntEnum
from typing import IO, Any, Optional, Protocol

import structlog

from workflow_engine.core.exceptions import (
    ArtifactIOError,
    CommandCanceledError,
    CommandFailedError,
    ConfigurationError,
    KillFailedError,
    SpawnError,
)

logger = structlog.get_logger(__name__)

CHUNK_SIZE = 64 * 1024
KILL_GRACE_SECONDS = 1.0


class Writer(Protocol):
    def write(self, data: bytes, /) -> Any: ...


class ExitCode(IntEnum):
    OK = 0
    KILL_FAILURE = 230
    CONTEXT_CANCEL = 231
    UNKNOWN = 232
    BAD_CONFIGURATION = 299


class CancelScope:
    """Cancellation handle shared by every child a task starts.

    The scope fires when ``cancel`` is called or when the optional timeout
    (seconds, measured from construction) elapses.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._event = asyncio.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
        return self._event.is_set()

    async def wait(self) -> None:
        if self._deadline is None:
            await self._event.wait()
            return
        remaining = max(self._deadline - time.monotonic(), 0.0)
        try:
            await asyncio.wait_for(self._event.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            self._event.set()


@dataclass(slots=True)
class RunOptions:
    """I/O endpoints and lifecycle switches for one child process.

    ``stdout``/``stderr`` of None inherit the parent's stream. Writers backed
    by a real file descriptor are handed to the child directly, anything else
    is fed through a pipe.
    """

    dry_run: bool = False
    stdin: bytes | IO[bytes] | None = None
    stdout: Optional[Writer] = None
    stderr: Optional[Writer] = None
    scope: Optional[CancelScope] = None
    label: str = ""
    error_only: bool = False


def _file_descriptor(endpoint: Any) -> Optional[int]:
    fileno = getattr(endpoint, "fileno", None)
    if fileno is None:
        return None
    try:
        fd = fileno()
    except (OSError, ValueError):
        return None
    flush = getattr(endpoint, "flush", None)
    if flush is not None:
        flush()
    return fd


async def _pump(reader: Optional[asyncio.StreamReader], writer: Writer) -> None:
    if reader is None:
        return
    while True:
        chunk = await reader.read(CHUNK_SIZE)
        if not chunk:
            break
        writer.write(chunk)
    flush = getattr(writer, "flush", None)
    if flush is not None:
        flush()


async def _feed(process: asyncio.subprocess.Process, data: bytes) -> None:
    if process.stdin is None:
        return
    try:
        process.stdin.write(data)
        await process.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("shell.stdin_closed_early")
    finally:
        process.stdin.close()


def _endpoint(writer: Optional[Writer]) -> tuple[Any, Optional[Writer]]:
    """Return the subprocess argument for ``writer`` and the writer to pump into, if any."""
    if writer is None:
        return None, None
    fd = _file_descriptor(writer)
    if fd is not None:
        return fd, None
    return asyncio.subprocess.PIPE, writer


async def run(argv: Sequence[str], options: Optional[RunOptions] = None) -> int:
    """Run ``argv`` and return its exit code.

    Dry run logs the command and returns ``ExitCode.OK`` without spawning.
    """
    options = options or RunOptions()
    command = shlex.join(argv)
    log = logger.bind(command=command, label=options.label)
    log.info("shell.exec", dry_run=options.dry_run, errors_only=options.error_only)

    if not argv or not argv[0]:
        log.error("shell.bad_configuration", reason="empty command")
        return _finish(ExitCode.BAD_CONFIGURATION, options, None)

    if options.dry_run:
        return ExitCode.OK

    stderr_buffer: Optional[io.BytesIO] = None
    stdout_arg, stdout_pump = _endpoint(options.stdout)
    if options.error_only:
        stderr_buffer = io.BytesIO()
        stderr_arg, stderr_pump = asyncio.subprocess.PIPE, stderr_buffer
    else:
        stderr_arg, stderr_pump = _endpoint(options.stderr)

    stdin_data: Optional[bytes] = None
    if isinstance(options.stdin, (bytes, bytearray)):
        stdin_arg = asyncio.subprocess.PIPE
        stdin_data = bytes(options.stdin)
    elif options.stdin is not None:
        stdin_arg = _file_descriptor(options.stdin)
        if stdin_arg is None:
            stdin_arg = asyncio.subprocess.PIPE
            stdin_data = options.stdin.read()
    else:
        stdin_arg = asyncio.subprocess.DEVNULL

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=stdin_arg,
            stdout=stdout_arg,
            stderr=stderr_arg,
        )
    except OSError as exc:
        log.error("shell.spawn_failed", error=str(exc), error_type=type(exc).__name__)
        return _finish(ExitCode.UNKNOWN, options, stderr_buffer)

    pumps = []
    if stdout_pump is not None:
        pumps.append(asyncio.ensure_future(_pump(process.stdout, stdout_pump)))
    if stderr_pump is not None:
        pumps.append(asyncio.ensure_future(_pump(process.stderr, stderr_pump)))
    if stdin_data is not None:
        pumps.append(asyncio.ensure_future(_feed(process, stdin_data)))

    async def wait_child() -> int:
        if pumps:
            await asyncio.gather(*pumps)
        return await process.wait()

    waiter = asyncio.ensure_future(wait_child())
    canceler = asyncio.ensure_future(options.scope.wait()) if options.scope is not None else None
    watched = {waiter} if canceler is None else {waiter, canceler}
    try:
        done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
        returncode = waiter.result() if waiter in done else None
    except BaseException as exc:
        await _reap(process, waiter, pumps, log)
        if isinstance(exc, OSError):
            raise ArtifactIOError(
                f"cannot forward output of {argv[0]}: {exc}",
                details={"command": command, "label": options.label},
            ) from exc
        raise
    finally:
        if canceler is not None:
            canceler.cancel()

    if waiter in done:
        return _finish(_classify(returncode, log), options, stderr_buffer)

    log.warning("shell.canceled", pid=process.pid)
    try:
        process.kill()
    except ProcessLookupError:
        log.debug("shell.already_exited", pid=process.pid)
    except OSError as exc:
        log.error("shell.kill_failed", pid=process.pid, error=str(exc))
        waiter.cancel()
        return _finish(ExitCode.KILL_FAILURE, options, stderr_buffer)

    # grandchildren may keep the pipes open after the kill
    await asyncio.wait({waiter}, timeout=KILL_GRACE_SECONDS)
    if not waiter.done():
        log.warning("shell.pipes_still_open", pid=process.pid)
        waiter.cancel()
        for pump in pumps:
            pump.cancel()
    return _finish(ExitCode.CONTEXT_CANCEL, options, stderr_buffer)


async def _reap(
    process: asyncio.subprocess.Process,
    waiter: asyncio.Future,
    pumps: list[asyncio.Future],
    log: Any,
) -> None:
    """Kill and wait for a child whose run was interrupted before it exited."""
    waiter.cancel()
    for pump in pumps:
        pump.cancel()
    if process.returncode is None:
        log.warning("shell.abandoned", pid=process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            log.debug("shell.already_exited", pid=process.pid)
    try:
        await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        # grandchildren may keep the pipes open after the kill
        log.warning("shell.pipes_still_open", pid=process.pid)


def _classify(returncode: Optional[int], log: Any) -> int:
    if returncode is None:
        return ExitCode.UNKNOWN
    if returncode < 0:
        log.error("shell.terminated_by_signal", signal=-returncode)
        return ExitCode.UNKNOWN
    return returncode


def _finish(code: int, options: RunOptions, stderr_buffer: Optional[io.BytesIO]) -> int:
    if code == ExitCode.OK:
        return code

    if stderr_buffer is not None and options.stderr is not None:
        logger.warning("shell.dump_stderr", label=options.label, exit_code=int(code))
        options.stderr.write(stderr_buffer.getvalue())
        flush = getattr(options.stderr, "flush", None)
        if flush is not None:
            flush()

    return code


def raise_for_exit(code: int, name: str) -> None:
    """Translate a runner exit code into the matching exception."""
    if code == ExitCode.OK:
        return
    message = f"{name} non-zero exit code: {int(code)}"
    if code == ExitCode.CONTEXT_CANCEL:
        raise CommandCanceledError(f"{name} canceled before completion", exit_code=code)
    if code == ExitCode.KILL_FAILURE:
        raise KillFailedError(f"{name} could not be terminated after cancel", exit_code=code)
    if code == ExitCode.UNKNOWN:
        raise SpawnError(f"{name} could not be started or failed unexpectedly", exit_code=code)
    if code == ExitCode.BAD_CONFIGURATION:
        raise ConfigurationError(message, details={"exit_code": int(code)})
    raise CommandFailedError(message, exit_code=code)
