"""Line labelling and progress reporting for child output."""

from __future__ import annotations

import asyncio
import dataclasses
import math
import time
from collections.abc import Sequence
from typing import Optional

import structlog

from workflow_engine.shell.runner import RunOptions, Writer, raise_for_exit, run

logger = structlog.get_logger(__name__)

_SIZE_UNITS = ("B", "kB", "MB", "GB", "TB", "PB", "EB")


def format_bytes(size: int) -> str:
    """Human readable SI size, e.g. ``83 MB`` or ``1.5 kB``."""
    if size < 10:
        return f"{size} B"
    exponent = min(int(math.floor(math.log(size) / math.log(1000))), len(_SIZE_UNITS) - 1)
    value = math.floor(size / 1000**exponent * 10 + 0.5) / 10
    if value < 10:
        return f"{value:.1f} {_SIZE_UNITS[exponent]}"
    return f"{value:.0f} {_SIZE_UNITS[exponent]}"


def _flush(writer: Writer) -> None:
    flush = getattr(writer, "flush", None)
    if flush is not None:
        flush()


class PrefixWriter:
    """Forward complete lines to ``dst`` as ``[label] line``, one write per line.

    A trailing partial line is held back until :meth:`flush`.
    """

    def __init__(self, dst: Writer, label: str) -> None:
        self._dst = dst
        self._prefix = f"[{label}] ".encode() if label else b""
        self._pending = b""

    def write(self, data: bytes) -> int:
        self._pending += data
        *lines, self._pending = self._pending.split(b"\n")
        for line in lines:
            self._emit(line)
        return len(data)

    def flush(self) -> None:
        if self._pending:
            pending, self._pending = self._pending, b""
            self._emit(pending)

    def _emit(self, line: bytes) -> None:
        self._dst.write(self._prefix + line.rstrip(b"\r") + b"\n")
        _flush(self._dst)


class TeeWriter:
    """Duplicate every write to each of the given writers."""

    def __init__(self, *writers: Writer) -> None:
        self._writers = writers

    def write(self, data: bytes) -> int:
        for writer in self._writers:
            writer.write(data)
        return len(data)

    def flush(self) -> None:
        for writer in self._writers:
            _flush(writer)


class SizeMonitorWriter:
    """Count bytes written through it and periodically report the running total."""

    def __init__(self, label: str, name: str, dst: Writer, interval: float = 1.0) -> None:
        self.label = label
        self.name = name
        self.interval = interval
        self.written = 0
        self._dst = dst

    def write(self, data: bytes) -> int:
        self.written += len(data)
        return len(data)

    def update(self) -> None:
        line = f"[{self.label}] File {self.name}: {format_bytes(self.written)} written\n"
        self._dst.write(line.encode())
        _flush(self._dst)

    async def monitor(self, stop: asyncio.Event) -> None:
        """Report every interval until ``stop`` is set, then report once more."""
        while True:
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                self.update()
                continue
            self.update()
            return


async def stream_stderr(
    argv: Sequence[str], dst: Writer, label: str, options: Optional[RunOptions] = None
) -> None:
    """Run ``argv`` with its stderr tagged line by line and copied to ``dst``.

    Raises the matching :mod:`workflow_engine.core.exceptions` error when the
    child does not exit cleanly.
    """
    options = dataclasses.replace(options or RunOptions(), stderr=PrefixWriter(dst, label), label=label)
    code = await run(argv, options)
    raise_for_exit(code, label or argv[0])


async def stream_stdout(
    argv: Sequence[str], dst: Writer, label: str, options: Optional[RunOptions] = None
) -> None:
    """Like :func:`stream_stderr` for tools that report progress on stdout."""
    options = dataclasses.replace(options or RunOptions(), stdout=PrefixWriter(dst, label), label=label)
    code = await run(argv, options)
    raise_for_exit(code, label or argv[0])


async def stream_elapsed(
    argv: Sequence[str],
    dst: Writer,
    interval: float,
    label: str,
    options: Optional[RunOptions] = None,
) -> None:
    """Run a noisy or quiet child, reporting only the elapsed time every ``interval`` seconds."""
    options = dataclasses.replace(options or RunOptions(), label=label)
    start = time.monotonic()

    async def ticker() -> None:
        while True:
            await asyncio.sleep(interval)
            elapsed = time.monotonic() - start
            dst.write(f"[{label}] running... elapsed={elapsed:.1f}s\n".encode())
            _flush(dst)

    ticking = asyncio.ensure_future(ticker())
    try:
        code = await run(argv, options)
    finally:
        ticking.cancel()
    raise_for_exit(code, label or argv[0])
