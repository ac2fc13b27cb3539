"""Line sources - lazy, in-order sequences of lines appended to a file."""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Optional, Sequence, Union

from ..exceptions import SourceExitedError, SourceUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_TAIL_COMMAND = ("tail", "-F", "-n", "0")


class LineSource(ABC):
    """Base class for line sources.

    lines() starts a fresh run each time it is called and yields lines
    without their terminator, beginning at the end of the file. A run ends
    only by raising a SourceError: SourceExitedError when respawning may help,
    SourceUnavailableError when it will not.
    """

    def __init__(self, path: Union[str, Path], encoding: str = "utf-8"):
        self._path = Path(path)
        self._encoding = encoding

    @property
    def path(self) -> Path:
        """Get the followed file path."""
        return self._path

    @abstractmethod
    def lines(self) -> AsyncIterator[str]:
        """Start a run and iterate over new lines."""

    def _decode(self, raw: bytes) -> str:
        return raw.decode(self._encoding, errors="replace").rstrip("\r\n")


class TailProcessSource(LineSource):
    """Follow a file by running ``tail -F`` and reading its stdout.

    Usage:
        source = TailProcessSource("/var/log/app.log")
        async for line in source.lines():
            print(line)
    """

    def __init__(
        self,
        path: Union[str, Path],
        command: Sequence[str] = DEFAULT_TAIL_COMMAND,
        encoding: str = "utf-8",
        max_line_bytes: int = 1024 * 1024
    ):
        """Initialize the process source.

        Args:
            path: File to follow. Appended to the command line.
            command: Command and arguments that print appended lines.
            encoding: Encoding of the file. Invalid bytes are replaced.
            max_line_bytes: Longest line accepted; longer lines are skipped.
        """
        super().__init__(path, encoding)
        if not command:
            raise ValueError("command must not be empty")
        self._command = tuple(command)
        self._max_line_bytes = max_line_bytes

    @property
    def argv(self) -> Sequence[str]:
        """Get the full command line."""
        return (*self._command, str(self._path))

    async def lines(self) -> AsyncIterator[str]:
        argv = self.argv
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self._max_line_bytes
            )
        except (FileNotFoundError, PermissionError) as e:
            raise SourceUnavailableError(f"Cannot run {argv[0]!r}: {e}") from e

        logger.info("Stream created! %s (pid %d)", " ".join(argv), process.pid)
        stderr_task = asyncio.create_task(self._drain_stderr(process))
        try:
            while True:
                try:
                    raw = await process.stdout.readline()
                except ValueError:
                    logger.warning("Skipped a line longer than %d bytes", self._max_line_bytes)
                    continue
                if not raw:
                    break
                yield self._decode(raw)

            returncode = await process.wait()
            last_error = await stderr_task
            message = f"{argv[0]} exited with status {returncode}"
            if last_error:
                message = f"{message}: {last_error}"
            raise SourceExitedError(message, returncode=returncode)
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> Optional[str]:
        """Log the process stderr and return its last line."""
        last_line = None
        while True:
            raw = await process.stderr.readline()
            if not raw:
                return last_line
            last_line = self._decode(raw)
            logger.warning("%s: %s", self._command[0], last_line)


class FileFollowSource(LineSource):
    """Follow a file by polling it, without an external process.

    Partial lines are held back until their newline arrives. The file is
    reopened from the start when it is truncated or replaced. A path that
    stays missing for longer than missing_file_timeout ends the run.
    """

    def __init__(
        self,
        path: Union[str, Path],
        poll_interval: float = 0.25,
        missing_file_timeout: float = 5.0,
        from_start: bool = False,
        encoding: str = "utf-8",
        max_line_bytes: int = 1024 * 1024
    ):
        """Initialize the polling source.

        Args:
            path: File to follow.
            poll_interval: Seconds to sleep when no new data is available.
            missing_file_timeout: Seconds the path may be absent, as between
                the rename and re-create of a rotation, before giving up.
            from_start: Emit existing content before following.
            encoding: Encoding of the file. Invalid bytes are replaced.
            max_line_bytes: Lines longer than this are emitted in pieces.
        """
        super().__init__(path, encoding)
        self._poll_interval = poll_interval
        self._missing_file_timeout = missing_file_timeout
        self._from_start = from_start
        self._max_line_bytes = max_line_bytes

    async def lines(self) -> AsyncIterator[str]:
        handle = self._open()
        try:
            if not self._from_start:
                handle.seek(0, os.SEEK_END)
            inode = os.fstat(handle.fileno()).st_ino
            partial = b""
            missing_since: Optional[float] = None

            while True:
                chunk = handle.readline(self._max_line_bytes)
                if chunk:
                    partial += chunk
                    if partial.endswith(b"\n") or len(partial) >= self._max_line_bytes:
                        yield self._decode(partial)
                        partial = b""
                    continue

                try:
                    stat = os.stat(self._path)
                except FileNotFoundError:
                    # Mid-rotation: wait a bounded time for the new file.
                    now = asyncio.get_running_loop().time()
                    if missing_since is None:
                        missing_since = now
                    elif now - missing_since >= self._missing_file_timeout:
                        raise SourceExitedError(f"{self._path} was removed")
                    await asyncio.sleep(self._poll_interval)
                    continue
                missing_since = None

                if stat.st_ino != inode:
                    logger.info("%s was replaced; following new file", self._path)
                    if partial:
                        yield self._decode(partial)
                        partial = b""
                    handle.close()
                    handle = self._open()
                    inode = os.fstat(handle.fileno()).st_ino
                    continue

                if stat.st_size < handle.tell():
                    logger.info("%s was truncated", self._path)
                    handle.seek(0)
                    partial = b""
                    continue

                await asyncio.sleep(self._poll_interval)
        finally:
            handle.close()

    def _open(self) -> BinaryIO:
        try:
            return open(self._path, "rb")
        except FileNotFoundError as e:
            raise SourceExitedError(f"{self._path} not found") from e
        except PermissionError as e:
            raise SourceUnavailableError(f"Cannot read {self._path}: {e}") from e


def create_source(
    kind: str,
    path: Union[str, Path],
    command: Sequence[str] = DEFAULT_TAIL_COMMAND,
    poll_interval: float = 0.25,
    missing_file_timeout: float = 5.0,
    max_line_bytes: int = 1024 * 1024
) -> LineSource:
    """Create a line source by name ("process" or "poll")."""
    if kind == "process":
        return TailProcessSource(path, command=command, max_line_bytes=max_line_bytes)
    if kind == "poll":
        return FileFollowSource(
            path,
            poll_interval=poll_interval,
            missing_file_timeout=missing_file_timeout,
            max_line_bytes=max_line_bytes
        )
    raise ValueError(f"Unknown source kind: {kind!r}")
