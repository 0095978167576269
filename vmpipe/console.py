"""Console capture for vmpipe: a background drain into a searchable log."""

from __future__ import annotations

import itertools
import os
import re
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Iterable, Iterator, List, Optional

from vmpipe.constants import CONSOLE_BUFFER_LINES, CONSOLE_MAX_LINE_LENGTH
from vmpipe.utils import log


class ConsoleLog:
    """Thread-safe console buffer mirrored byte-for-byte to ``path``.

    Only the newest ``max_lines`` lines stay in memory; the file keeps
    everything.
    """

    def __init__(
        self,
        path: Path,
        max_lines: int = CONSOLE_BUFFER_LINES,
        max_line_length: int = CONSOLE_MAX_LINE_LENGTH,
    ) -> None:
        self.path = path
        self._sink = open(path, "wb")
        self._lines: Deque[str] = deque(maxlen=max_lines)
        self._dropped = 0
        self._max_line_length = max_line_length
        self._partial = ""
        self._eof = False
        self._cond = threading.Condition()

    def feed(self, chunk: bytes) -> None:
        with self._cond:
            if not self._sink.closed:
                self._sink.write(chunk)
                self._sink.flush()
            text = self._partial + chunk.decode("utf-8", errors="replace").replace("\r", "")
            *complete, self._partial = text.split("\n")
            while len(self._partial) > self._max_line_length:
                complete.append(self._partial[: self._max_line_length])
                self._partial = self._partial[self._max_line_length :]
            for line in complete:
                if len(self._lines) == self._lines.maxlen:
                    self._dropped += 1
                self._lines.append(line)
            self._cond.notify_all()

    @property
    def dropped(self) -> int:
        """Lines evicted from memory so far."""
        with self._cond:
            return self._dropped

    def mark_eof(self) -> None:
        with self._cond:
            self._eof = True
            self._cond.notify_all()

    @property
    def eof(self) -> bool:
        with self._cond:
            return self._eof

    def lines(self) -> List[str]:
        with self._cond:
            return list(self._lines) + ([self._partial] if self._partial else [])

    def text(self) -> str:
        return "\n".join(self.lines())

    def tail(self, count: int = 50) -> str:
        return "\n".join(self.lines()[-count:])

    def wait_for(
        self,
        pattern: "re.Pattern[str]",
        timeout: float,
        abort: Optional[Callable[[], bool]] = None,
    ) -> Optional[str]:
        """Block until a console line matches ``pattern``.

        Returns the matching line, or None when the timeout elapses, the
        stream reaches EOF, or ``abort`` returns True.
        """
        deadline = time.monotonic() + timeout
        # absolute line number across evictions
        scanned = 0
        with self._cond:
            while True:
                start = max(scanned - self._dropped, 0)
                for line in itertools.islice(self._lines, start, None):
                    if pattern.search(line):
                        return line
                scanned = self._dropped + len(self._lines)
                if self._partial and pattern.search(self._partial):
                    return self._partial
                if self._eof:
                    return None
                if abort is not None and abort():
                    return None
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(min(remaining, 0.5))

    def close(self) -> None:
        with self._cond:
            if not self._sink.closed:
                self._sink.close()


def read_fd(fd: int, chunk_size: int = 4096) -> Iterator[bytes]:
    while True:
        try:
            chunk = os.read(fd, chunk_size)
        except OSError:
            return
        if not chunk:
            return
        yield chunk


def follow_file(
    path: Path,
    stop: threading.Event,
    interval: float = 0.2,
    appear_timeout: float = 30.0,
) -> Iterator[bytes]:
    """Yield data appended to ``path`` until ``stop`` is set."""
    deadline = time.monotonic() + appear_timeout
    while not path.exists():
        if stop.is_set() or time.monotonic() > deadline:
            return
        time.sleep(interval)
    with open(path, "rb") as fh:
        while True:
            chunk = fh.read(4096)
            if chunk:
                yield chunk
                continue
            if stop.is_set():
                return
            time.sleep(interval)


class ConsoleDrain:
    """Drain ``source`` into ``console`` on a daemon thread."""

    def __init__(self, console: ConsoleLog, source: Iterable[bytes], name: str = "console-drain") -> None:
        self.console = console
        self._source = source
        self._error: Optional[BaseException] = None
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def _run(self) -> None:
        try:
            for chunk in self._source:
                self.console.feed(chunk)
        except (OSError, ValueError) as exc:
            self._error = exc
            log("ERROR", f"Console capture failed: {exc}")
        finally:
            self.console.mark_eof()

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: float = 5.0) -> None:
        if self._thread.is_alive():
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()
