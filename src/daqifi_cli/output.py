"""Output sink for rendered sample lines."""

from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from typing import Optional, TextIO, Union

from .formatting import OutputFormat

logger = logging.getLogger(__name__)


class OutputSink:
    """Line writer over stdout or a file, flushed after every line.

    Lines may arrive from the message path and the status path at the same
    time, possibly on different threads; a lock keeps each line whole. The
    optional header is written lazily, right before the first line, so a run
    that never receives data leaves an empty file rather than a lone header.
    """

    def __init__(
        self,
        stream: TextIO,
        *,
        header: Optional[str] = None,
        owns_stream: bool = False,
    ) -> None:
        self._stream = stream
        self._pending_header = header
        self._owns_stream = owns_stream
        self._lines_written = 0
        self._closed = False
        self._lock = threading.Lock()

    @classmethod
    def open(
        cls,
        path: Optional[Union[str, Path]],
        output_format: OutputFormat,
        stdout: Optional[TextIO] = None,
    ) -> "OutputSink":
        """Create a sink for ``path``, or for standard output when path is None.

        Files are truncated and written as UTF-8 without a byte-order mark.

        Raises:
            OSError: If the file cannot be created.
        """
        if path is None:
            return cls(stdout or sys.stdout, header=output_format.header)

        filepath = Path(path)
        handle = open(filepath, "w", newline="", encoding="utf-8")
        logger.info("Writing %s output to %s", output_format.value, filepath)
        return cls(handle, header=output_format.header, owns_stream=True)

    def write_line(self, line: str) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("Output sink is closed")
            if self._pending_header is not None:
                self._stream.write(self._pending_header + "\n")
                self._pending_header = None
            self._stream.write(line + "\n")
            self._stream.flush()
            self._lines_written += 1

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._stream.flush()
            finally:
                if self._owns_stream:
                    self._stream.close()

    @property
    def lines_written(self) -> int:
        """Number of data or status lines written, header excluded."""
        with self._lock:
            return self._lines_written
