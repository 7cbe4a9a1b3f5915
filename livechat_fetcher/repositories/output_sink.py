from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from threading import Lock
from typing import Any, Protocol, TextIO

from livechat_fetcher.errors import ConfigurationError, DurabilityError
from livechat_fetcher.models.chat import Page

LOGGER = logging.getLogger("livechat_fetcher.output")


class OutputSink(Protocol):
    def emit(self, page: Page) -> None:
        ...

    def last_record(self) -> str | None:
        ...

    def close(self) -> None:
        ...


def serialize_record(page: Page) -> str:
    return json.dumps(page.to_record(), ensure_ascii=False, separators=(",", ":"))


class FileOutputSink:
    """Append-only JSON-lines log; one line per delivered page."""

    def __init__(self, path: Path) -> None:
        self._path = path.expanduser()
        self._lock = Lock()
        self._closed = False
        self._drop_torn_tail()
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._stream: Any = self._path.open("a", encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(
                f"Failed to open output file '{self._path}': {exc}"
            ) from exc

    @property
    def path(self) -> Path:
        return self._path

    def emit(self, page: Page) -> None:
        line = serialize_record(page) + "\n"
        with self._lock:
            if self._closed:
                raise DurabilityError(f"Output file '{self._path}' is already closed")
            try:
                self._stream.write(line)
                self._stream.flush()
                os.fsync(self._stream.fileno())
            except OSError as exc:
                raise DurabilityError(
                    f"Failed to append to output file '{self._path}': {exc}"
                ) from exc

    def last_record(self) -> str | None:
        """Return the last complete, non-blank line, or None for a new log."""
        try:
            with self._path.open("r", encoding="utf-8") as stream:
                last_line: str | None = None
                for line in stream:
                    if not line.endswith("\n"):
                        break
                    if line.strip():
                        last_line = line.strip()
                return last_line
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise DurabilityError(f"Failed to read output file '{self._path}': {exc}") from exc

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._stream.close()

    def _drop_torn_tail(self) -> None:
        try:
            with self._path.open("rb+") as stream:
                size = stream.seek(0, os.SEEK_END)
                if size == 0:
                    return
                stream.seek(size - 1)
                if stream.read(1) == b"\n":
                    return
                # Walk back to the end of the last complete line.
                position = size
                keep = 0
                while position > 0:
                    chunk_start = max(0, position - 4096)
                    stream.seek(chunk_start)
                    chunk = stream.read(position - chunk_start)
                    newline_index = chunk.rfind(b"\n")
                    if newline_index != -1:
                        keep = chunk_start + newline_index + 1
                        break
                    position = chunk_start
                LOGGER.warning(
                    "output file ends with a partial record; truncating path=%s bytes=%s",
                    self._path,
                    size - keep,
                )
                stream.truncate(keep)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise ConfigurationError(
                f"Failed to open output file '{self._path}': {exc}"
            ) from exc


class StdoutOutputSink:
    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._lock = Lock()

    def emit(self, page: Page) -> None:
        line = serialize_record(page) + "\n"
        with self._lock:
            try:
                self._stream.write(line)
                self._stream.flush()
            except (OSError, ValueError) as exc:
                raise DurabilityError(f"Failed to write to stdout: {exc}") from exc

    def last_record(self) -> str | None:
        return None

    def close(self) -> None:
        with self._lock:
            try:
                self._stream.flush()
            except (OSError, ValueError):
                LOGGER.debug("stdout flush on close failed", exc_info=True)
