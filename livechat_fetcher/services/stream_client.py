from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Protocol

from livechat_fetcher.errors import (
    ChatNotFoundError,
    FetcherError,
    InitialConnectionError,
    TransportError,
)
from livechat_fetcher.models.chat import Page, StreamCursor
from livechat_fetcher.repositories.output_sink import OutputSink
from livechat_fetcher.services.credentials import CredentialProvider
from livechat_fetcher.services.stream_transport import ChatStream, StreamTransport
from livechat_fetcher.telemetry import TelemetryClient

LOGGER = logging.getLogger("livechat_fetcher.stream")


class StreamState(StrEnum):
    CONNECTING_INITIAL = "connecting_initial"
    STREAMING = "streaming"
    FAULTED = "faulted"
    CONNECTING_RESUME = "connecting_resume"
    TERMINATED = "terminated"


class ReconnectDelay(Protocol):
    def seconds_for(self, attempt: int) -> float:
        ...


@dataclass(frozen=True)
class FixedDelay:
    seconds: float

    def seconds_for(self, attempt: int) -> float:
        _ = attempt
        return max(0.0, self.seconds)


@dataclass(frozen=True)
class ExponentialBackoff:
    base_seconds: float
    max_seconds: float

    def seconds_for(self, attempt: int) -> float:
        exponent = max(0, attempt - 1)
        return min(self.max_seconds, max(0.0, self.base_seconds) * (2**exponent))


@dataclass(frozen=True)
class StreamRunResult:
    cursor: StreamCursor
    pages_delivered: int
    messages_delivered: int
    reconnects: int
    stopped: bool


class ReconnectingStreamClient:
    """Streams a live chat feed into an output sink, resuming after faults.

    The very first connection of a run is fail-fast: any error there ends the
    run with ``InitialConnectionError``. Once a connection has succeeded, stream
    faults move to ``FAULTED``, wait the reconnect delay and reopen the stream at
    the last delivered cursor, forever. ``stop()`` may be called from any thread.
    """

    def __init__(
        self,
        *,
        transport: StreamTransport,
        credentials: CredentialProvider,
        sink: OutputSink,
        cursor: StreamCursor,
        reconnect_delay: ReconnectDelay,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._transport = transport
        self._credentials = credentials
        self._sink = sink
        self._cursor = cursor
        self._reconnect_delay = reconnect_delay
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._stop_event = threading.Event()
        self._state = StreamState.CONNECTING_INITIAL
        self._pages_delivered = 0
        self._messages_delivered = 0
        self._reconnects = 0

    @property
    def cursor(self) -> StreamCursor:
        return self._cursor

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> StreamRunResult:
        stream: ChatStream | None = None
        pages: Iterator[Page] | None = None
        fault_attempt = 0

        try:
            while self._state is not StreamState.TERMINATED:
                if self._stop_event.is_set():
                    self._state = StreamState.TERMINATED
                    break

                if self._state is StreamState.CONNECTING_INITIAL:
                    try:
                        stream = self._open_stream()
                    except FetcherError as exc:
                        self._state = StreamState.TERMINATED
                        self._telemetry.emit("stream.connect", outcome="failed", initial=True)
                        raise InitialConnectionError(str(exc)) from exc
                    pages = iter(stream)
                    self._state = StreamState.STREAMING
                    self._telemetry.emit("stream.connect", outcome="connected", initial=True)

                elif self._state is StreamState.CONNECTING_RESUME:
                    try:
                        stream = self._open_stream()
                    except (TransportError, ChatNotFoundError) as exc:
                        LOGGER.error("Failed to reconnect: %s", exc)
                        self._telemetry.emit("stream.connect", outcome="failed", initial=False)
                        self._state = StreamState.FAULTED
                        continue
                    pages = iter(stream)
                    self._reconnects += 1
                    fault_attempt = 0
                    self._state = StreamState.STREAMING
                    LOGGER.info("Reconnected successfully")
                    self._telemetry.emit("stream.connect", outcome="connected", initial=False)

                elif self._state is StreamState.STREAMING:
                    assert pages is not None
                    try:
                        page = next(pages)
                    except StopIteration:
                        LOGGER.warning("Stream ended.")
                        self._state = StreamState.FAULTED
                        continue
                    except TransportError as exc:
                        LOGGER.warning("Error receiving message: %s", exc)
                        self._state = StreamState.FAULTED
                        continue

                    if self._stop_event.is_set():
                        # Undelivered page; the cursor still points before it.
                        self._state = StreamState.TERMINATED
                        break
                    self._deliver(page)

                elif self._state is StreamState.FAULTED:
                    self._close_stream(stream)
                    stream = None
                    pages = None
                    fault_attempt += 1
                    delay = self._reconnect_delay.seconds_for(fault_attempt)
                    LOGGER.warning(
                        "Connection lost. Waiting %s seconds before reconnecting...",
                        format_seconds(delay),
                    )
                    if self._cursor.page_token is not None:
                        LOGGER.info("Will resume from page token: %s", self._cursor.page_token)
                    self._telemetry.emit(
                        "stream.fault",
                        attempt=fault_attempt,
                        delay_seconds=delay,
                        has_page_token=self._cursor.page_token is not None,
                    )
                    if self._stop_event.wait(delay):
                        self._state = StreamState.TERMINATED
                        break
                    self._state = StreamState.CONNECTING_RESUME
        finally:
            self._state = StreamState.TERMINATED
            self._close_stream(stream)

        return StreamRunResult(
            cursor=self._cursor,
            pages_delivered=self._pages_delivered,
            messages_delivered=self._messages_delivered,
            reconnects=self._reconnects,
            stopped=self._stop_event.is_set(),
        )

    def _open_stream(self) -> ChatStream:
        token = self._credentials.current_token()
        LOGGER.debug(
            "opening stream chat_id=%s page_token=%s",
            self._cursor.chat_feed_id,
            self._cursor.page_token,
        )
        return self._transport.open(
            chat_feed_id=self._cursor.chat_feed_id,
            page_token=self._cursor.page_token,
            token=token,
        )

    def _deliver(self, page: Page) -> None:
        cursor = self._cursor
        next_cursor = cursor.advance(page)

        duplicates = cursor.duplicate_ids(page)
        if duplicates:
            LOGGER.warning(
                "page repeats already delivered message ids count=%s ids=%s",
                len(duplicates),
                ",".join(duplicates[:5]),
            )

        if page.is_heartbeat:
            LOGGER.debug("Received empty response (no items)")

        self._sink.emit(
            replace(
                page,
                chat_feed_id=cursor.chat_feed_id,
                request_page_token=cursor.page_token,
            )
        )
        self._cursor = next_cursor
        self._pages_delivered += 1
        self._messages_delivered += len(page.items)
        self._telemetry.emit(
            "stream.page",
            items=len(page.items),
            duplicates=len(duplicates),
            has_page_token=next_cursor.page_token is not None,
        )

    def _close_stream(self, stream: ChatStream | None) -> None:
        if stream is not None:
            stream.close()


def format_seconds(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.1f}"
