from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable, Mapping
from typing import Any, Literal, Protocol

import structlog

LOGGER = logging.getLogger("livechat_fetcher.telemetry")

TelemetryEvent = Literal["stream.connect", "stream.fault", "stream.page", "oauth.refresh"]
TelemetryValue = bool | int | float | str | None

REDACTED = "[redacted]"
_REDACT_FRAGMENTS: tuple[str, ...] = (
    "api_key",
    "authorization",
    "message_text",
    "payload",
    "secret",
    "token",
)
# Flags that only say whether a token exists.
_SAFE_KEYS: frozenset[str] = frozenset({"has_page_token", "token_scheme"})
_STRING_LIMIT = 120


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        _ = (event_name, attributes)


class StructuredLogTelemetrySink:
    def __init__(self) -> None:
        self._logger = structlog.get_logger("livechat_fetcher.telemetry")

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self._logger.bind(telemetry_event=event_name).info("telemetry", **dict(attributes))


class TelemetryClient:
    """Counts stream and OAuth events and forwards sanitized attributes to a sink."""

    def __init__(self, *, enabled: bool, sink: TelemetrySink) -> None:
        self.enabled = enabled
        self.sink = sink
        self._counts: Counter[str] = Counter()
        self._lock = threading.Lock()

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NoOpTelemetrySink())

    def emit(self, event_name: TelemetryEvent, **attributes: Any) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._counts[event_name] += 1
        self.sink.emit(event_name=event_name, attributes=sanitize_attributes(attributes))

    def counts(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)


_SINK_FACTORIES: dict[str, Callable[[], TelemetrySink]] = {
    "log": StructuredLogTelemetrySink,
}


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if not enabled or sink == "none":
        return TelemetryClient.disabled()
    factory = _SINK_FACTORIES.get(sink)
    if factory is None:
        LOGGER.warning("unknown telemetry sink; telemetry disabled sink=%s", sink)
        return TelemetryClient.disabled()
    return TelemetryClient(enabled=True, sink=factory())


def sanitize_attributes(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    sanitized: dict[str, TelemetryValue] = {}
    for raw_key, value in attributes.items():
        key = str(raw_key).strip().lower()
        if key:
            sanitized[key] = REDACTED if _must_redact(key) else _flatten(value)
    return sanitized


def _must_redact(key: str) -> bool:
    if key in _SAFE_KEYS:
        return False
    return any(fragment in key for fragment in _REDACT_FRAGMENTS)


def _flatten(value: Any) -> TelemetryValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if not isinstance(value, str):
        return type(value).__name__
    single_line = " ".join(value.split())
    if len(single_line) > _STRING_LIMIT:
        return single_line[:_STRING_LIMIT] + "..."
    return single_line
