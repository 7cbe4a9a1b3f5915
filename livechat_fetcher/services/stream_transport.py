from __future__ import annotations

import http.client
import json
import logging
from collections.abc import Iterator
from typing import Any, Protocol, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from livechat_fetcher.errors import (
    AuthError,
    ChatNotFoundError,
    StreamTimeoutError,
    TransportError,
)
from livechat_fetcher.models.chat import Page, page_from_payload
from livechat_fetcher.services.credentials import AuthToken
from livechat_fetcher.services.http_client import decode_json_object, extract_error_message

LOGGER = logging.getLogger("livechat_fetcher.stream")

DEFAULT_SERVER_ADDRESS = "https://youtube.googleapis.com"
STREAM_PATH = "/youtube/v3/liveChat/messages/stream"
STREAM_PARTS = "snippet,authorDetails"
MAX_BUFFERED_CHARS = 16 * 1024 * 1024
_FRAMING = " \t\r\n[],"


class ChatStream(Protocol):
    def __iter__(self) -> Iterator[Page]:
        ...

    def close(self) -> None:
        ...


class StreamTransport(Protocol):
    def open(
        self,
        *,
        chat_feed_id: str,
        page_token: str | None,
        token: AuthToken,
    ) -> ChatStream:
        ...


def normalize_server_url(server_address: str) -> str:
    trimmed = server_address.strip().rstrip("/")
    if trimmed.startswith(("http://", "https://")):
        return trimmed
    return f"https://{trimmed}"


class HttpStreamTransport:
    """Opens ``liveChatMessages.streamList`` over HTTP server streaming.

    The body is a JSON array of ``liveChatMessageListResponse`` objects that
    grows as pages arrive; objects are decoded as soon as they are complete.
    Used when ``stream_protocol`` is ``http``. A read that stays silent longer
    than ``idle_timeout_seconds`` raises ``StreamTimeoutError``.
    """

    def __init__(
        self,
        server_address: str = DEFAULT_SERVER_ADDRESS,
        *,
        idle_timeout_seconds: float = 120.0,
        max_results: int | None = None,
        language: str | None = None,
        profile_image_size: int | None = None,
    ) -> None:
        self._server_url = normalize_server_url(server_address)
        self._idle_timeout_seconds = max(1.0, idle_timeout_seconds)
        self._max_results = max_results
        self._language = language
        self._profile_image_size = profile_image_size

    @property
    def server_url(self) -> str:
        return self._server_url

    def open(
        self,
        *,
        chat_feed_id: str,
        page_token: str | None,
        token: AuthToken,
    ) -> HttpChatStream:
        query: dict[str, str] = {
            "liveChatId": chat_feed_id,
            "part": STREAM_PARTS,
            "alt": "json",
            "prettyPrint": "false",
        }
        if page_token is not None:
            query["pageToken"] = page_token
        if self._max_results is not None:
            query["maxResults"] = str(self._max_results)
        if self._language is not None:
            query["hl"] = self._language
        if self._profile_image_size is not None:
            query["profileImageSize"] = str(self._profile_image_size)

        headers = {"Accept": "application/json"}
        headers.update(token.headers())
        request = Request(
            url=f"{self._server_url}{STREAM_PATH}?{urlencode(query)}",
            headers=headers,
            method="GET",
        )

        try:
            response = urlopen(request, timeout=self._idle_timeout_seconds)
        except HTTPError as exc:
            raise _error_from_status(exc) from exc
        except URLError as exc:
            raise TransportError(f"Failed to connect to {self._server_url}: {exc.reason}") from exc
        except (TimeoutError, OSError, http.client.HTTPException) as exc:
            raise TransportError(f"Failed to connect to {self._server_url}: {exc}") from exc

        return HttpChatStream(response, chat_feed_id=chat_feed_id)


class HttpChatStream:
    def __init__(self, response: Any, *, chat_feed_id: str) -> None:
        self._response = response
        self._chat_feed_id = chat_feed_id
        self._decoder = json.JSONDecoder()
        self._buffer = ""
        self._closed = False

    def __iter__(self) -> Iterator[Page]:
        while True:
            try:
                raw_line = self._response.readline()
            except TimeoutError as exc:
                raise StreamTimeoutError("stream idle timeout elapsed") from exc
            except (OSError, ValueError, http.client.HTTPException) as exc:
                raise TransportError(f"stream read failed: {exc}") from exc

            if not raw_line:
                if self._buffer.strip(_FRAMING):
                    raise TransportError("stream ended inside a JSON object")
                return

            if isinstance(raw_line, bytes):
                raw_line = raw_line.decode("utf-8", errors="replace")
            self._buffer += raw_line
            for payload in self._drain_objects():
                yield page_from_payload(payload, chat_feed_id=self._chat_feed_id)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._response.close()
        except (OSError, http.client.HTTPException):
            LOGGER.debug("stream close failed", exc_info=True)

    def _drain_objects(self) -> Iterator[dict[str, object]]:
        # Objects may span lines and arrive inside a JSON array.
        while True:
            self._buffer = self._buffer.lstrip(_FRAMING)
            if not self._buffer:
                return
            try:
                parsed, end = self._decoder.raw_decode(self._buffer)
            except json.JSONDecodeError as exc:
                if exc.pos < len(self._buffer) or len(self._buffer) > MAX_BUFFERED_CHARS:
                    raise TransportError(f"stream delivered malformed JSON: {exc}") from exc
                return
            self._buffer = self._buffer[end:]
            if not isinstance(parsed, dict):
                raise TransportError("stream delivered a non-object JSON value")
            yield cast(dict[str, object], parsed)


def _error_from_status(exc: HTTPError) -> Exception:
    body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
    message = extract_error_message(decode_json_object(body)) or body or str(exc)
    if exc.code in {401, 403}:
        return AuthError(f"Failed to start stream: Unauthenticated (status {exc.code}): {message}")
    if exc.code == 404:
        return ChatNotFoundError(f"Failed to start stream: live chat not found: {message}")
    return TransportError(
        f"Failed to start stream (status {exc.code}): {message}",
        status_code=exc.code,
    )
