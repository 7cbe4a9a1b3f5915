from __future__ import annotations

import functools
import logging
import threading
from collections.abc import Callable, Iterator
from pathlib import Path
from types import ModuleType
from typing import Any
from urllib.parse import urlsplit

import grpc
from google.protobuf import json_format

from livechat_fetcher.errors import (
    AuthError,
    ChatNotFoundError,
    ConfigurationError,
    FetcherError,
    StreamTimeoutError,
    TransportError,
)
from livechat_fetcher.models.chat import Page, page_from_payload
from livechat_fetcher.services.credentials import AuthToken
from livechat_fetcher.services.stream_transport import (
    DEFAULT_SERVER_ADDRESS,
    STREAM_PARTS,
    normalize_server_url,
)

LOGGER = logging.getLogger("livechat_fetcher.stream")

STREAM_LIST_PROTO = "livechat_fetcher/protos/stream_list.proto"

ChannelFactory = Callable[[str, "grpc.ChannelCredentials | None"], Any]

_AUTH_STATUSES = frozenset({grpc.StatusCode.UNAUTHENTICATED, grpc.StatusCode.PERMISSION_DENIED})


@functools.cache
def load_stream_list_protos() -> tuple[ModuleType, ModuleType]:
    """Compile the bundled streamList proto into its message and stub modules."""
    protos, services = grpc.protos_and_services(STREAM_LIST_PROTO)
    return protos, services


def grpc_target(server_address: str) -> tuple[str, bool]:
    """Turn ``SERVER_ADDRESS`` into a ``host:port`` target and whether it uses TLS.

    ``http://`` means plaintext; ``https://`` and bare addresses use TLS.
    """
    parts = urlsplit(normalize_server_url(server_address))
    if not parts.hostname:
        raise ConfigurationError(f"Invalid server address: {server_address!r}")
    secure = parts.scheme == "https"
    host = f"[{parts.hostname}]" if ":" in parts.hostname else parts.hostname
    port = parts.port or (443 if secure else 80)
    return f"{host}:{port}", secure


def open_channel(target: str, credentials: grpc.ChannelCredentials | None) -> grpc.Channel:
    if credentials is None:
        return grpc.insecure_channel(target)
    return grpc.secure_channel(target, credentials)


def auth_metadata(token: AuthToken) -> tuple[tuple[str, str], ...]:
    # gRPC metadata keys are lowercase: x-goog-api-key or authorization.
    return tuple((name.lower(), value) for name, value in token.headers().items())


class GrpcStreamTransport:
    """Calls ``V3DataLiveChatMessageService.StreamList`` over one shared channel.

    The channel is created on the first ``open`` and reused for every
    reconnect. A stream that delivers nothing for ``idle_timeout_seconds`` is
    cancelled and surfaces as ``StreamTimeoutError``.
    """

    def __init__(
        self,
        server_address: str = DEFAULT_SERVER_ADDRESS,
        *,
        idle_timeout_seconds: float = 120.0,
        root_certificates_path: Path | None = None,
        max_results: int | None = None,
        language: str | None = None,
        profile_image_size: int | None = None,
        channel_factory: ChannelFactory = open_channel,
    ) -> None:
        self._target, self._secure = grpc_target(server_address)
        self._idle_timeout_seconds = max(1.0, idle_timeout_seconds)
        self._channel_credentials = _channel_credentials(self._secure, root_certificates_path)
        self._max_results = max_results
        self._language = language
        self._profile_image_size = profile_image_size
        self._channel_factory = channel_factory
        self._stub: Any = None
        self._lock = threading.Lock()

    @property
    def target(self) -> str:
        return self._target

    @property
    def secure(self) -> bool:
        return self._secure

    def open(
        self,
        *,
        chat_feed_id: str,
        page_token: str | None,
        token: AuthToken,
    ) -> GrpcChatStream:
        protos, _ = load_stream_list_protos()
        request = protos.LiveChatMessageListRequest(
            live_chat_id=chat_feed_id,
            part=STREAM_PARTS.split(","),
        )
        if page_token is not None:
            request.page_token = page_token
        if self._max_results is not None:
            request.max_results = self._max_results
        if self._language is not None:
            request.hl = self._language
        if self._profile_image_size is not None:
            request.profile_image_size = self._profile_image_size

        call = self._service_stub().StreamList(request, metadata=auth_metadata(token))
        # Blocks until response headers arrive or the call fails outright.
        call.initial_metadata()
        if call.done():
            code = call.code()
            if code is not None and code is not grpc.StatusCode.OK:
                if code is grpc.StatusCode.UNAVAILABLE:
                    raise TransportError(f"Failed to connect to {self._target}: {call.details()}")
                raise _error_from_status(
                    code,
                    call.details(),
                    context=f"Failed to start stream on {self._target}",
                )
        LOGGER.debug("stream opened target=%s chat_id=%s", self._target, chat_feed_id)
        return GrpcChatStream(
            call,
            chat_feed_id=chat_feed_id,
            idle_timeout_seconds=self._idle_timeout_seconds,
        )

    def _service_stub(self) -> Any:
        with self._lock:
            if self._stub is None:
                _, services = load_stream_list_protos()
                channel = self._channel_factory(self._target, self._channel_credentials)
                self._stub = services.V3DataLiveChatMessageServiceStub(channel)
            return self._stub


class GrpcChatStream:
    def __init__(self, call: Any, *, chat_feed_id: str, idle_timeout_seconds: float) -> None:
        self._call = call
        self._chat_feed_id = chat_feed_id
        self._idle_timeout_seconds = idle_timeout_seconds
        self._idle_timer: threading.Timer | None = None
        self._timed_out = threading.Event()
        self._closed = False

    def __iter__(self) -> Iterator[Page]:
        self._restart_idle_timer()
        try:
            for response in self._call:
                self._restart_idle_timer()
                payload = json_format.MessageToDict(response)
                yield page_from_payload(payload, chat_feed_id=self._chat_feed_id)
        except grpc.RpcError as exc:
            if self._timed_out.is_set():
                raise StreamTimeoutError("stream idle timeout elapsed") from exc
            if self._closed:
                return
            code, details = _rpc_status(exc)
            raise _error_from_status(code, details, context="stream failed") from exc
        finally:
            self._cancel_idle_timer()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel_idle_timer()
        self._call.cancel()

    def _restart_idle_timer(self) -> None:
        self._cancel_idle_timer()
        timer = threading.Timer(self._idle_timeout_seconds, self._on_idle_timeout)
        timer.daemon = True
        self._idle_timer = timer
        timer.start()

    def _cancel_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    def _on_idle_timeout(self) -> None:
        LOGGER.debug("no stream data for %s seconds; cancelling call", self._idle_timeout_seconds)
        self._timed_out.set()
        self._call.cancel()


def _rpc_status(exc: grpc.RpcError) -> tuple[grpc.StatusCode | None, str | None]:
    code = getattr(exc, "code", None)
    details = getattr(exc, "details", None)
    return (
        code() if callable(code) else None,
        details() if callable(details) else None,
    )


def _error_from_status(
    code: grpc.StatusCode | None,
    details: str | None,
    *,
    context: str,
) -> FetcherError:
    message = details or "no details"
    if code in _AUTH_STATUSES:
        return AuthError(f"{context}: Unauthenticated ({code.name}): {message}")
    if code is grpc.StatusCode.NOT_FOUND:
        return ChatNotFoundError(f"{context}: live chat not found: {message}")
    if code is grpc.StatusCode.DEADLINE_EXCEEDED:
        return StreamTimeoutError(f"{context}: deadline exceeded: {message}")
    status = code.name if code is not None else "UNKNOWN"
    return TransportError(f"{context} ({status}): {message}")


def _channel_credentials(
    secure: bool,
    root_certificates_path: Path | None,
) -> grpc.ChannelCredentials | None:
    if not secure:
        return None
    if root_certificates_path is None:
        return grpc.ssl_channel_credentials()
    try:
        root_certificates = root_certificates_path.read_bytes()
    except OSError as exc:
        raise ConfigurationError(
            f"Failed to read CA certificate {root_certificates_path}: {exc}"
        ) from exc
    return grpc.ssl_channel_credentials(root_certificates=root_certificates)
