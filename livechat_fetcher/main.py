from __future__ import annotations

import logging
import signal
import threading
import time
from dataclasses import dataclass
from types import FrameType
from typing import Any

from livechat_fetcher.config import FetcherSettings, validate_run_configuration
from livechat_fetcher.errors import ConfigurationError, FetcherError, MalformedResumeStateError
from livechat_fetcher.models.chat import StreamCursor
from livechat_fetcher.repositories.output_sink import FileOutputSink, OutputSink, StdoutOutputSink
from livechat_fetcher.repositories.token_store import FileTokenStore
from livechat_fetcher.services.chat_id_resolver import ChatIdResolver
from livechat_fetcher.services.credentials import (
    AnonymousCredentialProvider,
    ApiKeyCredentialProvider,
    CredentialProvider,
    OAuthCredentialProvider,
    authorize_installed_app,
)
from livechat_fetcher.services.stream_client import (
    ExponentialBackoff,
    FixedDelay,
    ReconnectDelay,
    ReconnectingStreamClient,
    StreamRunResult,
    format_seconds,
)
from livechat_fetcher.services.grpc_transport import GrpcStreamTransport
from livechat_fetcher.services.stream_transport import HttpStreamTransport, StreamTransport
from livechat_fetcher.telemetry import TelemetryClient, build_telemetry_client

LOGGER = logging.getLogger("livechat_fetcher.driver")

_SHUTDOWN_SIGNALS: tuple[str, ...] = ("SIGINT", "SIGTERM")


@dataclass(frozen=True)
class FetcherComponents:
    credentials: CredentialProvider
    resolver: ChatIdResolver
    transport: StreamTransport
    sink: OutputSink
    telemetry: TelemetryClient


def build_credentials(
    settings: FetcherSettings,
    *,
    telemetry: TelemetryClient | None = None,
) -> CredentialProvider:
    if settings.api_key_path is not None:
        return ApiKeyCredentialProvider.from_file(settings.api_key_path)
    if settings.oauth_token_path is not None:
        store = FileTokenStore(settings.oauth_token_path)
        LOGGER.info("Using OAuth token file: %s", store.path)
        return OAuthCredentialProvider.bootstrap(
            store,
            client_id=settings.oauth_client_id,
            client_secret=settings.oauth_client_secret,
            authorize=lambda client_id, client_secret: authorize_installed_app(
                client_id,
                client_secret,
                port=settings.oauth_callback_port,
            ),
            token_endpoint=settings.oauth_token_endpoint,
            http_timeout_seconds=settings.http_timeout_seconds,
            refresh_margin_seconds=settings.oauth_refresh_margin_seconds,
            telemetry=telemetry,
        )
    LOGGER.info("No credentials configured; sending unauthenticated requests")
    return AnonymousCredentialProvider()


def build_sink(settings: FetcherSettings) -> OutputSink:
    if settings.output_file is None:
        return StdoutOutputSink()
    LOGGER.info("Output file: %s", settings.output_file)
    return FileOutputSink(settings.output_file)


def build_reconnect_delay(settings: FetcherSettings) -> ReconnectDelay:
    if settings.reconnect_backoff == "exponential":
        return ExponentialBackoff(
            base_seconds=settings.reconnect_wait_seconds,
            max_seconds=max(settings.reconnect_wait_seconds, settings.reconnect_max_wait_seconds),
        )
    return FixedDelay(settings.reconnect_wait_seconds)


def build_transport(settings: FetcherSettings) -> StreamTransport:
    if settings.stream_protocol == "http":
        return HttpStreamTransport(
            settings.server_address,
            idle_timeout_seconds=settings.stream_idle_timeout_seconds,
        )
    transport = GrpcStreamTransport(
        settings.server_address,
        idle_timeout_seconds=settings.stream_idle_timeout_seconds,
        root_certificates_path=settings.server_ca_file,
    )
    LOGGER.info("Connecting to gRPC server at %s", transport.target)
    return transport


def build_components(settings: FetcherSettings) -> FetcherComponents:
    telemetry = build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )
    credentials = build_credentials(settings, telemetry=telemetry)
    return FetcherComponents(
        credentials=credentials,
        resolver=ChatIdResolver(
            settings.rest_api_address,
            http_timeout_seconds=settings.http_timeout_seconds,
        ),
        transport=build_transport(settings),
        sink=build_sink(settings),
        telemetry=telemetry,
    )


def resolve_start_cursor(
    settings: FetcherSettings,
    *,
    sink: OutputSink,
    resolver: ChatIdResolver,
    credentials: CredentialProvider,
) -> StreamCursor:
    if settings.resume:
        LOGGER.info("Attempting to resume from: %s", settings.output_file)
        last_record = sink.last_record()
        if last_record is None:
            LOGGER.info("Output file is empty or does not exist yet")
        else:
            try:
                cursor = StreamCursor.from_last_output_record(last_record)
            except MalformedResumeStateError as exc:
                LOGGER.warning("Failed to parse last line: %s", exc)
            else:
                LOGGER.info("Resuming with chat ID: %s", cursor.chat_feed_id)
                if cursor.page_token is not None:
                    LOGGER.info("Resuming from page token: %s", cursor.page_token)
                return cursor

    if settings.video_id is None:
        raise ConfigurationError(
            "--video-id is required when not resuming or when resume fails to find a chat ID"
        )
    LOGGER.info("Using video ID: %s", settings.video_id)
    chat_id = resolver.resolve(settings.video_id, credentials.current_token())
    return StreamCursor.start_of_feed(chat_id)


class FetcherRunner:
    """Runs the stream client on a worker thread and turns signals into a stop."""

    def __init__(
        self,
        client: ReconnectingStreamClient,
        sink: OutputSink,
        *,
        shutdown_grace_seconds: float = 3.0,
        install_signal_handlers: bool = True,
    ) -> None:
        self._client = client
        self._sink = sink
        self._shutdown_grace_seconds = max(0.0, shutdown_grace_seconds)
        self._install_signal_handlers = install_signal_handlers
        self._done = threading.Event()
        self._shutdown_deadline: float | None = None
        self._result: StreamRunResult | None = None
        self._error: Exception | None = None

    def request_shutdown(self, reason: str) -> None:
        if self._shutdown_deadline is None:
            LOGGER.info("Received %s, shutting down...", reason)
            self._shutdown_deadline = time.monotonic() + self._shutdown_grace_seconds
        self._client.stop()

    def run(self) -> StreamRunResult | None:
        previous_handlers = self._install_handlers() if self._install_signal_handlers else {}
        worker = threading.Thread(target=self._work, name="livechat-stream", daemon=True)
        worker.start()
        try:
            while not self._done.wait(0.2):
                deadline = self._shutdown_deadline
                if deadline is not None and time.monotonic() >= deadline:
                    LOGGER.warning("stream read still blocked after stop; exiting without it")
                    break
        finally:
            self._restore_handlers(previous_handlers)
            # Waits for an in-flight append so no partial record is left behind.
            self._sink.close()

        if self._error is not None:
            raise self._error
        return self._result

    def _work(self) -> None:
        try:
            self._result = self._client.run()
        except Exception as exc:
            self._error = exc
        finally:
            self._done.set()

    def _install_handlers(self) -> dict[int, Any]:
        previous: dict[int, Any] = {}
        for name in _SHUTDOWN_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            previous[signum] = signal.signal(signum, self._handle_signal)
        return previous

    def _restore_handlers(self, previous: dict[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def _handle_signal(self, signum: int, _frame: FrameType | None) -> None:
        self.request_shutdown(signal.Signals(signum).name)


def run_fetcher(
    settings: FetcherSettings,
    *,
    components: FetcherComponents | None = None,
    install_signal_handlers: bool = True,
) -> StreamRunResult | None:
    """Validate, wire and run one fetcher process. Fatal errors propagate."""
    validate_run_configuration(settings)
    built = components if components is not None else build_components(settings)

    try:
        cursor = resolve_start_cursor(
            settings,
            sink=built.sink,
            resolver=built.resolver,
            credentials=built.credentials,
        )
        LOGGER.info(
            "Reconnect wait time: %s seconds",
            format_seconds(settings.reconnect_wait_seconds),
        )
        client = ReconnectingStreamClient(
            transport=built.transport,
            credentials=built.credentials,
            sink=built.sink,
            cursor=cursor,
            reconnect_delay=build_reconnect_delay(settings),
            telemetry=built.telemetry,
        )
    except FetcherError:
        built.sink.close()
        raise

    runner = FetcherRunner(
        client,
        built.sink,
        shutdown_grace_seconds=settings.shutdown_grace_seconds,
        install_signal_handlers=install_signal_handlers,
    )
    result = runner.run()
    if result is not None:
        LOGGER.info(
            "stream finished pages=%s messages=%s reconnects=%s",
            result.pages_delivered,
            result.messages_delivered,
            result.reconnects,
        )
    if built.telemetry.enabled:
        LOGGER.debug("telemetry event counts %s", built.telemetry.counts())
    LOGGER.info("Shutdown complete")
    return result


