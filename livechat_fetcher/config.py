from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from livechat_fetcher.errors import ConfigurationError

ENV_PREFIX = "LIVECHAT_FETCHER_"
_PATH_FIELDS: tuple[str, ...] = (
    "api_key_path",
    "oauth_token_path",
    "output_file",
    "log_dir",
    "server_ca_file",
)


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


class FetcherSettings(BaseSettings):
    """
    Runtime configuration for one fetcher process.

    Every option can come from `LIVECHAT_FETCHER_*` environment variables or a
    `.env` file; command-line flags override them. The server addresses also
    honor the bare `SERVER_ADDRESS` and `REST_API_ADDRESS` variables.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # What to stream and where to write it.
    video_id: str | None = Field(
        default=None,
        description="YouTube video id; optional when resuming from an output file.",
    )
    output_file: Path | None = Field(
        default=None,
        description="JSON-lines output file. Pages go to stdout when unset.",
    )
    resume: bool = Field(
        default=False,
        description="Resume from the cursor stored in the last line of `output_file`.",
    )

    # Authentication; API key and OAuth are mutually exclusive.
    api_key_path: Path | None = Field(
        default=None,
        description="File holding the API key used for REST and stream requests.",
    )
    oauth_token_path: Path | None = Field(
        default=None,
        description="Persisted OAuth token record, rewritten after every refresh.",
    )
    oauth_client_id: str | None = Field(
        default=None,
        description="OAuth client id; required for refresh and first-time authorization.",
    )
    oauth_client_secret: str | None = Field(
        default=None,
        description="OAuth client secret; required for refresh and first-time authorization.",
    )
    oauth_token_endpoint: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="Authorization server token endpoint used for refresh exchanges.",
    )
    oauth_refresh_margin_seconds: int = Field(
        default=60,
        ge=0,
        description="Refresh the access token when less than this many seconds remain.",
    )
    oauth_callback_port: int = Field(
        default=8080,
        ge=0,
        le=65535,
        description="Local port of the first-time authorization callback server.",
    )

    # Remote endpoints.
    server_address: str = Field(
        default="https://youtube.googleapis.com",
        validation_alias=AliasChoices(f"{ENV_PREFIX}SERVER_ADDRESS", "SERVER_ADDRESS"),
        description="Live chat stream endpoint; a bare host:port gets an https:// prefix.",
    )
    rest_api_address: str = Field(
        default="https://www.googleapis.com",
        validation_alias=AliasChoices(f"{ENV_PREFIX}REST_API_ADDRESS", "REST_API_ADDRESS"),
        description="YouTube Data API base used to resolve a video id into a live chat id.",
    )
    stream_protocol: Literal["grpc", "http"] = Field(
        default="grpc",
        description="`grpc` calls StreamList over gRPC; `http` reads the HTTP streaming endpoint.",
    )
    server_ca_file: Path | None = Field(
        default=None,
        description="PEM root certificates for a TLS stream server with a private CA.",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for one-shot REST calls (chat id lookup, token refresh).",
    )
    stream_idle_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Treat the stream as lost after this long without any data.",
    )

    # Reconnect policy.
    reconnect_wait_seconds: float = Field(
        default=5,
        ge=0,
        description="Delay before each reconnection attempt after a stream fault.",
    )
    reconnect_backoff: Literal["fixed", "exponential"] = Field(
        default="fixed",
        description="`fixed` waits `reconnect_wait_seconds` every time; `exponential` doubles it.",
    )
    reconnect_max_wait_seconds: float = Field(
        default=300,
        ge=0,
        description="Upper bound for the exponential reconnect delay.",
    )
    shutdown_grace_seconds: float = Field(
        default=3,
        ge=0,
        description="How long shutdown waits for a blocked stream read to return.",
    )

    # Logging and telemetry.
    log_level: str = Field(
        default="INFO",
        description="Console (stderr) log level.",
    )
    log_dir: Path | None = Field(
        default=None,
        description="Optional directory for a JSON debug log file.",
    )
    telemetry_enabled: bool = Field(
        default=False,
        description="Emit structured telemetry events through the log pipeline.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="Telemetry sink backend; `none` disables sink output.",
    )

    @field_validator("reconnect_backoff", "telemetry_sink", "stream_protocol", mode="before")
    @classmethod
    def _normalize_choice(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("server_address", "rest_api_address", "oauth_token_endpoint", mode="before")
    @classmethod
    def _normalize_address(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("address must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("address must not be empty.")
        return normalized

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return _resolve_path(value)

    @field_validator("video_id", "oauth_client_id", "oauth_client_secret", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)

    @property
    def uses_oauth(self) -> bool:
        return self.oauth_token_path is not None

    @property
    def has_client_credentials(self) -> bool:
        return self.oauth_client_id is not None and self.oauth_client_secret is not None


def validate_run_configuration(settings: FetcherSettings) -> None:
    """Reject flag combinations that can never run, before any network call."""
    errors: list[str] = []

    if settings.api_key_path is not None and settings.oauth_token_path is not None:
        errors.append(
            "--api-key-path and --oauth-token-path are mutually exclusive; choose one "
            "authentication mode."
        )
    if (settings.oauth_client_id is None) != (settings.oauth_client_secret is None):
        errors.append("--oauth-client-id and --oauth-client-secret must be given together.")
    if settings.has_client_credentials and settings.oauth_token_path is None:
        errors.append("OAuth client credentials require --oauth-token-path.")
    if not settings.resume and settings.video_id is None:
        errors.append("Either --video-id or --resume must be specified.")
    if settings.resume and settings.output_file is None:
        errors.append("--output-file must be specified when using --resume.")

    if errors:
        if len(errors) == 1:
            raise ConfigurationError(errors[0])
        bullets = "\n".join(f"- {message}" for message in errors)
        raise ConfigurationError(f"Invalid configuration:\n{bullets}")


def load_settings(overrides: Mapping[str, Any] | None = None) -> FetcherSettings:
    explicit = {key: value for key, value in (overrides or {}).items() if value is not None}
    try:
        return FetcherSettings(**explicit)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
