from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from threading import Lock
from typing import Any, Literal, Protocol

from google.auth import exceptions as google_auth_exceptions
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from livechat_fetcher.errors import AuthError, ConfigurationError
from livechat_fetcher.repositories.token_store import OAuthTokenRecord, TokenStore
from livechat_fetcher.telemetry import TelemetryClient

LOGGER = logging.getLogger("livechat_fetcher.oauth")

GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_AUTH_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
YOUTUBE_OAUTH_SCOPES = ["https://www.googleapis.com/auth/youtube.force-ssl"]
OAUTH_CALLBACK_PORT = 8080
DEFAULT_REFRESH_MARGIN_SECONDS = 60

AuthScheme = Literal["api_key", "bearer", "none"]


@dataclass(frozen=True)
class AuthToken:
    scheme: AuthScheme
    value: str = ""
    token_type: str = "Bearer"

    @classmethod
    def anonymous(cls) -> AuthToken:
        return cls(scheme="none")

    def headers(self) -> dict[str, str]:
        if self.scheme == "api_key":
            return {"x-goog-api-key": self.value}
        if self.scheme == "bearer":
            return {"Authorization": f"{self.token_type} {self.value}"}
        return {}

    def query_params(self) -> dict[str, str]:
        if self.scheme == "api_key":
            return {"key": self.value}
        return {}

    def __repr__(self) -> str:
        return f"AuthToken(scheme={self.scheme!r}, value='[redacted]')"


class CredentialProvider(Protocol):
    def current_token(self) -> AuthToken:
        ...


class AnonymousCredentialProvider:
    def current_token(self) -> AuthToken:
        return AuthToken.anonymous()


class ApiKeyCredentialProvider:
    def __init__(self, api_key: str) -> None:
        normalized = api_key.strip()
        if not normalized:
            raise ConfigurationError("API key is empty")
        self._token = AuthToken(scheme="api_key", value=normalized)

    @classmethod
    def from_file(cls, path: Path) -> ApiKeyCredentialProvider:
        LOGGER.info("Reading API key from: %s", path)
        try:
            content = path.expanduser().read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Failed to read API key file '{path}': {exc}") from exc
        return cls(content)

    def current_token(self) -> AuthToken:
        return self._token


class OAuthCredentialProvider:
    """OAuth access token source that refreshes ahead of expiry.

    The refresh exchange and the write-back of the refreshed token record are
    serialized, so concurrent callers around one expiry event share a single
    exchange. A failed refresh is raised as ``AuthError`` and never retried here.
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        token_endpoint: str = GOOGLE_TOKEN_ENDPOINT,
        http_timeout_seconds: float = 30.0,
        refresh_margin_seconds: float = DEFAULT_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        record = store.load()
        if record is None:
            raise ConfigurationError(
                "OAuth token file not found; first-time auth requires client credentials "
                "(--oauth-client-id and --oauth-client-secret)"
            )
        self._store = store
        self._record = record
        self._client_id = _normalize_optional_text(client_id)
        self._client_secret = _normalize_optional_text(client_secret)
        self._token_endpoint = token_endpoint
        self._http_timeout_seconds = max(1.0, http_timeout_seconds)
        self._refresh_margin_seconds = max(0.0, refresh_margin_seconds)
        self._clock = clock
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._refresh_lock = Lock()

    @classmethod
    def bootstrap(
        cls,
        store: TokenStore,
        *,
        client_id: str | None,
        client_secret: str | None,
        authorize: Callable[[str, str], OAuthTokenRecord] | None = None,
        **kwargs: Any,
    ) -> OAuthCredentialProvider:
        """Build a provider, running the first-time authorization flow if needed."""
        if store.load() is None:
            normalized_id = _normalize_optional_text(client_id)
            normalized_secret = _normalize_optional_text(client_secret)
            if normalized_id is None or normalized_secret is None:
                raise ConfigurationError(
                    "OAuth token file not found; first-time auth requires client credentials "
                    "(--oauth-client-id and --oauth-client-secret)"
                )
            authorize_fn = authorize if authorize is not None else authorize_installed_app
            store.save(authorize_fn(normalized_id, normalized_secret))
        return cls(store, client_id=client_id, client_secret=client_secret, **kwargs)

    @property
    def record(self) -> OAuthTokenRecord:
        return self._record

    def current_token(self) -> AuthToken:
        record = self._record
        if record.expires_within(self._refresh_margin_seconds, now=self._clock()):
            with self._refresh_lock:
                record = self._record
                if record.expires_within(self._refresh_margin_seconds, now=self._clock()):
                    LOGGER.info("Access token expired, refreshing...")
                    record = self._refresh(record)
                    self._store.save(record)
                    self._record = record
        return AuthToken(scheme="bearer", value=record.access_token, token_type=record.token_type)

    def _refresh(self, record: OAuthTokenRecord) -> OAuthTokenRecord:
        if self._client_id is None or self._client_secret is None:
            raise AuthError(
                "OAuth access token expired and no client credentials were supplied to refresh it"
            )

        credentials = Credentials(
            token=record.access_token,
            refresh_token=record.refresh_token,
            token_uri=self._token_endpoint,
            client_id=self._client_id,
            client_secret=self._client_secret,
        )
        try:
            credentials.refresh(_token_request(self._http_timeout_seconds))
        except google_auth_exceptions.RefreshError as exc:
            self._telemetry.emit("oauth.refresh", outcome="rejected")
            LOGGER.warning("OAuth token refresh rejected token_uri=%s", self._token_endpoint)
            if _refresh_requires_reauth(exc):
                raise AuthError(
                    "OAuth refresh token has expired or was revoked. "
                    "Run livechat-fetcher-oauth to re-authorize."
                ) from exc
            raise AuthError(f"Failed to refresh OAuth token ({exc})") from exc
        except google_auth_exceptions.GoogleAuthError as exc:
            self._telemetry.emit("oauth.refresh", outcome="unreachable")
            raise AuthError(f"Failed to refresh OAuth token: {exc}") from exc

        if not credentials.token:
            raise AuthError("Missing access_token in refresh response")
        if credentials.expiry is None:
            raise AuthError("Missing expires_in in refresh response")

        refreshed = OAuthTokenRecord(
            access_token=str(credentials.token),
            refresh_token=str(credentials.refresh_token or record.refresh_token),
            token_type="Bearer",
            expires_at=_expiry_timestamp(credentials.expiry),
        )
        self._telemetry.emit(
            "oauth.refresh",
            outcome="refreshed",
            expires_in=refreshed.expires_at - int(self._clock()),
        )
        LOGGER.info("OAuth token refreshed successfully expires_at=%s", refreshed.expires_at)
        return refreshed


def authorize_installed_app(
    client_id: str,
    client_secret: str,
    *,
    port: int = OAUTH_CALLBACK_PORT,
) -> OAuthTokenRecord:
    """Run the browser-based installed-app flow and return a persistable record."""
    from google_auth_oauthlib.flow import InstalledAppFlow

    client_config = {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": GOOGLE_AUTH_ENDPOINT,
            "token_uri": GOOGLE_TOKEN_ENDPOINT,
            "redirect_uris": [f"http://localhost:{port}/"],
        }
    }
    flow = InstalledAppFlow.from_client_config(client_config, YOUTUBE_OAUTH_SCOPES)
    LOGGER.info("OAuth 2.0 authorization required; waiting for browser consent port=%s", port)
    try:
        credentials: Any = flow.run_local_server(
            port=port,
            access_type="offline",
            prompt="consent",
            open_browser=True,
        )
    except Exception as exc:
        raise AuthError(f"OAuth authorization flow failed: {exc}") from exc

    if credentials is None or not credentials.token:
        raise AuthError("OAuth flow did not return credentials")
    if not credentials.refresh_token:
        raise AuthError("Missing refresh_token in token response")

    expiry = credentials.expiry
    if isinstance(expiry, datetime):
        expires_at = _expiry_timestamp(expiry)
    else:
        expires_at = int(time.time()) + 3600

    LOGGER.info("Successfully obtained OAuth tokens")
    return OAuthTokenRecord(
        access_token=str(credentials.token),
        refresh_token=str(credentials.refresh_token),
        token_type="Bearer",
        expires_at=expires_at,
    )


def _token_request(timeout_seconds: float) -> Callable[..., Any]:
    transport = Request()

    def _send(*args: Any, **kwargs: Any) -> Any:
        kwargs.setdefault("timeout", timeout_seconds)
        return transport(*args, **kwargs)

    return _send


def _expiry_timestamp(expiry: datetime) -> int:
    # google-auth reports expiry as naive UTC.
    aware_expiry = expiry if expiry.tzinfo is not None else expiry.replace(tzinfo=UTC)
    return int(aware_expiry.timestamp())


def _refresh_requires_reauth(exc: Exception) -> bool:
    normalized = str(exc).lower()
    return "invalid_grant" in normalized or "expired or revoked" in normalized


def _normalize_optional_text(raw_value: str | None) -> str | None:
    if raw_value is None:
        return None
    normalized = raw_value.strip()
    if not normalized:
        return None
    return normalized
