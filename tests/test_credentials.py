from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs

import pytest
from google.auth import exceptions as google_auth_exceptions

from livechat_fetcher.errors import AuthError, ConfigurationError
from livechat_fetcher.repositories.token_store import FileTokenStore, OAuthTokenRecord
from livechat_fetcher.services.credentials import (
    ApiKeyCredentialProvider,
    AuthToken,
    OAuthCredentialProvider,
)


class _MemoryTokenStore:
    def __init__(self, record: OAuthTokenRecord | None) -> None:
        self.record = record
        self.saved: list[OAuthTokenRecord] = []

    def load(self) -> OAuthTokenRecord | None:
        return self.record

    def save(self, record: OAuthTokenRecord) -> None:
        self.record = record
        self.saved.append(record)


class _FakeTokenResponse:
    def __init__(self, status: int, body: dict[str, Any]) -> None:
        self.status = status
        self.headers = {"content-type": "application/json"}
        self.data = json.dumps(body).encode("utf-8")


class _FakeTokenEndpoint:
    """Stands in for the google-auth HTTP transport used by the refresh exchange."""

    def __init__(
        self,
        body: dict[str, Any] | None = None,
        *,
        status: int = 200,
        error: Exception | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.body = body or {}
        self.status = status
        self.error = error
        self.delay_seconds = delay_seconds
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def install(self, monkeypatch: pytest.MonkeyPatch) -> _FakeTokenEndpoint:
        monkeypatch.setattr("livechat_fetcher.services.credentials.Request", lambda: self)
        return self

    def __call__(self, url: str, method: str = "GET", body: Any = None, **kwargs: Any) -> Any:
        with self._lock:
            self.calls.append({"url": url, "method": method, "body": body, **kwargs})
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.error is not None:
            raise self.error
        return _FakeTokenResponse(self.status, self.body)

    def form(self, index: int = 0) -> dict[str, str]:
        raw = self.calls[index]["body"]
        text = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
        return {key: values[0] for key, values in parse_qs(text).items()}


def _expired_record() -> OAuthTokenRecord:
    return OAuthTokenRecord(
        access_token="stale-access",
        refresh_token="refresh-1",
        expires_at=1_000,
    )


def test_api_key_provider_reads_trimmed_key(tmp_path: Path) -> None:
    key_path = tmp_path / "api_key.txt"
    key_path.write_text("  secret-key \n", encoding="utf-8")

    token = ApiKeyCredentialProvider.from_file(key_path).current_token()

    assert token.scheme == "api_key"
    assert token.value == "secret-key"
    assert token.headers() == {"x-goog-api-key": "secret-key"}
    assert token.query_params() == {"key": "secret-key"}
    assert "secret-key" not in repr(token)


def test_api_key_provider_rejects_missing_or_empty_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        ApiKeyCredentialProvider.from_file(tmp_path / "missing.txt")

    empty = tmp_path / "empty.txt"
    empty.write_text("\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        ApiKeyCredentialProvider.from_file(empty)


def test_bearer_token_headers() -> None:
    token = AuthToken(scheme="bearer", value="abc")

    assert token.headers() == {"Authorization": "Bearer abc"}
    assert token.query_params() == {}
    assert AuthToken.anonymous().headers() == {}


def test_oauth_provider_without_record_requires_client_credentials() -> None:
    with pytest.raises(ConfigurationError, match="first-time auth requires client credentials"):
        OAuthCredentialProvider.bootstrap(
            _MemoryTokenStore(None),
            client_id=None,
            client_secret=None,
        )


def test_oauth_bootstrap_runs_authorization_and_persists(tmp_path: Path) -> None:
    store = FileTokenStore(tmp_path / "token.json")
    calls: list[tuple[str, str]] = []

    def _fake_authorize(client_id: str, client_secret: str) -> OAuthTokenRecord:
        calls.append((client_id, client_secret))
        return OAuthTokenRecord(
            access_token="fresh-access",
            refresh_token="refresh-1",
            expires_at=int(time.time()) + 3600,
        )

    provider = OAuthCredentialProvider.bootstrap(
        store,
        client_id="client-id",
        client_secret="client-secret",
        authorize=_fake_authorize,
    )

    assert calls == [("client-id", "client-secret")]
    assert provider.current_token().value == "fresh-access"
    loaded = store.load()
    assert loaded is not None
    assert loaded.access_token == "fresh-access"


def test_oauth_bootstrap_skips_authorization_when_record_exists() -> None:
    store = _MemoryTokenStore(
        OAuthTokenRecord(access_token="a", refresh_token="r", expires_at=10_000)
    )

    def _unexpected_authorize(client_id: str, client_secret: str) -> OAuthTokenRecord:
        raise AssertionError("authorization flow should not run")

    provider = OAuthCredentialProvider.bootstrap(
        store,
        client_id="client-id",
        client_secret="client-secret",
        authorize=_unexpected_authorize,
        clock=lambda: 100.0,
    )

    assert provider.current_token().value == "a"
    assert store.saved == []


def _provider(store: _MemoryTokenStore, **kwargs: Any) -> OAuthCredentialProvider:
    return OAuthCredentialProvider(
        store,
        client_id="client-id",
        client_secret="client-secret",
        token_endpoint="https://oauth2.example.test/token",
        clock=lambda: 5_000.0,
        **kwargs,
    )


def test_oauth_provider_refreshes_and_persists(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _MemoryTokenStore(_expired_record())
    endpoint = _FakeTokenEndpoint(
        {"access_token": "new-access", "expires_in": 3599, "token_type": "Bearer"}
    ).install(monkeypatch)
    provider = _provider(store, http_timeout_seconds=7)

    token = provider.current_token()

    assert token.value == "new-access"
    assert token.headers() == {"Authorization": "Bearer new-access"}
    assert len(endpoint.calls) == 1
    assert endpoint.calls[0]["url"] == "https://oauth2.example.test/token"
    assert endpoint.calls[0]["method"] == "POST"
    assert endpoint.calls[0]["timeout"] == 7
    form = endpoint.form()
    assert form["grant_type"] == "refresh_token"
    assert form["refresh_token"] == "refresh-1"
    assert form["client_id"] == "client-id"
    assert len(store.saved) == 1
    assert store.saved[0].access_token == "new-access"
    assert store.saved[0].refresh_token == "refresh-1"
    assert abs(store.saved[0].expires_at - (time.time() + 3599)) < 60


def test_oauth_provider_keeps_rotated_refresh_token(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _MemoryTokenStore(_expired_record())
    _FakeTokenEndpoint(
        {"access_token": "new", "expires_in": 60, "refresh_token": "refresh-2"}
    ).install(monkeypatch)

    _provider(store).current_token()

    assert store.saved[0].refresh_token == "refresh-2"


def test_oauth_provider_concurrent_callers_share_one_refresh(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    store = _MemoryTokenStore(_expired_record())
    endpoint = _FakeTokenEndpoint(
        {"access_token": "shared-access", "expires_in": 3600},
        delay_seconds=0.05,
    ).install(monkeypatch)
    provider = _provider(store)

    barrier = threading.Barrier(4)
    values: list[str] = []
    values_lock = threading.Lock()

    def _worker() -> None:
        barrier.wait()
        value = provider.current_token().value
        with values_lock:
            values.append(value)

    threads = [threading.Thread(target=_worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert len(endpoint.calls) == 1
    assert values == ["shared-access"] * 4
    assert len(store.saved) == 1


def test_oauth_provider_invalid_grant_requires_reauthorization(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _FakeTokenEndpoint(
        {"error": "invalid_grant", "error_description": "Token has been expired or revoked."},
        status=400,
    ).install(monkeypatch)
    store = _MemoryTokenStore(_expired_record())

    with pytest.raises(AuthError, match="re-authorize"):
        _provider(store).current_token()
    assert store.saved == []


def test_oauth_provider_unreachable_token_endpoint_is_auth_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _FakeTokenEndpoint(
        error=google_auth_exceptions.TransportError("connection refused"),
    ).install(monkeypatch)
    store = _MemoryTokenStore(_expired_record())

    with pytest.raises(AuthError, match="connection refused"):
        _provider(store).current_token()
    assert store.saved == []


def test_oauth_provider_refresh_without_client_credentials_fails() -> None:
    provider = OAuthCredentialProvider(
        _MemoryTokenStore(_expired_record()),
        clock=lambda: 5_000.0,
    )

    with pytest.raises(AuthError, match="no client credentials"):
        provider.current_token()


def test_oauth_provider_rejects_incomplete_refresh_response(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _FakeTokenEndpoint({"access_token": "new"}).install(monkeypatch)

    with pytest.raises(AuthError, match="expires_in"):
        _provider(_MemoryTokenStore(_expired_record())).current_token()
