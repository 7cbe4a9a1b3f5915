from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from livechat_fetcher.errors import ConfigurationError, DurabilityError

LOGGER = logging.getLogger("livechat_fetcher.oauth")


class OAuthTokenRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    token_type: str = "Bearer"
    # Unix timestamp, seconds.
    expires_at: int

    @field_validator("token_type", mode="before")
    @classmethod
    def _default_token_type(cls, value: object) -> str:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return "Bearer"

    def expires_within(self, margin_seconds: float, *, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        return current + margin_seconds >= self.expires_at


class TokenStore(Protocol):
    def load(self) -> OAuthTokenRecord | None:
        ...

    def save(self, record: OAuthTokenRecord) -> None:
        ...


class FileTokenStore:
    """JSON token file, replaced atomically with owner-only permissions."""

    def __init__(self, path: Path) -> None:
        self._path = path.expanduser().resolve()

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def load(self) -> OAuthTokenRecord | None:
        if not self._path.exists():
            return None
        try:
            content = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(
                f"Failed to read OAuth token file '{self._path}': {exc}"
            ) from exc
        try:
            return OAuthTokenRecord.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ConfigurationError(
                f"Failed to parse OAuth token file '{self._path}': {exc}"
            ) from exc

    def save(self, record: OAuthTokenRecord) -> None:
        serialized = json.dumps(record.model_dump(mode="json"), indent=2, sort_keys=True)
        temp_path = self._path.with_name(f"{self._path.name}.tmp")
        fd: int | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as stream:
                fd = None
                stream.write(serialized)
                stream.write("\n")
                stream.flush()
                os.fsync(stream.fileno())
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self._path)
        except OSError as exc:
            raise DurabilityError(
                f"Failed to write OAuth token file '{self._path}': {exc}"
            ) from exc
        finally:
            if fd is not None:
                os.close(fd)
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    LOGGER.debug("oauth token temp cleanup failed path=%s", temp_path, exc_info=True)
        LOGGER.debug("oauth token persisted path=%s expires_at=%s", self._path, record.expires_at)
