from __future__ import annotations

import http.client
import json
from typing import cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from livechat_fetcher.errors import TransportError


class HttpStatusError(TransportError):
    def __init__(self, message: str, *, status_code: int, payload: dict[str, object]) -> None:
        super().__init__(message, status_code=status_code)
        self.payload = payload


def request_json(
    *,
    method: str,
    url: str,
    timeout_seconds: float,
    query: dict[str, str] | None = None,
    form: dict[str, str] | None = None,
    headers: dict[str, str] | None = None,
) -> dict[str, object]:
    if query:
        separator = "&" if "?" in url else "?"
        url = f"{url}{separator}{urlencode(query)}"

    request_headers: dict[str, str] = {"Accept": "application/json"}
    if headers:
        request_headers.update(headers)

    body: bytes | None = None
    if form is not None:
        body = urlencode(form).encode("utf-8")
        request_headers["Content-Type"] = "application/x-www-form-urlencoded"

    request = Request(url=url, data=body, headers=request_headers, method=method)
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            raw_body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        response_body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
        parsed = decode_json_object(response_body)
        message = extract_error_message(parsed) or response_body or str(exc)
        raise HttpStatusError(
            f"status {exc.code}: {message}",
            status_code=exc.code,
            payload=parsed,
        ) from exc
    except URLError as exc:
        raise TransportError(f"request to {_strip_query(url)} failed: {exc.reason}") from exc
    except (TimeoutError, OSError, http.client.HTTPException, ValueError) as exc:
        raise TransportError(f"request to {_strip_query(url)} failed: {exc}") from exc

    return decode_json_object(raw_body)


def decode_json_object(raw_body: str) -> dict[str, object]:
    if not raw_body.strip():
        return {}
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, dict):
        parsed_dict = cast(dict[object, object], parsed)
        output: dict[str, object] = {}
        for key, value in parsed_dict.items():
            if isinstance(key, str):
                output[key] = value
        return output
    return {}


def extract_error_message(payload: dict[str, object]) -> str | None:
    error = payload.get("error")
    # Google APIs nest details under {"error": {"message": ...}}.
    if isinstance(error, dict):
        nested = cast(dict[str, object], error).get("message")
        if isinstance(nested, str) and nested.strip():
            return nested.strip()
    for key in ("error_description", "message", "error"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _strip_query(url: str) -> str:
    # Never echo query strings; they may carry the API key.
    return url.split("?", 1)[0]
