from __future__ import annotations

import logging
from typing import Any, cast

from livechat_fetcher.errors import AuthError, ChatNotFoundError
from livechat_fetcher.services.credentials import AuthToken
from livechat_fetcher.services.http_client import HttpStatusError, request_json

LOGGER = logging.getLogger("livechat_fetcher.resolver")

DEFAULT_REST_API_ADDRESS = "https://www.googleapis.com"


class ChatIdResolver:
    """Looks up the active live chat id of a broadcast via ``videos.list``.

    One request per call and no retry: a failure here happens before the
    stream ever connected, so it is always reported to the operator.
    """

    def __init__(
        self,
        rest_api_address: str = DEFAULT_REST_API_ADDRESS,
        *,
        http_timeout_seconds: float = 30.0,
    ) -> None:
        self._rest_api_address = rest_api_address.rstrip("/")
        self._http_timeout_seconds = max(1.0, http_timeout_seconds)

    def resolve(self, video_id: str, token: AuthToken) -> str:
        normalized_video_id = video_id.strip()
        if not normalized_video_id:
            raise ChatNotFoundError("No video found with the given ID (empty video id)")

        LOGGER.info("Fetching chat ID from REST API at: %s", self._rest_api_address)
        query = {"part": "liveStreamingDetails", "id": normalized_video_id}
        query.update(token.query_params())
        headers = {key: value for key, value in token.headers().items() if key != "x-goog-api-key"}

        try:
            body = request_json(
                method="GET",
                url=f"{self._rest_api_address}/youtube/v3/videos",
                timeout_seconds=self._http_timeout_seconds,
                query=query,
                headers=headers,
            )
        except HttpStatusError as exc:
            if exc.status_code in {401, 403}:
                raise AuthError(f"Failed to fetch video data (authentication rejected, {exc})") from exc
            if exc.status_code == 404:
                raise ChatNotFoundError(f"Failed to fetch video data (video not found, {exc})") from exc
            raise

        chat_id = _extract_active_chat_id(body)
        LOGGER.info("Got chat ID: %s", chat_id)
        return chat_id


def _extract_active_chat_id(body: dict[str, object]) -> str:
    if "items" not in body:
        raise ChatNotFoundError("Response missing 'items' field")
    items = body.get("items")
    if not isinstance(items, list):
        raise ChatNotFoundError("'items' field is not an array")
    if not items:
        raise ChatNotFoundError("No video found with the given ID")

    first_item = cast(list[Any], items)[0]
    details = first_item.get("liveStreamingDetails") if isinstance(first_item, dict) else None
    if not isinstance(details, dict):
        raise ChatNotFoundError("Video does not have live streaming details (not a live video)")

    chat_id = cast(dict[str, Any], details).get("activeLiveChatId")
    if not isinstance(chat_id, str) or not chat_id.strip():
        raise ChatNotFoundError("No active live chat ID found (stream may not be active)")
    return chat_id.strip()
