from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, cast

from livechat_fetcher.errors import CursorRewindError, MalformedResumeStateError

LIST_RESPONSE_KIND = "youtube#liveChatMessageListResponse"
DEFAULT_CURSOR_WINDOW = 2_000

# Cursor fields stamped onto every persisted page next to YouTube's own payload.
RECORD_CHAT_ID_KEY = "liveChatId"
RECORD_PAGE_TOKEN_KEY = "pageToken"
RECORD_NEXT_PAGE_TOKEN_KEY = "nextPageToken"


@dataclass(frozen=True)
class Message:
    id: str
    author: str | None
    text: str | None
    published_at: str | None
    raw_payload: dict[str, Any]


@dataclass(frozen=True)
class Page:
    chat_feed_id: str
    next_page_token: str | None
    items: tuple[Message, ...]
    raw_payload: dict[str, Any]
    request_page_token: str | None = None

    @property
    def is_heartbeat(self) -> bool:
        return not self.items

    def message_ids(self) -> list[str]:
        return [message.id for message in self.items]

    def to_record(self) -> dict[str, Any]:
        record = dict(self.raw_payload)
        record.setdefault("kind", LIST_RESPONSE_KIND)
        record[RECORD_CHAT_ID_KEY] = self.chat_feed_id
        record[RECORD_PAGE_TOKEN_KEY] = self.request_page_token
        if self.next_page_token is not None:
            record[RECORD_NEXT_PAGE_TOKEN_KEY] = self.next_page_token
        return record


@dataclass(frozen=True)
class StreamCursor:
    """Resume point of a live chat feed.

    Two cursors compare equal when they point at the same feed and page token;
    the bounded id/token windows only support duplicate and rewind detection
    within one run and are never persisted.
    """

    chat_feed_id: str
    page_token: str | None = None
    delivered_message_ids: tuple[str, ...] = field(default=(), compare=False)
    seen_page_tokens: tuple[str, ...] = field(default=(), compare=False)
    window_size: int = field(default=DEFAULT_CURSOR_WINDOW, compare=False)

    @classmethod
    def start_of_feed(cls, chat_feed_id: str) -> StreamCursor:
        return cls(chat_feed_id=chat_feed_id)

    @classmethod
    def from_last_output_record(cls, record: str | Mapping[str, Any]) -> StreamCursor:
        """Rebuild the cursor that was current right after ``record`` was written."""
        payload = _decode_record(record)

        chat_feed_id = _to_optional_text(payload.get(RECORD_CHAT_ID_KEY))
        if chat_feed_id is None:
            chat_feed_id = _chat_id_from_items(payload)
        if chat_feed_id is None:
            raise MalformedResumeStateError(
                "Could not extract chat ID from last output record "
                "(no liveChatId field and no items with snippet.liveChatId)"
            )

        next_page_token = _to_optional_text(payload.get(RECORD_NEXT_PAGE_TOKEN_KEY))
        if next_page_token is None:
            # A record without nextPageToken did not move the cursor.
            next_page_token = _to_optional_text(payload.get(RECORD_PAGE_TOKEN_KEY))
        return cls(chat_feed_id=chat_feed_id, page_token=next_page_token)

    def advance(self, page: Page) -> StreamCursor:
        next_token = page.next_page_token
        delivered = _bounded(
            (*self.delivered_message_ids, *page.message_ids()),
            self.window_size,
        )

        if next_token is None or next_token == self.page_token:
            return StreamCursor(
                chat_feed_id=self.chat_feed_id,
                page_token=self.page_token,
                delivered_message_ids=delivered,
                seen_page_tokens=self.seen_page_tokens,
                window_size=self.window_size,
            )

        if next_token in self.seen_page_tokens:
            raise CursorRewindError(
                f"Live chat feed rewound from page token {self.page_token!r} "
                f"to already consumed token {next_token!r}",
                current_token=self.page_token,
                rewound_token=next_token,
            )

        seen_tokens = self.seen_page_tokens
        if self.page_token is not None:
            seen_tokens = _bounded((*seen_tokens, self.page_token), self.window_size)

        return StreamCursor(
            chat_feed_id=self.chat_feed_id,
            page_token=next_token,
            delivered_message_ids=delivered,
            seen_page_tokens=seen_tokens,
            window_size=self.window_size,
        )

    def duplicate_ids(self, page: Page) -> list[str]:
        delivered = set(self.delivered_message_ids)
        duplicates: list[str] = []
        for message_id in page.message_ids():
            if message_id in delivered:
                duplicates.append(message_id)
            delivered.add(message_id)
        return duplicates


def page_from_payload(payload: Mapping[str, Any], *, chat_feed_id: str) -> Page:
    raw = dict(payload)
    messages: list[Message] = []
    for item in _as_list(raw.get("items")):
        message = _message_from_item(_as_dict(item))
        if message is not None:
            messages.append(message)

    return Page(
        chat_feed_id=chat_feed_id,
        next_page_token=_to_optional_text(raw.get(RECORD_NEXT_PAGE_TOKEN_KEY)),
        items=tuple(messages),
        raw_payload=raw,
    )


def _message_from_item(item: dict[str, Any]) -> Message | None:
    message_id = _to_optional_text(item.get("id"))
    if message_id is None:
        return None

    snippet = _as_dict(item.get("snippet"))
    author_details = _as_dict(item.get("authorDetails"))
    text_details = _as_dict(snippet.get("textMessageDetails"))

    author = _to_optional_text(author_details.get("displayName")) or _to_optional_text(
        snippet.get("authorChannelId")
    )
    text = _to_optional_text(snippet.get("displayMessage")) or _to_optional_text(
        text_details.get("messageText")
    )
    return Message(
        id=message_id,
        author=author,
        text=text,
        published_at=_to_optional_text(snippet.get("publishedAt")),
        raw_payload=item,
    )


def _decode_record(record: str | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(record, Mapping):
        return dict(record)
    try:
        parsed = json.loads(record)
    except json.JSONDecodeError as exc:
        raise MalformedResumeStateError(f"Failed to parse last output record: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedResumeStateError("Last output record is not a JSON object")
    return cast(dict[str, Any], parsed)


def _chat_id_from_items(payload: Mapping[str, Any]) -> str | None:
    for item in _as_list(payload.get("items")):
        snippet = _as_dict(_as_dict(item).get("snippet"))
        chat_id = _to_optional_text(snippet.get("liveChatId"))
        if chat_id is not None:
            return chat_id
    return None


def _bounded(values: tuple[str, ...], limit: int) -> tuple[str, ...]:
    if len(values) <= limit:
        return values
    return values[-limit:]


def _as_dict(value: object) -> dict[str, Any]:
    if isinstance(value, dict):
        return cast(dict[str, Any], value)
    return {}


def _as_list(value: object) -> list[Any]:
    if isinstance(value, list):
        return cast(list[Any], value)
    return []


def _to_optional_text(value: object) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        if stripped:
            return stripped
    return None
