from __future__ import annotations

import json

import pytest

from livechat_fetcher.errors import CursorRewindError, MalformedResumeStateError
from livechat_fetcher.models.chat import StreamCursor, page_from_payload
from stream_fakes import chat_page, chat_payload


def test_page_from_payload_parses_messages() -> None:
    payload = chat_payload("tok-2", "m1", "m2")
    payload["items"].append({"kind": "youtube#liveChatMessage", "snippet": {}})

    page = page_from_payload(payload, chat_feed_id="chat-1")

    assert page.chat_feed_id == "chat-1"
    assert page.next_page_token == "tok-2"
    assert page.message_ids() == ["m1", "m2"]
    assert page.items[0].author == "viewer-m1"
    assert page.items[0].text == "hello from m1"
    assert page.items[0].published_at == "2025-01-01T00:00:00Z"
    assert page.is_heartbeat is False


def test_message_text_falls_back_to_text_message_details() -> None:
    payload = {
        "items": [
            {
                "id": "m1",
                "snippet": {
                    "authorChannelId": "UC123",
                    "textMessageDetails": {"messageText": "raw text"},
                },
            }
        ]
    }

    page = page_from_payload(payload, chat_feed_id="chat-1")

    assert page.items[0].author == "UC123"
    assert page.items[0].text == "raw text"
    assert page.next_page_token is None


def test_page_record_carries_cursor_fields() -> None:
    page = chat_page("tok-3", "m1")
    record = page.to_record()

    assert record["liveChatId"] == "chat-1"
    assert record["pageToken"] is None
    assert record["nextPageToken"] == "tok-3"
    assert record["items"][0]["id"] == "m1"


def test_empty_page_is_heartbeat() -> None:
    page = chat_page("tok-1")
    assert page.is_heartbeat is True
    assert page.to_record()["items"] == []


def test_cursor_advance_moves_to_next_token() -> None:
    cursor = StreamCursor.start_of_feed("chat-1")

    advanced = cursor.advance(chat_page("tok-1", "m1"))

    assert advanced == StreamCursor(chat_feed_id="chat-1", page_token="tok-1")
    assert advanced.delivered_message_ids == ("m1",)
    assert cursor.page_token is None


def test_cursor_keeps_token_when_page_has_none() -> None:
    cursor = StreamCursor(chat_feed_id="chat-1", page_token="tok-1")

    advanced = cursor.advance(chat_page(None, "m1"))

    assert advanced.page_token == "tok-1"


def test_cursor_accepts_repeated_current_token() -> None:
    cursor = StreamCursor(chat_feed_id="chat-1", page_token="tok-1")

    advanced = cursor.advance(chat_page("tok-1"))

    assert advanced.page_token == "tok-1"


def test_cursor_rejects_rewind_to_consumed_token() -> None:
    cursor = StreamCursor.start_of_feed("chat-1")
    cursor = cursor.advance(chat_page("tok-1", "m1"))
    cursor = cursor.advance(chat_page("tok-2", "m2"))

    with pytest.raises(CursorRewindError) as exc_info:
        cursor.advance(chat_page("tok-1", "m3"))

    assert exc_info.value.current_token == "tok-2"
    assert exc_info.value.rewound_token == "tok-1"


def test_cursor_detects_duplicate_message_ids() -> None:
    cursor = StreamCursor.start_of_feed("chat-1").advance(chat_page("tok-1", "m1", "m2"))

    duplicates = cursor.duplicate_ids(chat_page("tok-2", "m2", "m3", "m3"))

    assert duplicates == ["m2", "m3"]


def test_cursor_window_is_bounded() -> None:
    cursor = StreamCursor(chat_feed_id="chat-1", window_size=3)
    for index in range(5):
        cursor = cursor.advance(chat_page(f"tok-{index}", f"m{index}"))

    assert cursor.delivered_message_ids == ("m2", "m3", "m4")
    assert len(cursor.seen_page_tokens) == 3


def test_cursor_from_last_output_record_uses_next_page_token() -> None:
    page = chat_page("tok-9", "m1")
    line = json.dumps(page.to_record())

    cursor = StreamCursor.from_last_output_record(line)

    assert cursor == StreamCursor(chat_feed_id="chat-1", page_token="tok-9")


def test_cursor_from_record_without_next_token_uses_request_token() -> None:
    record = {"liveChatId": "chat-1", "pageToken": "tok-4", "items": []}

    cursor = StreamCursor.from_last_output_record(record)

    assert cursor.page_token == "tok-4"


def test_cursor_from_record_falls_back_to_item_chat_id() -> None:
    record = chat_payload("tok-5", "m1", chat_id="legacy-chat")

    cursor = StreamCursor.from_last_output_record(record)

    assert cursor.chat_feed_id == "legacy-chat"
    assert cursor.page_token == "tok-5"


@pytest.mark.parametrize(
    "line",
    [
        "not json",
        "[1, 2]",
        json.dumps({"nextPageToken": "tok", "items": []}),
    ],
)
def test_cursor_from_malformed_record_raises(line: str) -> None:
    with pytest.raises(MalformedResumeStateError):
        StreamCursor.from_last_output_record(line)
