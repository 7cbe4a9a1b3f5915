from __future__ import annotations

import io
import json
import stat
from pathlib import Path

import pytest

from livechat_fetcher.errors import ConfigurationError, DurabilityError
from livechat_fetcher.repositories.output_sink import FileOutputSink, StdoutOutputSink
from livechat_fetcher.repositories.token_store import FileTokenStore, OAuthTokenRecord
from stream_fakes import chat_page


def test_file_output_sink_appends_one_line_per_page(tmp_path: Path) -> None:
    output = tmp_path / "nested" / "chat.jsonl"
    sink = FileOutputSink(output)

    sink.emit(chat_page("tok-1", "m1"))
    sink.emit(chat_page("tok-2"))
    sink.close()

    lines = output.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["nextPageToken"] == "tok-1"
    assert json.loads(lines[1])["items"] == []


def test_file_output_sink_keeps_existing_records(tmp_path: Path) -> None:
    output = tmp_path / "chat.jsonl"
    output.write_text('{"liveChatId":"chat-1","nextPageToken":"tok-1"}\n', encoding="utf-8")

    sink = FileOutputSink(output)
    sink.emit(chat_page("tok-2", "m2"))
    sink.close()

    lines = output.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[1])["nextPageToken"] == "tok-2"


def test_file_output_sink_last_record(tmp_path: Path) -> None:
    output = tmp_path / "chat.jsonl"
    sink = FileOutputSink(output)
    assert sink.last_record() is None

    sink.emit(chat_page("tok-1", "m1"))
    sink.emit(chat_page("tok-2", "m2"))

    last = sink.last_record()
    assert last is not None
    assert json.loads(last)["nextPageToken"] == "tok-2"
    sink.close()


def test_file_output_sink_truncates_torn_tail(tmp_path: Path) -> None:
    output = tmp_path / "chat.jsonl"
    complete = '{"liveChatId":"chat-1","nextPageToken":"tok-1"}\n'
    output.write_text(complete + '{"liveChatId":"chat-1","nextPa', encoding="utf-8")

    sink = FileOutputSink(output)

    assert output.read_text(encoding="utf-8") == complete
    last = sink.last_record()
    assert last is not None
    assert json.loads(last)["nextPageToken"] == "tok-1"
    sink.close()


def test_file_output_sink_truncates_file_without_newline(tmp_path: Path) -> None:
    output = tmp_path / "chat.jsonl"
    output.write_text('{"partial"', encoding="utf-8")

    sink = FileOutputSink(output)

    assert output.read_text(encoding="utf-8") == ""
    assert sink.last_record() is None
    sink.close()


def test_file_output_sink_rejects_emit_after_close(tmp_path: Path) -> None:
    sink = FileOutputSink(tmp_path / "chat.jsonl")
    sink.close()
    sink.close()

    with pytest.raises(DurabilityError):
        sink.emit(chat_page("tok-1", "m1"))


def test_file_output_sink_on_directory_is_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        FileOutputSink(tmp_path)


def test_stdout_output_sink_writes_compact_json() -> None:
    stream = io.StringIO()
    sink = StdoutOutputSink(stream)

    sink.emit(chat_page("tok-1", "m1"))
    sink.close()

    output = stream.getvalue()
    assert output.endswith("\n")
    assert output.count("\n") == 1
    assert json.loads(output)["liveChatId"] == "chat-1"
    assert sink.last_record() is None


def _record(**overrides: object) -> OAuthTokenRecord:
    values: dict[str, object] = {
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expires_at": 1_700_000_000,
    }
    values.update(overrides)
    return OAuthTokenRecord.model_validate(values)


def test_file_token_store_round_trip_with_private_mode(tmp_path: Path) -> None:
    store = FileTokenStore(tmp_path / "auth" / "token.json")
    assert store.load() is None
    assert store.exists() is False

    store.save(_record())

    assert store.exists() is True
    mode = stat.S_IMODE(store.path.stat().st_mode)
    assert mode == 0o600
    assert store.load() == _record()
    assert not (tmp_path / "auth" / "token.json.tmp").exists()


def test_file_token_store_replaces_existing_record(tmp_path: Path) -> None:
    store = FileTokenStore(tmp_path / "token.json")
    store.save(_record())
    store.save(_record(access_token="access-2", expires_at=1_700_003_600))

    loaded = store.load()
    assert loaded is not None
    assert loaded.access_token == "access-2"
    assert loaded.refresh_token == "refresh-1"


def test_file_token_store_invalid_file_raises(tmp_path: Path) -> None:
    path = tmp_path / "token.json"
    path.write_text('{"access_token": "only"}', encoding="utf-8")

    with pytest.raises(ConfigurationError):
        FileTokenStore(path).load()


def test_token_record_expiry_margin() -> None:
    record = _record(expires_at=1_000)

    assert record.expires_within(60, now=930) is False
    assert record.expires_within(60, now=940) is True
    assert record.token_type == "Bearer"
