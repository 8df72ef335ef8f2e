import json
import logging

import pytest

from chat_branches.services.chat_files import ChatFileReader, SkippedLine


def _write_chat(path, lines) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def test_reader_resolves_clean_file_name(tmp_path):
    reader = ChatFileReader(tmp_path)

    path = reader.resolve_path("Story.JSONL", "Bob")

    assert path == (tmp_path / "Bob" / "Story.jsonl").resolve()
    assert reader.chat_file_name("Story") == "Story.jsonl"


def test_reader_rejects_paths_outside_chats_dir(tmp_path):
    reader = ChatFileReader(tmp_path / "chats")

    with pytest.raises(ValueError):
        reader.resolve_path("../../etc/passwd", "Bob")
    with pytest.raises(ValueError):
        reader.resolve_path("story", "/abs")
    with pytest.raises(ValueError):
        reader.resolve_path("", "Bob")
    with pytest.raises(ValueError):
        reader.resolve_path("sto\x00ry", "Bob")


def test_messages_skip_malformed_lines(tmp_path, caplog):
    _write_chat(
        tmp_path / "Bob" / "Story.jsonl",
        [
            json.dumps({"mes": "first"}),
            "",
            "not json",
            "42",
            json.dumps({"mes": "second"}),
        ],
    )
    chat = ChatFileReader(tmp_path).open("Story", "Bob")

    with caplog.at_level(logging.WARNING):
        messages = list(chat)

    assert [message["mes"] for message in messages] == ["first", "second"]
    assert [skip.line_number for skip in chat.skipped] == [3, 4]
    assert chat.skipped[1] == SkippedLine(line_number=4, error="not a JSON object")
    assert "Failed to parse line 3" in caplog.text


def test_messages_skip_lines_with_invalid_utf8(tmp_path):
    chat_path = tmp_path / "Bob" / "Story.jsonl"
    chat_path.parent.mkdir(parents=True)
    chat_path.write_bytes(b'{"mes":"one"}\n{"mes":"\xff\xfe"}\n{"mes":"two"}\n')
    chat = ChatFileReader(tmp_path).open("Story", "Bob")

    assert [message["mes"] for message in chat] == ["one", "two"]
    assert [skip.line_number for skip in chat.skipped] == [2]


def test_messages_are_lazy_and_restartable(tmp_path):
    chat_path = tmp_path / "Bob" / "Story.jsonl"
    _write_chat(chat_path, [json.dumps({"mes": "one"})])
    chat = ChatFileReader(tmp_path).open("Story", "Bob")

    _write_chat(chat_path, [json.dumps({"mes": "one"}), json.dumps({"mes": "two"})])

    assert [message["mes"] for message in chat] == ["one", "two"]
    assert [message["mes"] for message in chat] == ["one", "two"]
    iterator = iter(chat)
    assert next(iterator) == {"mes": "one"}


def test_missing_chat_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        ChatFileReader(tmp_path).open("Nope", "Bob")
