from datetime import UTC, datetime

import pytest

from supportdesk.domain.content import (
    DELETED_MESSAGE_TOMBSTONE,
    AttachmentPayload,
    ReplyReference,
    SystemPayload,
    TextPayload,
    build_payload,
    parse_payload,
    truncate_preview,
)
from supportdesk.domain.enums import MessageStatus, MessageType
from supportdesk.domain.exceptions import InvalidMessageContent


def test_build_text_payload_defaults() -> None:
    payload = build_payload(MessageType.TEXT, "hello")

    assert isinstance(payload, TextPayload)
    assert payload.status == MessageStatus.SENT
    assert payload.reactions == {}
    assert payload.mentions == []
    assert payload.version == 1
    assert payload.timestamps.delivered is None


def test_payload_variant_follows_type() -> None:
    image = build_payload(MessageType.IMAGE, "photo", metadata={"file_name": "a.png"})
    notice = build_payload(MessageType.NOTIFICATION, "agent joined")

    assert isinstance(image, AttachmentPayload)
    assert isinstance(notice, SystemPayload)


def test_attachment_requires_file_name() -> None:
    with pytest.raises(InvalidMessageContent):
        build_payload(MessageType.FILE, "report", metadata={"mime_type": "application/pdf"})


def test_text_rejects_attachment_metadata() -> None:
    with pytest.raises(InvalidMessageContent):
        build_payload(MessageType.TEXT, "hi", metadata={"file_name": "a.png"})


def test_unknown_type_is_rejected() -> None:
    with pytest.raises(ValueError):
        build_payload("sticker", "hi")


def test_stored_json_parses_back_to_same_variant() -> None:
    original = build_payload(
        MessageType.AUDIO,
        "voice note",
        metadata={"file_name": "note.ogg", "duration": "0:12"},
        reply_to=ReplyReference(message_id="m-1", preview="earlier"),
        mentions=["u-1", "u-1", "u-2"],
    )

    restored = parse_payload(original.to_json())

    assert isinstance(restored, AttachmentPayload)
    assert restored.type == "audio"
    assert restored.metadata is not None and restored.metadata.duration == "0:12"
    assert restored.reply_to == ReplyReference(message_id="m-1", preview="earlier")
    assert restored.mentions == ["u-1", "u-2"]


def test_parse_rejects_empty_or_untyped() -> None:
    with pytest.raises(InvalidMessageContent):
        parse_payload(None)
    with pytest.raises(InvalidMessageContent):
        parse_payload({"content": "no type"})


def test_edit_bumps_version_and_stamps_editor() -> None:
    payload = build_payload(MessageType.TEXT, "helo")
    at = datetime(2026, 1, 1, tzinfo=UTC)

    payload.edit("hello", "user-1", at)

    assert payload.content == "hello"
    assert payload.edited is not None and payload.edited.by == "user-1"
    assert payload.version == 2


def test_soft_delete_tombstones_content() -> None:
    payload = build_payload(MessageType.IMAGE, "photo", metadata={"file_name": "a.png"})

    payload.soft_delete("user-1", datetime.now(UTC))

    assert payload.is_deleted
    assert payload.content == DELETED_MESSAGE_TOMBSTONE
    assert payload.metadata is None
    assert payload.version == 2
    # a deleted attachment no longer needs its file metadata
    assert parse_payload(payload.to_json()).is_deleted


def test_reactions_are_unique_and_pruned() -> None:
    payload = build_payload(MessageType.TEXT, "nice")

    assert payload.add_reaction("+1", "u-1")
    assert not payload.add_reaction("+1", "u-1")
    assert payload.add_reaction("+1", "u-2")
    assert payload.reactions == {"+1": ["u-1", "u-2"]}

    assert payload.remove_reaction("+1", "u-1")
    assert not payload.remove_reaction("+1", "u-1")
    assert payload.remove_reaction("+1", "u-2")
    assert payload.reactions == {}


def test_mark_status_stamps_timestamps() -> None:
    payload = build_payload(MessageType.TEXT, "hi")
    at = datetime.now(UTC)

    payload.mark_status(MessageStatus.DELIVERED, at)
    assert payload.timestamps.delivered == at

    payload.mark_status(MessageStatus.READ, at)
    assert payload.status == MessageStatus.READ
    assert payload.timestamps.read == at


def test_truncate_preview() -> None:
    assert truncate_preview("x" * 150, 100) == "x" * 100
    assert truncate_preview("short", 100) == "short"
