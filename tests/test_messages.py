from __future__ import annotations

import pytest

from wadash.messages import (
    attachment_of,
    build_outbound_payload,
    contact_display_name,
    content_type_of,
    extract_message_text,
    is_real_name,
    presence_flags,
    status_from_code,
    timestamp_of,
)


def test_extract_message_text_precedence() -> None:
    assert extract_message_text({"conversation": "plain"}) == "plain"
    assert extract_message_text({"extendedTextMessage": {"text": "ext"}}) == "ext"
    assert extract_message_text({"imageMessage": {"caption": "pic"}}) == "pic"
    assert extract_message_text({"documentMessage": {"caption": "doc"}}) == "doc"
    assert (
        extract_message_text({"conversation": "", "extendedTextMessage": {"text": "ext"}})
        == "ext"
    )


@pytest.mark.parametrize(
    "msg",
    [None, {}, {"conversation": ""}, {"imageMessage": {}}, {"reactionMessage": {"text": "x"}}],
)
def test_extract_message_text_empty(msg) -> None:
    assert extract_message_text(msg) is None


def test_content_type_and_attachment() -> None:
    image = {"imageMessage": {"url": "https://mmg/x.enc", "caption": "c"}}
    doc = {"documentMessage": {"directPath": "/v/t62/doc", "fileName": "cv.pdf"}}

    assert content_type_of(image) == "image"
    assert content_type_of(doc) == "document"
    assert content_type_of({"conversation": "hi"}) == "text"

    assert attachment_of(image) == ("https://mmg/x.enc", None)
    assert attachment_of(doc) == ("/v/t62/doc", "cv.pdf")
    assert attachment_of({"conversation": "hi"}) == (None, None)


@pytest.mark.parametrize(
    ("code", "status"),
    [(4, "read"), (3, "delivered"), ("4", "read"), (2, "sent"), (5, "sent"), (None, "sent")],
)
def test_status_from_code(code, status) -> None:
    assert status_from_code(code) == status


def test_timestamp_of() -> None:
    assert timestamp_of(1_700_000_000) == 1_700_000_000
    assert timestamp_of("1700000000") == 1_700_000_000
    assert timestamp_of({"low": 1_700_000_000, "high": 0, "unsigned": True}) == 1_700_000_000
    assert timestamp_of(0) is None
    assert timestamp_of("soon") is None
    assert timestamp_of(None) is None


def test_contact_display_name_order() -> None:
    jid = "111@s.whatsapp.net"
    assert contact_display_name({"id": jid, "name": "Alice", "notify": "Al"}) == "Alice"
    assert contact_display_name({"id": jid, "notify": "Al", "verifiedName": "Shop"}) == "Al"
    assert contact_display_name({"id": jid, "verifiedName": "Shop"}) == "Shop"
    assert contact_display_name({"id": jid, "name": "Unknown"}) == jid


def test_is_real_name() -> None:
    jid = "111@s.whatsapp.net"
    assert is_real_name("Alice", jid)
    assert not is_real_name(None)
    assert not is_real_name("  ")
    assert not is_real_name(jid, jid)
    assert not is_real_name("Unknown Contact")


@pytest.mark.parametrize(
    ("presence", "flags"),
    [
        ("available", (True, False)),
        ("composing", (True, True)),
        ("recording", (True, True)),
        ("paused", (True, False)),
        ("unavailable", (False, False)),
        (None, (False, False)),
    ],
)
def test_presence_flags(presence, flags) -> None:
    assert presence_flags(presence) == flags


def test_build_outbound_payload_shapes() -> None:
    assert build_outbound_payload("hi") == {"text": "hi"}
    assert build_outbound_payload("look", kind="image", attachment_ref="https://x/y.jpg") == {
        "image": {"url": "https://x/y.jpg"},
        "caption": "look",
    }
    assert build_outbound_payload(
        "", kind="document", attachment_ref="https://x/cv.pdf", attachment_name="cv.pdf"
    ) == {"document": {"url": "https://x/cv.pdf"}, "caption": "", "fileName": "cv.pdf"}

    with pytest.raises(ValueError):
        build_outbound_payload("look", kind="image")
