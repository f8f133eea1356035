"""
Normalization helpers for Baileys-shaped message/contact payloads.

Payloads arrive as JSON dicts (`WebMessageInfo`, `Contact`, `Chat`) from the
session bridge. Everything here is pure so it can be shared by history sync,
live ingestion and tests.
"""

from __future__ import annotations

from typing import Any, Literal, TypeAlias

from .constants import FALLBACK_CHAT_NAMES, STATUS_CODE_DELIVERED, STATUS_CODE_READ

ContentType: TypeAlias = Literal["text", "image", "document"]
DeliveryStatus: TypeAlias = Literal["sent", "delivered", "read"]


def _sub(msg: dict[str, Any] | None, key: str) -> dict[str, Any] | None:
    if not isinstance(msg, dict):
        return None
    val = msg.get(key)
    return val if isinstance(val, dict) else None


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def extract_message_text(msg: dict[str, Any] | None) -> str | None:
    """
    Best-effort text extraction from a `Message` payload.

    First non-empty of: plain conversation text, extended text, image caption,
    document caption.
    """

    if not isinstance(msg, dict):
        return None

    conv = _text(msg.get("conversation"))
    if conv:
        return conv

    etm = _sub(msg, "extendedTextMessage")
    if etm and _text(etm.get("text")):
        return etm["text"]

    for media_key in ("imageMessage", "documentMessage"):
        media = _sub(msg, media_key)
        if media and _text(media.get("caption")):
            return media["caption"]

    return None


def content_type_of(msg: dict[str, Any] | None) -> ContentType:
    if _sub(msg, "imageMessage") is not None:
        return "image"
    if _sub(msg, "documentMessage") is not None:
        return "document"
    return "text"


def attachment_of(msg: dict[str, Any] | None) -> tuple[str | None, str | None]:
    """(url, file name) of the media part, if any."""

    for media_key in ("imageMessage", "documentMessage"):
        media = _sub(msg, media_key)
        if media is None:
            continue
        url = _text(media.get("url")) or _text(media.get("directPath"))
        return url, _text(media.get("fileName"))
    return None, None


def status_from_code(code: Any) -> DeliveryStatus:
    try:
        value = int(code)
    except (TypeError, ValueError):
        return "sent"
    if value == STATUS_CODE_READ:
        return "read"
    if value == STATUS_CODE_DELIVERED:
        return "delivered"
    return "sent"


def timestamp_of(value: Any) -> int | None:
    """Seconds since epoch from a `messageTimestamp`-like value (int, str or Long dict)."""

    if isinstance(value, dict):
        # protobufjs Long serialized as {"low": ..., "high": ..., "unsigned": ...}
        low = value.get("low")
        high = value.get("high") or 0
        if not isinstance(low, int):
            return None
        return (int(high) << 32) | (low & 0xFFFFFFFF)
    try:
        ts = int(value)
    except (TypeError, ValueError):
        return None
    return ts if ts > 0 else None


def is_real_name(name: str | None, jid: str | None = None) -> bool:
    """False for empty names, the JID itself and "Unknown"-style placeholders."""

    if not name or not name.strip():
        return False
    if jid and name == jid:
        return False
    return name.strip().lower() not in FALLBACK_CHAT_NAMES


def contact_display_name(contact: dict[str, Any]) -> str:
    """Explicit name > notify (push) name > verified business name > JID."""

    jid = str(contact.get("id") or "")
    for key in ("name", "notify", "verifiedName"):
        candidate = contact.get(key)
        if isinstance(candidate, str) and is_real_name(candidate, jid):
            return candidate
    return jid


def presence_flags(presence: str | None) -> tuple[bool, bool]:
    """Map a provider presence value onto `(online, typing)`."""

    if presence in ("composing", "recording"):
        return True, True
    if presence in ("available", "paused"):
        return True, False
    return False, False


def build_outbound_payload(
    content: str,
    *,
    kind: ContentType = "text",
    attachment_ref: str | None = None,
    attachment_name: str | None = None,
) -> dict[str, Any]:
    """Bridge `send` payload for a text, image or document message."""

    if kind == "image":
        if not attachment_ref:
            raise ValueError("image messages need an attachment reference")
        return {"image": {"url": attachment_ref}, "caption": content}
    if kind == "document":
        if not attachment_ref:
            raise ValueError("document messages need an attachment reference")
        payload: dict[str, Any] = {"document": {"url": attachment_ref}, "caption": content}
        if attachment_name:
            payload["fileName"] = attachment_name
        return payload
    return {"text": content}
