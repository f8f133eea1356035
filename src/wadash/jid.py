from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, TypeAlias, cast

JidServer: TypeAlias = Literal[
    "c.us",
    "g.us",
    "broadcast",
    "s.whatsapp.net",
    "lid",
    "newsletter",
]

S_WHATSAPP_NET = "s.whatsapp.net"
STATUS_BROADCAST = "status@broadcast"


@dataclass(slots=True)
class FullJid:
    user: str
    server: JidServer
    device: int | None = None


def jid_encode(user: str | int | None, server: str, device: int | None = None) -> str:
    u = "" if user is None else str(user)
    # device=0 is the primary device and is never written out.
    d = f":{device}" if device else ""
    return f"{u}{d}@{server}"


def jid_decode(jid: str | None) -> FullJid | None:
    if not jid:
        return None
    sep = jid.find("@")
    if sep < 0:
        return None

    server = cast(JidServer, jid[sep + 1 :])
    user_agent, *device_parts = jid[:sep].split(":")
    user = user_agent.split("_", 1)[0]
    device = None
    if device_parts and device_parts[0].isdigit():
        device = int(device_parts[0])
    return FullJid(user=user, server=server, device=device)


def jid_normalized_user(jid: str | None) -> str:
    """`123:7@s.whatsapp.net` -> `123@s.whatsapp.net`; empty string when unparsable."""

    decoded = jid_decode(jid)
    if not decoded:
        return ""
    server = S_WHATSAPP_NET if decoded.server == "c.us" else decoded.server
    return jid_encode(decoded.user, server)


def is_group_jid(jid: str | None) -> bool:
    return bool(jid and jid.endswith("@g.us"))


def is_broadcast_jid(jid: str | None) -> bool:
    # Status updates and broadcast lists are not real conversations.
    return bool(jid and (jid == STATUS_BROADCAST or jid.endswith("@broadcast")))
