from __future__ import annotations


class WadashError(Exception):
    """Base error for the wadash package."""


class TransportError(WadashError):
    """WebSocket transport-level failure."""


class AdapterFault(WadashError):
    """The session adapter could not be constructed or its event stream broke."""


class NotConnectedError(WadashError):
    """An operation needed a paired session and there is none."""

    def __init__(self, message: str = "WhatsApp not connected") -> None:
        super().__init__(message)


class SendRejectedError(WadashError):
    """
    The session bridge rejected a command.

    The bridge answers with an `ack` frame carrying an `error` field.
    """

    def __init__(self, *, code: str, ack: dict[str, object] | None = None) -> None:
        super().__init__(f"command rejected (error={code})")
        self.code = code
        self.ack = ack or {}


class ReplyGenerationError(WadashError):
    """The auto-reply text generation call failed or returned nothing usable."""


class StoreError(WadashError):
    """Durable storage backend failure."""


class LifecycleError(WadashError):
    """An invalid connection state transition was requested."""


class UnknownEventError(WadashError):
    """The session bridge sent a frame of an unknown type."""


class AuthError(WadashError):
    """Credential store failure."""
