from __future__ import annotations

DEFAULT_BRIDGE_URL = "ws://127.0.0.1:8787/session"
DEFAULT_BROWSER = ("WhatsApp Bot Dashboard", "Chrome", "1.0.0")

# Close reason code mirrored from Baileys' DisconnectReason.loggedOut.
DISCONNECT_LOGGED_OUT = 401

# Provider message status codes (WebMessageInfo.Status).
STATUS_CODE_DELIVERED = 3
STATUS_CODE_READ = 4

DEFAULT_AUTO_REPLY_MESSAGE = "Hello! This is an automated message."
DEFAULT_BOT_PERSONA = "You are a helpful assistant."

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_REPLY_MODEL = "google/gemini-2.0-flash-lite-preview-02-05:free"

# Placeholder names that never count as a "real" chat name.
FALLBACK_CHAT_NAMES = frozenset({"", "unknown", "unknown contact"})
