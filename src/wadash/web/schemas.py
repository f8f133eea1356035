from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class UserOut(BaseModel):
    id: str
    name: Optional[str] = None


class StatusOut(BaseModel):
    status: Literal["connecting", "connected", "disconnected"]
    user: Optional[UserOut] = None
    qr: Optional[str] = None


class ActionResponse(BaseModel):
    success: bool


class ChatOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    jid: str
    name: str
    unread_count: int = 0
    last_message_timestamp_s: Optional[int] = None
    is_online: bool = False
    is_typing: bool = False
    last_seen_s: Optional[int] = None
    is_starred: bool = False
    is_muted: bool = False
    is_pinned: bool = False
    is_marked_unread: bool = False
    is_group: bool = False
    group_description: Optional[str] = None
    last_message_from_me: bool = False


class ChatListResponse(BaseModel):
    chats: list[ChatOut]


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    chat_jid: str
    sender_jid: str
    sender_name: Optional[str] = None
    content: Optional[str] = None
    content_type: Literal["text", "image", "document"] = "text"
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    timestamp_s: int
    from_me: bool = False
    status: Literal["sent", "delivered", "read"] = "sent"
    is_starred: bool = False


class MessageListResponse(BaseModel):
    messages: list[MessageOut]


class SendMessageRequest(BaseModel):
    chat_jid: str = Field(min_length=1, description="Recipient chat JID.")
    content: str = Field(default="", description="Text, or caption for media.")
    kind: Literal["text", "image", "document"] = "text"
    attachment_ref: Optional[str] = Field(default=None, description="Media URL for image/document.")
    attachment_name: Optional[str] = None

    @model_validator(mode="after")
    def check_payload(self) -> "SendMessageRequest":
        if self.kind == "text" and not self.content.strip():
            raise ValueError("Text messages cannot be empty")
        if self.kind != "text" and not self.attachment_ref:
            raise ValueError(f"{self.kind} messages need an attachment_ref")
        return self


class StarRequest(BaseModel):
    starred: bool = True


class SettingsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    auto_reply_enabled: bool
    auto_reply_message: str
    bot_persona: str


class SettingsUpdateRequest(BaseModel):
    auto_reply_enabled: Optional[bool] = None
    auto_reply_message: Optional[str] = None
    bot_persona: Optional[str] = None

    @field_validator("auto_reply_message")
    @classmethod
    def validate_message(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not value:
            raise ValueError("Auto-reply message cannot be empty")
        return value
