from typing import Any, Optional, Union
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

WEBHOOK_EVENTS = (
    "qr_code",
    "connected",
    "disconnected",
    "logged_out",
    "reconnecting",
    "message",
    "message_status",
)
# Accepted but carry nothing to store.
IGNORED_EVENTS = ("reconnecting",)


class WhatsappWebhookEvent(BaseModel):
    """Gateway webhook payload: `{event, sessionId, tenantId, ...data, timestamp}`."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    event: Optional[str] = None
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("sessionId", "session_id"))
    tenant_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("tenantId", "tenant_id"))
    timestamp: Optional[Union[int, float, str]] = None

    # qr_code / connected
    qr_code: Optional[str] = Field(default=None, validation_alias=AliasChoices("qrCode", "qr"))
    phone_number: Optional[str] = Field(default=None, validation_alias=AliasChoices("phoneNumber", "phone_number"))
    push_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("pushName", "push_name"))

    # message / message_status
    message_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("messageId", "id"))
    remote_jid: Optional[str] = Field(default=None, validation_alias=AliasChoices("from", "remoteJid"))
    from_me: bool = Field(default=False, validation_alias=AliasChoices("fromMe", "from_me"))
    is_group: Optional[bool] = Field(default=None, validation_alias=AliasChoices("isGroup", "is_group"))
    is_history: bool = Field(default=False, validation_alias=AliasChoices("isHistory", "is_history"))
    participant: Optional[str] = None
    sender_phone: Optional[str] = Field(default=None, validation_alias=AliasChoices("senderPhone", "sender_phone"))
    sender_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("senderName", "sender_name"))
    group_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("groupName", "group_name"))
    profile_picture: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("profilePicture", "profilePictureUrl", "profile_picture"),
    )
    type: Optional[str] = "text"
    text: Optional[str] = None
    body: Optional[str] = None
    media_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("mediaUrl", "media_url"))
    media_filename: Optional[str] = Field(default=None, validation_alias=AliasChoices("mediaFilename", "media_filename"))
    media_mimetype: Optional[str] = Field(default=None, validation_alias=AliasChoices("mediaMimetype", "media_mimetype"))
    status: Optional[str] = None

    @field_validator("from_me", "is_history", mode="before")
    @classmethod
    def _none_is_false(cls, value):
        return False if value is None else value

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, value):
        return value or "text"

    @property
    def content(self) -> Optional[str]:
        return self.text if self.text is not None else self.body

    @property
    def is_group_chat(self) -> bool:
        if self.is_group is not None:
            return bool(self.is_group)
        return bool(self.remote_jid and self.remote_jid.endswith("@g.us"))


class WebhookResponse(BaseModel):
    success: bool
    message: str
    conversation_id: Optional[UUID] = None
    message_id: Optional[str] = None
    auto_reply_scheduled: bool = False


class MergeDuplicatesResponse(BaseModel):
    success: bool
    merged: int
    dry_run: bool = False
    groups: list[dict[str, Any]] = []


class FixContactNamesResponse(BaseModel):
    success: bool
    message: str
    fixed: int = 0
    cleared: int = 0
    already_ok: int = 0
    skipped: int = 0
