from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

REPLY_ID_PREFIX = "assistant_"


class Transport(str, Enum):
    TWILIO = "twilio"
    ULTRAMSG = "ultramsg"
    WEB = "web"


class InboundMessage(BaseModel):
    """Canonical form of one inbound delivery, independent of the provider."""

    user_id: str
    text: str = ""
    message_id: str
    raw_transport_address: str
    transport: Transport
    audio_url: Optional[str] = None
    audio_mime_type: Optional[str] = None
    sender_name: Optional[str] = None
    # True when the provider gave no message id and one was derived from arrival time.
    synthesized_id: bool = False

    @property
    def reply_id(self) -> str:
        return paired_reply_id(self.message_id)

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_url)


def paired_reply_id(message_id: str) -> str:
    return f"{REPLY_ID_PREFIX}{message_id}"


class UltraMsgData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    sid: Optional[str] = None
    from_address: Optional[str] = Field(default=None, validation_alias=AliasChoices("from", "from_address"))
    to: Optional[str] = None
    body: Optional[str] = None
    type: Optional[str] = "chat"  # chat, ptt, audio, image, ...
    media: Optional[str] = None
    pushname: Optional[str] = None
    from_me: bool = Field(default=False, validation_alias=AliasChoices("fromMe", "from_me"))


class UltraMsgWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_type: Optional[str] = None
    instance_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("instanceId", "instance_id"))
    hash: Optional[str] = None
    data: Optional[UltraMsgData] = None


class TwilioWebhook(BaseModel):
    """Twilio WhatsApp webhook fields (form encoded, PascalCase keys)."""

    model_config = ConfigDict(extra="ignore")

    From: Optional[str] = None
    To: Optional[str] = None
    Body: Optional[str] = None
    MessageSid: Optional[str] = None
    SmsMessageSid: Optional[str] = None
    NumMedia: int = 0
    MediaUrl0: Optional[str] = None
    MediaContentType0: Optional[str] = None
    ProfileName: Optional[str] = None
    MessageStatus: Optional[str] = None


class WebChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(validation_alias=AliasChoices("sessionId", "session_id"))
    message_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("messageId", "message_id"))
    text: str = ""
