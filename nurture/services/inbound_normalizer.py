"""Turn provider webhook payloads into ``InboundMessage``.

The parser is picked from the declared content type: JSON bodies are UltraMsg
events, URL-encoded and multipart form bodies are Twilio events. Anything the
normalizer cannot use comes back as a failed ``Result`` with one of the
``UNSUPPORTED_*`` / ``NO_MESSAGE`` / ``IGNORED_EVENT`` codes.
"""

import re
import time
from typing import Optional

from pydantic import ValidationError
from starlette.requests import ClientDisconnect, Request

from nurture.schemas.inbound import InboundMessage, Transport, TwilioWebhook, UltraMsgWebhook, WebChatRequest
from nurture.services.result import Result

UNSUPPORTED_CONTENT_TYPE = "unsupported_content_type"
UNSUPPORTED_PAYLOAD = "unsupported_payload"
NO_MESSAGE = "no_message"
IGNORED_EVENT = "ignored_event"

JSON_CONTENT = "json"
FORM_CONTENT = "form"

ULTRAMSG_MESSAGE_EVENT = "message_received"
ULTRAMSG_AUDIO_TYPES = {"ptt", "audio"}

WEB_SESSION_MAX_LENGTH = 128


def content_kind(content_type: Optional[str]) -> Optional[str]:
    media_type = (content_type or "").split(";")[0].strip().lower()
    if media_type == "application/json" or media_type.endswith("+json"):
        return JSON_CONTENT
    if media_type in {"application/x-www-form-urlencoded", "multipart/form-data"}:
        return FORM_CONTENT
    return None


def canonical_user_id(address: Optional[str]) -> str:
    """Digits-only id for phone-style addresses.

    ``whatsapp:+961 70 062 123`` and ``96170062123@c.us`` both map to
    ``96170062123``. Everything after ``@`` is a routing suffix.
    """
    if not address:
        return ""
    local_part = str(address).split("@", 1)[0]
    return re.sub(r"\D", "", local_part)


def sanitize_session_id(session_id: Optional[str]) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_-]", "", (session_id or "").strip())
    return cleaned[:WEB_SESSION_MAX_LENGTH]


def synthesize_message_id(user_id: str, received_at_ms: int) -> str:
    return f"{user_id}_{received_at_ms}"


async def read_payload(request: Request) -> Result[dict]:
    """Read the request body with the parser its content type calls for."""
    kind = content_kind(request.headers.get("content-type"))
    if kind is None:
        return Result.failure("Unsupported payload/content-type", UNSUPPORTED_CONTENT_TYPE)

    try:
        if kind == JSON_CONTENT:
            raw = await request.body()
            if not raw or not raw.strip():
                return Result.failure("Empty payload", NO_MESSAGE)
            try:
                payload = await request.json()
            except ValueError:
                return Result.failure("Malformed JSON payload", NO_MESSAGE)
        else:
            form = await request.form()
            payload = {key: value for key, value in form.items() if isinstance(value, str)}
    except ClientDisconnect:
        return Result.failure("Client disconnected", NO_MESSAGE)

    if not isinstance(payload, dict):
        return Result.failure("Payload is not an object", UNSUPPORTED_PAYLOAD)
    if not payload:
        return Result.failure("Empty payload", NO_MESSAGE)
    return Result.success(payload)


def normalize_payload(
    content_type: Optional[str],
    payload: Optional[dict],
    *,
    received_at_ms: Optional[int] = None,
) -> Result[InboundMessage]:
    kind = content_kind(content_type)
    if kind is None:
        return Result.failure("Unsupported payload/content-type", UNSUPPORTED_CONTENT_TYPE)
    if not payload:
        return Result.failure("Empty payload", NO_MESSAGE)

    received_at_ms = received_at_ms if received_at_ms is not None else int(time.time() * 1000)
    if kind == JSON_CONTENT:
        return _normalize_ultramsg(payload, received_at_ms)
    return _normalize_twilio(payload, received_at_ms)


def _normalize_ultramsg(payload: dict, received_at_ms: int) -> Result[InboundMessage]:
    try:
        event = UltraMsgWebhook.model_validate(payload)
    except ValidationError as exc:
        return Result.failure(f"Invalid UltraMsg payload: {exc.error_count()} errors", UNSUPPORTED_PAYLOAD)

    data = event.data
    if data is None:
        return Result.failure("UltraMsg payload without data", UNSUPPORTED_PAYLOAD)
    if event.event_type and event.event_type != ULTRAMSG_MESSAGE_EVENT:
        return Result.failure(f"Ignored UltraMsg event {event.event_type}", IGNORED_EVENT)
    if data.from_me:
        return Result.failure("Ignored own outbound message", IGNORED_EVENT)

    user_id = canonical_user_id(data.from_address)
    if not user_id:
        return Result.failure("Missing sender id", UNSUPPORTED_PAYLOAD)

    is_audio = (data.type or "").lower() in ULTRAMSG_AUDIO_TYPES and bool(data.media)
    text = "" if is_audio else (data.body or "").strip()
    message_id = data.sid or data.id or event.hash

    return Result.success(
        InboundMessage(
            user_id=user_id,
            text=text,
            message_id=message_id or synthesize_message_id(user_id, received_at_ms),
            raw_transport_address=data.from_address,
            transport=Transport.ULTRAMSG,
            audio_url=data.media if is_audio else None,
            sender_name=data.pushname,
            synthesized_id=not message_id,
        )
    )


def _normalize_twilio(payload: dict, received_at_ms: int) -> Result[InboundMessage]:
    try:
        event = TwilioWebhook.model_validate(payload)
    except ValidationError as exc:
        return Result.failure(f"Invalid Twilio payload: {exc.error_count()} errors", UNSUPPORTED_PAYLOAD)

    if not event.From:
        return Result.failure("Missing sender id", UNSUPPORTED_PAYLOAD)
    if event.MessageStatus and event.Body is None:
        return Result.failure(f"Ignored Twilio status callback {event.MessageStatus}", IGNORED_EVENT)

    user_id = canonical_user_id(event.From)
    if not user_id:
        return Result.failure("Missing sender id", UNSUPPORTED_PAYLOAD)

    media_type = (event.MediaContentType0 or "").lower()
    is_audio = event.NumMedia > 0 and bool(event.MediaUrl0) and media_type.startswith("audio/")
    message_id = event.MessageSid or event.SmsMessageSid

    return Result.success(
        InboundMessage(
            user_id=user_id,
            text=(event.Body or "").strip(),
            message_id=message_id or synthesize_message_id(user_id, received_at_ms),
            raw_transport_address=event.From,
            transport=Transport.TWILIO,
            audio_url=event.MediaUrl0 if is_audio else None,
            audio_mime_type=media_type if is_audio else None,
            sender_name=event.ProfileName,
            synthesized_id=not message_id,
        )
    )


def normalize_web_request(request: WebChatRequest, *, received_at_ms: Optional[int] = None) -> Result[InboundMessage]:
    user_id = sanitize_session_id(request.session_id)
    if not user_id:
        return Result.failure("Missing session id", UNSUPPORTED_PAYLOAD)

    received_at_ms = received_at_ms if received_at_ms is not None else int(time.time() * 1000)
    message_id = sanitize_session_id(request.message_id) if request.message_id else ""
    return Result.success(
        InboundMessage(
            user_id=user_id,
            text=(request.text or "").strip(),
            message_id=message_id or synthesize_message_id(user_id, received_at_ms),
            raw_transport_address=request.session_id,
            transport=Transport.WEB,
            synthesized_id=not message_id,
        )
    )
