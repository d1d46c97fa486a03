"""Deliver replies on the transport the message arrived on.

Twilio and the web widget answer inline in the HTTP response. UltraMsg needs a
separate send API call and gets a plain JSON acknowledgment back.
"""

from typing import Optional
from xml.sax.saxutils import escape

import httpx
from fastapi.responses import JSONResponse, Response

from nurture.config import ConfigurationError, settings
from nurture.logging_config import get_logger
from nurture.schemas.inbound import Transport
from nurture.services import ai_service, media_service
from nurture.services.alert_service import alert_critical, alert_error
from nurture.services.conversation_service import ConversationOutcome
from nurture.services.reply_router import apology_for
from nurture.services.result import Result

logger = get_logger("outbound_service")

_ultramsg_client = None


class UltraMsgClient:
    """Client for the UltraMsg WhatsApp send API."""

    def __init__(self, instance_id: str, token: str, api_url: str = "https://api.ultramsg.com", timeout: float = 15.0):
        self.instance_id = instance_id
        self.token = token
        self.base_url = f"{api_url.rstrip('/')}/{instance_id}"
        self.timeout = timeout

    def _post(self, endpoint: str, data: dict) -> Result[dict]:
        url = f"{self.base_url}/{endpoint}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, data={"token": self.token, **data})
        except httpx.HTTPError as exc:
            logger.error(f"UltraMsg API error: {exc}")
            return Result.failure(str(exc), "send_error")

        if response.status_code != 200:
            logger.warning(f"UltraMsg response: status={response.status_code}, body={response.text[:200]}")
            return Result.failure(f"HTTP {response.status_code}", "send_rejected")
        try:
            payload = response.json()
        except ValueError:
            return Result.failure("Invalid JSON from UltraMsg", "send_rejected")
        if str(payload.get("sent", "")).lower() != "true":
            return Result.failure(str(payload.get("error") or payload), "send_rejected")
        return Result.success(payload)

    def send_text(self, to: str, body: str, *, reference: Optional[str] = None) -> Result[dict]:
        data = {"to": to, "body": body}
        if reference:
            data["referenceId"] = reference
        return self._post("messages/chat", data)

    def send_audio(self, to: str, audio_url: str, *, reference: Optional[str] = None) -> Result[dict]:
        data = {"to": to, "audio": audio_url}
        if reference:
            data["referenceId"] = reference
        return self._post("messages/audio", data)


def get_ultramsg_client() -> UltraMsgClient:
    """Get or create the UltraMsg client."""
    global _ultramsg_client
    if _ultramsg_client is None:
        if not settings.ultramsg_instance_id or not settings.ultramsg_token:
            raise ConfigurationError("ULTRAMSG_INSTANCE_ID / ULTRAMSG_TOKEN are not configured")
        _ultramsg_client = UltraMsgClient(
            settings.ultramsg_instance_id,
            settings.ultramsg_token,
            api_url=settings.ultramsg_api_url,
            timeout=settings.send_timeout_seconds,
        )
    return _ultramsg_client


def render_twiml(text: Optional[str]) -> str:
    if not text:
        return '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'
    return f'<?xml version="1.0" encoding="UTF-8"?><Response><Message>{escape(text)}</Message></Response>'


def _send_voice_reply(client: UltraMsgClient, to: str, text: str, reference: str) -> bool:
    try:
        audio = ai_service.synthesize(text)
        with media_service.stored_media(audio, suffix=".mp3") as audio_url:
            result = client.send_audio(to, audio_url, reference=reference)
    except ConfigurationError as exc:
        logger.error(f"Voice reply skipped: {exc}")
        return False
    except Exception as exc:
        logger.error(f"Voice reply failed: {exc}")
        return False
    if not result.ok:
        logger.warning(f"Voice reply rejected: {result.error}")
    return result.ok


def send_ultramsg_reply(outcome: ConversationOutcome) -> bool:
    """Send the reply through UltraMsg; one retry with the apology when the send fails."""
    inbound = outcome.inbound
    try:
        client = get_ultramsg_client()
    except ConfigurationError as exc:
        logger.critical(f"Cannot deliver UltraMsg reply: {exc}")
        alert_critical("UltraMsg send not configured", {"user_id": inbound.user_id})
        return False

    to = inbound.raw_transport_address
    result = client.send_text(to, outcome.reply_text, reference=inbound.reply_id)
    if not result.ok:
        logger.warning(
            "UltraMsg send failed, sending apology",
            extra={"context": {"user_id": inbound.user_id, "error": result.error, "code": result.error_code}},
        )
        result = client.send_text(to, apology_for(inbound.text or outcome.reply_text))
        if not result.ok:
            alert_error("WhatsApp send failed", {"user_id": inbound.user_id, "error": result.error})
            return False

    if settings.voice_replies_enabled and inbound.has_audio:
        _send_voice_reply(client, to, outcome.reply_text, inbound.reply_id)
    logger.info("Delivered via UltraMsg", extra={"context": {"user_id": inbound.user_id}})
    return True


def deliver(outcome: ConversationOutcome) -> Response:
    """Send or render ``outcome`` as the webhook response for its transport."""
    transport = outcome.inbound.transport

    if transport == Transport.TWILIO:
        return Response(content=render_twiml(outcome.reply_text), media_type="application/xml")

    if transport == Transport.ULTRAMSG:
        sent = False
        if outcome.reply_text and not outcome.duplicate:
            sent = send_ultramsg_reply(outcome)
        return JSONResponse({"ok": True, "sent": sent, "duplicate": outcome.duplicate})

    if transport == Transport.WEB:
        return JSONResponse(
            {
                "message": {"role": "assistant", "content": outcome.reply_text or ""},
                "onboardingStep": outcome.onboarding_step.value if outcome.onboarding_step else None,
            }
        )

    raise ValueError(f"Unknown transport: {transport}")
