from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.concurrency import run_in_threadpool

from nurture.config import ConfigurationError
from nurture.logging_config import get_logger
from nurture.schemas.inbound import InboundMessage
from nurture.services.alert_service import alert_critical, alert_error
from nurture.services.conversation_service import ConversationOutcome, fallback_outcome, process_inbound
from nurture.services.conversation_store import ConversationStoreError
from nurture.services.inbound_normalizer import UNSUPPORTED_CONTENT_TYPE, normalize_payload, read_payload
from nurture.services.outbound_service import deliver

logger = get_logger("whatsapp")

router = APIRouter()


async def handle_delivery(inbound: InboundMessage) -> Response:
    """Process one normalized delivery and answer it on its own transport.

    Failures past normalization still produce a reply (the apology) so the
    provider sees the webhook acknowledged and does not keep redelivering.
    """
    context = {"transport": inbound.transport.value, "user_id": inbound.user_id, "message_id": inbound.message_id}
    logger.info(
        "Inbound message",
        extra={"context": {**context, "has_audio": inbound.has_audio, "synthesized_id": inbound.synthesized_id}},
    )
    logger.debug("Inbound text", extra={"context": {**context, "text": inbound.text[:80]}})
    try:
        outcome: ConversationOutcome = await run_in_threadpool(process_inbound, inbound)
    except ConfigurationError as exc:
        logger.critical("Service misconfigured", extra={"context": {**context, "error": str(exc)}})
        alert_critical(f"Configuration error: {exc}", context)
        outcome = fallback_outcome(inbound)
    except ConversationStoreError as exc:
        logger.error("Conversation store failure", extra={"context": {**context, "error": str(exc)}})
        alert_error("Conversation store failure", {**context, "error": str(exc)})
        outcome = fallback_outcome(inbound)
    except Exception:
        logger.exception("Unhandled error while processing delivery", extra={"context": context})
        outcome = fallback_outcome(inbound)

    return await run_in_threadpool(deliver, outcome)


@router.get("/api/whatsapp")
async def whatsapp_url_check():
    return PlainTextResponse("WhatsApp webhook is running")


@router.post("/api/whatsapp")
async def whatsapp_webhook(request: Request):
    """Inbound WhatsApp webhook for Twilio (form) and UltraMsg (JSON)."""
    content_type = request.headers.get("content-type")
    payload = await read_payload(request)
    if payload.ok:
        result = normalize_payload(content_type, payload.value)
    else:
        result = payload

    if not result.ok:
        logger.info(
            "Webhook payload not processed",
            extra={"context": {"code": result.error_code, "error": result.error, "content_type": content_type}},
        )
        status_code = (
            status.HTTP_400_BAD_REQUEST if result.error_code == UNSUPPORTED_CONTENT_TYPE else status.HTTP_200_OK
        )
        return JSONResponse({"ok": False, "error": result.error_code}, status_code=status_code)

    return await handle_delivery(result.value)
