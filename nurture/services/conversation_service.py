from dataclasses import dataclass
from typing import Optional

from nurture.config import ConfigurationError
from nurture.logging_config import LoggerAdapter, get_logger
from nurture.schemas.conversation import (
    ConversationDocument,
    MessageKind,
    OnboardingStep,
    Role,
    StoredMessage,
)
from nurture.schemas.inbound import InboundMessage
from nurture.services import ai_service, media_service, onboarding
from nurture.services.conversation_store import ConversationStore, get_conversation_store
from nurture.services.reply_router import apology_for, route_reply

logger = get_logger("conversation_service")

SOURCE_FIRST_CONTACT = "first_contact"
SOURCE_ONBOARDING = "onboarding"
SOURCE_DUPLICATE = "duplicate"
SOURCE_EMPTY = "empty"
SOURCE_FALLBACK = "fallback"


@dataclass
class ConversationOutcome:
    inbound: InboundMessage
    reply_text: Optional[str]
    source: str
    onboarding_step: Optional[OnboardingStep] = None
    # Set when this delivery was already answered; the send API must not be called again.
    duplicate: bool = False
    transcript: Optional[str] = None


def fallback_outcome(inbound: InboundMessage) -> ConversationOutcome:
    """Apology outcome for a delivery whose handling failed."""
    return ConversationOutcome(inbound=inbound, reply_text=apology_for(inbound.text), source=SOURCE_FALLBACK)


def _transcribe_inbound(inbound: InboundMessage, log: LoggerAdapter) -> Optional[str]:
    """Transcribe a voice note; ``None`` means the collaborator failed."""
    try:
        audio, mime_type = media_service.download_media(inbound.audio_url, inbound.transport)
        mime_type = inbound.audio_mime_type or mime_type
        return ai_service.transcribe(
            audio,
            filename=media_service.guess_audio_filename(mime_type),
            mime_type=mime_type,
        )
    except ConfigurationError:
        raise
    except Exception as exc:
        log.error("Voice note transcription failed", context={"error": str(exc)})
        return None


def _latest_user_text(document: ConversationDocument, *, exclude_id: Optional[str] = None) -> str:
    """Most recent non-empty user text, used to pick the apology language for voice notes."""
    for message in reversed(document.messages):
        if message.role == Role.USER and message.id != exclude_id and message.text:
            return message.text
    return ""


def _record_reply(
    store: ConversationStore,
    inbound: InboundMessage,
    text: str,
    kind: Optional[MessageKind],
) -> ConversationDocument:
    return store.upsert_message(
        inbound.user_id,
        StoredMessage(id=inbound.reply_id, role=Role.ASSISTANT, text=text, kind=kind, transport=inbound.transport),
    )


def process_inbound(inbound: InboundMessage, *, store: Optional[ConversationStore] = None) -> ConversationOutcome:
    """Record one inbound delivery, decide the reply, record the reply.

    Both writes are idempotent on message id, so a redelivered message lands on
    the same two transcript entries. A redelivery that was already answered is
    short-circuited with the stored reply.
    """
    store = store or get_conversation_store()
    log = LoggerAdapter(
        logger,
        {"transport": inbound.transport.value, "user_id": inbound.user_id, "message_id": inbound.message_id},
    )
    if inbound.synthesized_id:
        log.warning("Provider sent no message id; using synthesized id, redelivery will not be deduplicated")

    text = inbound.text.strip()
    transcript = None
    transcription_failed = False
    if inbound.has_audio and not text:
        transcript = _transcribe_inbound(inbound, log)
        transcription_failed = transcript is None
        text = (transcript or "").strip()

    document = store.upsert_message(
        inbound.user_id,
        StoredMessage(id=inbound.message_id, role=Role.USER, text=text, transport=inbound.transport),
        transport=inbound.transport,
    )
    profile = document.profile

    previous_reply = document.find_message(inbound.reply_id)
    if previous_reply is not None:
        log.info("Delivery already answered, reusing stored reply")
        return ConversationOutcome(
            inbound=inbound,
            reply_text=previous_reply.text,
            source=SOURCE_DUPLICATE,
            onboarding_step=profile.onboarding_step,
            duplicate=True,
            transcript=transcript,
        )

    if transcription_failed:
        reply = apology_for(_latest_user_text(document, exclude_id=inbound.message_id))
        _record_reply(store, inbound, reply, kind=None)
        return ConversationOutcome(
            inbound=inbound,
            reply_text=reply,
            source=SOURCE_FALLBACK,
            onboarding_step=profile.onboarding_step,
        )

    if not text:
        log.info("Inbound without text, recorded without reply")
        return ConversationOutcome(
            inbound=inbound, reply_text=None, source=SOURCE_EMPTY, onboarding_step=profile.onboarding_step
        )

    if profile.onboarding_step != OnboardingStep.DONE:
        if profile.onboarding_step == OnboardingStep.GENDER and not document.has_assistant_messages():
            reply, source, step = onboarding.first_contact_reply(), SOURCE_FIRST_CONTACT, profile.onboarding_step
        else:
            decision = onboarding.step(profile.onboarding_step, text)
            step = decision.next_step
            if decision.advanced:
                document = store.update_profile(inbound.user_id, decision.profile_patch)
                step = document.profile.onboarding_step
            reply, source = decision.reply_text, SOURCE_ONBOARDING
        _record_reply(store, inbound, reply, kind=MessageKind.ONBOARDING)
        log.info("Onboarding reply", context={"source": source, "step": step.value})
        return ConversationOutcome(
            inbound=inbound, reply_text=reply, source=source, onboarding_step=step, transcript=transcript
        )

    routed = route_reply(profile, text, document.messages, exclude_id=inbound.message_id)
    _record_reply(store, inbound, routed.text, kind=MessageKind.CHAT)
    log.info("Chat reply", context={"source": routed.source, "chars": len(routed.text)})
    return ConversationOutcome(
        inbound=inbound,
        reply_text=routed.text,
        source=routed.source,
        onboarding_step=profile.onboarding_step,
        transcript=transcript,
    )
