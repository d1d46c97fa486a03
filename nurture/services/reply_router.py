import re
from dataclasses import dataclass
from typing import List, Optional

from nurture.config import ConfigurationError, settings
from nurture.logging_config import get_logger
from nurture.schemas.conversation import MessageKind, OnboardingStep, Role, StoredMessage, UserProfile
from nurture.services import ai_service

logger = get_logger("reply_router")

SYSTEM_PROMPT = """
You are a friendly health information assistant for young people.

Main focus:
- Sexual and reproductive health.
- Male and female puberty and body changes.
- Emotions, relationships, and mental well-being.
- You may answer small general medical questions briefly.

Behavior:
- If the user asks about something outside this area, do not answer it. Reply with one short sentence saying you are mainly here to help with puberty, sexual health and emotions, then stop.
- Do not use markdown, lists, bullets, * or #.
- Keep responses short to medium by default unless the user clearly asks for more detail.
- If the user says this is a test, tell them you are working fine.
- Keep to facts and science; do not give religious answers.
- Use the same language the user uses. Do not mix languages unless the user mixes them.

Medication rules:
- Never give names of medications, pills, drugs, or antibiotics, and never give doses.
- If the user asks about medication or treatment, say that only a doctor can decide medication.

Safety:
- Never explain how to perform suicide, self-harm, harm to others, or abortion.
- Always stay supportive, kind, and non-judgmental, like a school counselor or health educator.
""".strip()

ARABIC_DIRECTIVE = (
    "Answer only in Arabic. Use simple, clear Modern Standard Arabic. Do not include English unless the user includes it."
)
ENGLISH_DIRECTIVE = "Answer only in English. Use simple, clear sentences. Do not mix languages unless the user mixes them."

GREETING_PHRASES = {
    "hi",
    "hello",
    "hey",
    "good morning",
    "good evening",
    "مرحبا",
    "مرحبًا",
    "اهلا",
    "أهلا",
    "أهلاً",
    "السلام عليكم",
    "سلام",
    "هاي",
}
GREETING_MAX_WORDS = 3

ELABORATION_KEYWORDS = [
    "details",
    "more detail",
    "more details",
    "explain more",
    "in depth",
    "in-depth",
    "long answer",
    "more info",
    "elaborate",
    "شرح بالتفصيل",
    "تفاصيل اكثر",
    "فسر اكثر",
]

GREETING_RESPONSE_EN = (
    "Hello! I'm here to help with puberty, sexual and reproductive health, emotions and relationships. "
    "What would you like to ask?"
)
GREETING_RESPONSE_AR = "مرحباً! أنا هنا لمساعدتك في البلوغ، الصحة الجنسية والإنجابية، والمشاعر والعلاقات. ماذا تحب أن تسأل؟"

APOLOGY_EN = "Sorry, something went wrong while answering your question. Please try again in a moment."
APOLOGY_AR = "عذراً، حدث خطأ أثناء الإجابة على سؤالك. يرجى المحاولة مرة أخرى بعد قليل."

FORMATTING_CHARS = re.compile(r"[*#_~`]")
SENTENCE_BOUNDARY = re.compile(r"(?<=[.!؟])\s+")
ARABIC_CHARS = re.compile(r"[\u0600-\u06FF]")


@dataclass(frozen=True)
class RoutedReply:
    text: str
    source: str  # greeting, generated, fallback


def contains_arabic(text: str) -> bool:
    return bool(ARABIC_CHARS.search(text or ""))


def language_directive(text: str) -> str:
    return ARABIC_DIRECTIVE if contains_arabic(text) else ENGLISH_DIRECTIVE


def apology_for(text: str) -> str:
    """Fixed apology in the language detected from ``text``."""
    return APOLOGY_AR if contains_arabic(text) else APOLOGY_EN


def normalize_for_matching(text: str) -> str:
    """Normalize text for matching short phrases (casefold + trim punctuation)."""
    if not text:
        return ""
    normalized = text.strip().casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    return re.sub(r"^[^\w]+|[^\w]+$", "", normalized)


def is_greeting(text: str) -> bool:
    normalized = normalize_for_matching(text)
    if not normalized:
        return False
    if normalized in GREETING_PHRASES:
        return True
    words = re.sub(r"[^\w\s\u064B-\u065F]", " ", normalized).split()
    if len(words) > GREETING_MAX_WORDS:
        return False
    padded = f" {' '.join(words)} "
    return any(f" {phrase} " in padded for phrase in GREETING_PHRASES)


def wants_elaboration(text: str) -> bool:
    lower = (text or "").lower()
    return any(keyword in lower for keyword in ELABORATION_KEYWORDS)


def strip_formatting(text: str) -> str:
    return FORMATTING_CHARS.sub("", text or "")


def shorten_to_sentences(text: str, max_sentences: int) -> str:
    parts = [part.strip() for part in SENTENCE_BOUNDARY.split(text) if part.strip()]
    if len(parts) <= max_sentences:
        return text
    return " ".join(parts[:max_sentences])


def greeting_reply(text: str) -> str:
    return GREETING_RESPONSE_AR if contains_arabic(text) else GREETING_RESPONSE_EN


def build_context_window(
    history: List[StoredMessage],
    inbound_text: str,
    *,
    limit: Optional[int] = None,
    exclude_id: Optional[str] = None,
) -> List[dict]:
    """Last ``limit`` chat entries, oldest first, with the current text appended last.

    Onboarding exchanges never enter the window. ``exclude_id`` drops the stored
    copy of the current inbound so it is not sent twice.
    """
    limit = limit or settings.context_window_messages
    chat_entries = [
        message
        for message in sorted(history, key=lambda m: m.timestamp or 0)
        if message.kind == MessageKind.CHAT and message.id != exclude_id and message.text
    ]
    window = [
        {"role": "assistant" if message.role == Role.ASSISTANT else "user", "content": message.text}
        for message in chat_entries[-limit:]
    ]
    window.append({"role": "user", "content": inbound_text})
    return window


def postprocess_reply(reply: str, inbound_text: str) -> str:
    reply = strip_formatting(reply).strip()
    if not wants_elaboration(inbound_text):
        reply = shorten_to_sentences(reply, settings.reply_max_sentences)
    return reply


def route_reply(
    profile: UserProfile,
    inbound_text: str,
    history: List[StoredMessage],
    *,
    exclude_id: Optional[str] = None,
) -> RoutedReply:
    """Pick the reply for a user who finished onboarding.

    Greetings are answered locally; everything else goes to text generation.
    Generation failures become the apology in the user's language.
    """
    if profile.onboarding_step != OnboardingStep.DONE:
        raise ValueError(f"route_reply requires a completed profile, got {profile.onboarding_step.value}")

    if is_greeting(inbound_text):
        return RoutedReply(text=greeting_reply(inbound_text), source="greeting")

    window = build_context_window(history, inbound_text, exclude_id=exclude_id)
    try:
        generated = ai_service.complete(SYSTEM_PROMPT, language_directive(inbound_text), window)
    except ConfigurationError:
        raise
    except Exception as exc:
        logger.error(
            "Text generation failed",
            extra={"context": {"user_id": profile.user_id, "error": str(exc), "window": len(window)}},
        )
        return RoutedReply(text=apology_for(inbound_text), source="fallback")

    reply = postprocess_reply(generated, inbound_text)
    if not reply:
        logger.warning("Text generation returned empty reply", extra={"context": {"user_id": profile.user_id}})
        return RoutedReply(text=apology_for(inbound_text), source="fallback")
    return RoutedReply(text=reply, source="generated")
