import time
from typing import List, Optional

from nurture.config import ConfigurationError, settings
from nurture.logging_config import get_logger
from nurture.services.llm import LLMProvider, OpenAIProvider

logger = get_logger("ai_service")

SUPPORTED_LANGUAGE_HINTS = {"ar", "en"}

# Global LLM provider instance
_llm_provider: Optional[LLMProvider] = None


def get_llm_provider() -> LLMProvider:
    """Get or create the LLM provider instance."""
    global _llm_provider
    if _llm_provider is None:
        if not settings.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is not configured")
        _llm_provider = OpenAIProvider(api_key=settings.openai_api_key, default_model=settings.openai_model_chat)
    return _llm_provider


def _log_timing(stage: str, started: float, **extra) -> None:
    context = {"stage": stage, "elapsed_ms": round((time.monotonic() - started) * 1000, 2)}
    context.update(extra)
    logger.info("Timing", extra={"context": context})


def complete(system_instructions: str, language_directive: str, ordered_messages: List[dict]) -> str:
    """Stateless chat completion: all memory is carried in ``ordered_messages``."""
    provider = get_llm_provider()
    messages = [
        {"role": "system", "content": system_instructions},
        {"role": "system", "content": language_directive},
        *ordered_messages,
    ]
    started = time.monotonic()
    response = provider.generate(
        messages,
        model=settings.openai_model_chat,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        timeout_seconds=settings.llm_timeout_seconds,
    )
    _log_timing("completion", started, model=response.model, messages=len(messages))
    return (response.content or "").strip()


def transcribe(
    audio_bytes: bytes,
    *,
    filename: str = "audio",
    mime_type: Optional[str] = None,
    language_hint: Optional[str] = None,
) -> str:
    """Transcribe audio; only ``ar`` and ``en`` hints are forwarded."""
    provider = get_llm_provider()
    language = language_hint if language_hint in SUPPORTED_LANGUAGE_HINTS else None
    started = time.monotonic()
    transcript = provider.transcribe_audio(
        audio_bytes=audio_bytes,
        filename=filename,
        mime_type=mime_type,
        model=settings.openai_model_stt,
        language=language,
        timeout_seconds=settings.transcription_timeout_seconds,
    )
    _log_timing("transcription", started, bytes=len(audio_bytes))
    return transcript


def synthesize(text: str, voice: Optional[str] = None) -> bytes:
    provider = get_llm_provider()
    started = time.monotonic()
    audio = provider.synthesize_speech(
        text,
        voice=voice or settings.openai_tts_voice,
        model=settings.openai_model_tts,
        timeout_seconds=settings.speech_timeout_seconds,
    )
    _log_timing("synthesis", started, chars=len(text))
    return audio
