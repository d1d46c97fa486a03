from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


class CollaboratorError(Exception):
    """An external service (generation, transcription, synthesis, transport) failed."""


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate response from LLM."""
        pass

    @abstractmethod
    def transcribe_audio(
        self,
        *,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        model: Optional[str] = None,
        language: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        """Transcribe audio to text."""
        pass

    @abstractmethod
    def synthesize_speech(
        self,
        text: str,
        *,
        voice: str,
        model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> bytes:
        """Synthesize speech audio (mp3) for the given text."""
        pass
