from typing import List, Optional

import httpx

from nurture.logging_config import get_logger
from nurture.services.llm.base import CollaboratorError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI API provider."""

    def __init__(self, api_key: str, default_model: str = "gpt-4o-mini", base_url: str = "https://api.openai.com/v1"):
        self.api_key = api_key
        self.default_model = default_model
        self.chat_url = f"{base_url}/chat/completions"
        self.audio_url = f"{base_url}/audio/transcriptions"
        self.speech_url = f"{base_url}/audio/speech"

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"}

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate response from OpenAI."""
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        timeout = timeout_seconds if timeout_seconds is not None else 60.0
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(self.chat_url, headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"OpenAI request failed: {exc}") from exc

        logger.debug(f"OpenAI response status: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text[:500]}")
            raise CollaboratorError(f"OpenAI API error: {response.status_code}")

        data = response.json()
        content = ""
        if data.get("choices"):
            message = data["choices"][0].get("message", {})
            content = message.get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )

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
        """Transcribe audio using OpenAI speech-to-text."""
        model = model or "whisper-1"
        if not audio_bytes:
            raise ValueError("audio_bytes is empty")

        files = {"file": (filename or "audio", audio_bytes, mime_type or "application/octet-stream")}
        data = {"model": model, "response_format": "json", "temperature": "0"}
        if language:
            data["language"] = language

        timeout = timeout_seconds if timeout_seconds is not None else 30.0
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(self.audio_url, headers=self._headers(), files=files, data=data)
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"OpenAI transcription request failed: {exc}") from exc

        logger.debug(f"OpenAI transcription status: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"OpenAI transcription error: {response.text[:500]}")
            raise CollaboratorError(f"OpenAI transcription error: {response.status_code}")

        transcript = (response.json().get("text") or "").strip()
        if not transcript:
            logger.warning("OpenAI transcription returned empty text")
        return transcript

    def synthesize_speech(
        self,
        text: str,
        *,
        voice: str,
        model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> bytes:
        """Synthesize mp3 speech using OpenAI text-to-speech."""
        payload = {"model": model or "tts-1", "voice": voice, "input": text, "response_format": "mp3"}

        timeout = timeout_seconds if timeout_seconds is not None else 30.0
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(self.speech_url, headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"OpenAI speech request failed: {exc}") from exc

        if response.status_code != 200:
            logger.error(f"OpenAI speech error: {response.text[:500]}")
            raise CollaboratorError(f"OpenAI speech error: {response.status_code}")
        return response.content
