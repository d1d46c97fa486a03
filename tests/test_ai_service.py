from unittest.mock import MagicMock, Mock, patch

import httpx
import pytest

from nurture.config import ConfigurationError, settings
from nurture.services import ai_service
from nurture.services.llm import CollaboratorError, LLMResponse, OpenAIProvider


@pytest.fixture
def provider():
    mock_provider = Mock()
    with patch.object(ai_service, "get_llm_provider", return_value=mock_provider):
        yield mock_provider


class TestComplete:
    def test_sends_instructions_before_history(self, provider):
        provider.generate.return_value = LLMResponse(content="  Answer.  ", model="gpt-4o-mini")

        result = ai_service.complete("system", "directive", [{"role": "user", "content": "q"}])

        assert result == "Answer."
        messages = provider.generate.call_args[0][0]
        assert messages == [
            {"role": "system", "content": "system"},
            {"role": "system", "content": "directive"},
            {"role": "user", "content": "q"},
        ]
        assert provider.generate.call_args[1]["timeout_seconds"] == settings.llm_timeout_seconds

    def test_missing_key_is_configuration_error(self, monkeypatch):
        monkeypatch.setattr(ai_service, "_llm_provider", None)
        monkeypatch.setattr(settings, "openai_api_key", None)
        with pytest.raises(ConfigurationError):
            ai_service.complete("system", "directive", [])


class TestTranscribe:
    def test_only_supported_language_hints_forwarded(self, provider):
        provider.transcribe_audio.return_value = "hello"

        ai_service.transcribe(b"a", language_hint="ar")
        assert provider.transcribe_audio.call_args[1]["language"] == "ar"

        ai_service.transcribe(b"a", language_hint="fr")
        assert provider.transcribe_audio.call_args[1]["language"] is None


class TestOpenAIProvider:
    @patch("nurture.services.llm.openai_provider.httpx.Client")
    def test_generate(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(
            status_code=200,
            json=Mock(return_value={"model": "gpt-4o-mini", "choices": [{"message": {"content": "Hi"}}]}),
        )

        response = OpenAIProvider(api_key="k").generate([{"role": "user", "content": "hello"}], timeout_seconds=5)

        assert response.content == "Hi"
        assert mock_client_class.call_args[1]["timeout"] == 5
        assert mock_client.post.call_args[1]["headers"] == {"Authorization": "Bearer k"}

    @patch("nurture.services.llm.openai_provider.httpx.Client")
    def test_http_failure_is_collaborator_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.side_effect = httpx.ReadTimeout("timeout")

        with pytest.raises(CollaboratorError):
            OpenAIProvider(api_key="k").generate([])

    @patch("nurture.services.llm.openai_provider.httpx.Client")
    def test_non_200_is_collaborator_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=429, text="rate limited")

        with pytest.raises(CollaboratorError):
            OpenAIProvider(api_key="k").synthesize_speech("hi", voice="alloy")

    @patch("nurture.services.llm.openai_provider.httpx.Client")
    def test_transcription_reads_text(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=200, json=Mock(return_value={"text": " مرحبا "}))

        transcript = OpenAIProvider(api_key="k").transcribe_audio(audio_bytes=b"x", filename="voice.ogg", language="ar")

        assert transcript == "مرحبا"
        assert mock_client.post.call_args[1]["data"]["language"] == "ar"
