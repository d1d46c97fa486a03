import json
from unittest.mock import MagicMock, Mock, patch

import httpx
import pytest

from nurture.config import ConfigurationError, settings
from nurture.schemas.conversation import OnboardingStep
from nurture.schemas.inbound import InboundMessage, Transport
from nurture.services import outbound_service
from nurture.services.conversation_service import ConversationOutcome
from nurture.services.outbound_service import UltraMsgClient, deliver, render_twiml
from nurture.services.reply_router import APOLOGY_AR
from nurture.services.result import Result


def _outcome(transport: Transport, reply_text="Hello", **kwargs) -> ConversationOutcome:
    inbound = InboundMessage(
        user_id="96170062123",
        text=kwargs.pop("text", "hi"),
        message_id="m1",
        raw_transport_address="96170062123@c.us",
        transport=transport,
        audio_url=kwargs.pop("audio_url", None),
    )
    return ConversationOutcome(
        inbound=inbound,
        reply_text=reply_text,
        source="generated",
        onboarding_step=OnboardingStep.DONE,
        **kwargs,
    )


class TestTwiml:
    def test_escapes_text(self):
        assert render_twiml("a < b & c") == (
            '<?xml version="1.0" encoding="UTF-8"?><Response><Message>a &lt; b &amp; c</Message></Response>'
        )

    def test_empty_reply_renders_empty_response(self):
        assert "<Message>" not in render_twiml(None)

    def test_deliver_twilio(self):
        response = deliver(_outcome(Transport.TWILIO, "Hi there"))
        assert response.media_type == "application/xml"
        assert b"<Message>Hi there</Message>" in response.body


class TestWebDelivery:
    def test_deliver_web(self):
        response = deliver(_outcome(Transport.WEB, "Hi there"))
        assert json.loads(response.body) == {
            "message": {"role": "assistant", "content": "Hi there"},
            "onboardingStep": "done",
        }


class TestUltraMsgClient:
    @patch("nurture.services.outbound_service.httpx.Client")
    def test_send_text(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=200, json=Mock(return_value={"sent": "true", "id": 7}))

        client = UltraMsgClient("instance1", "token1", api_url="https://api.ultramsg.com/")
        result = client.send_text("96170062123@c.us", "Hello", reference="assistant_m1")

        assert result.ok
        url = mock_client.post.call_args[0][0]
        data = mock_client.post.call_args[1]["data"]
        assert url == "https://api.ultramsg.com/instance1/messages/chat"
        assert data == {"token": "token1", "to": "96170062123@c.us", "body": "Hello", "referenceId": "assistant_m1"}

    @patch("nurture.services.outbound_service.httpx.Client")
    def test_rejected_send(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=200, json=Mock(return_value={"error": "wrong token"}))

        result = UltraMsgClient("i", "t").send_text("x", "y")

        assert not result.ok
        assert result.error_code == "send_rejected"

    @patch("nurture.services.outbound_service.httpx.Client")
    def test_network_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.side_effect = httpx.ConnectError("refused")

        result = UltraMsgClient("i", "t").send_audio("x", "https://nurture.example/media/a.mp3")

        assert result.error_code == "send_error"

    def test_client_requires_credentials(self, monkeypatch):
        monkeypatch.setattr(outbound_service, "_ultramsg_client", None)
        monkeypatch.setattr(settings, "ultramsg_instance_id", None)
        with pytest.raises(ConfigurationError):
            outbound_service.get_ultramsg_client()


class TestUltraMsgDelivery:
    @pytest.fixture
    def client(self):
        mock_client = Mock()
        mock_client.send_text.return_value = Result.success({"sent": "true"})
        mock_client.send_audio.return_value = Result.success({"sent": "true"})
        with patch.object(outbound_service, "get_ultramsg_client", return_value=mock_client):
            yield mock_client

    def test_sends_reply(self, client):
        response = deliver(_outcome(Transport.ULTRAMSG, "Hello"))

        assert json.loads(response.body)["ok"] is True
        client.send_text.assert_called_once_with("96170062123@c.us", "Hello", reference="assistant_m1")

    def test_duplicate_not_sent(self, client):
        deliver(_outcome(Transport.ULTRAMSG, "Hello", duplicate=True))
        client.send_text.assert_not_called()

    def test_no_reply_not_sent(self, client):
        deliver(_outcome(Transport.ULTRAMSG, None))
        client.send_text.assert_not_called()

    def test_failed_send_retried_once_with_apology(self, client):
        client.send_text.side_effect = [
            Result.failure("HTTP 500", "send_rejected"),
            Result.success({"sent": "true"}),
        ]

        response = deliver(_outcome(Transport.ULTRAMSG, "جواب", text="سؤال"))

        assert json.loads(response.body)["sent"] is True
        assert client.send_text.call_count == 2
        assert client.send_text.call_args_list[1][0][1] == APOLOGY_AR

    def test_second_failure_alerts(self, client):
        client.send_text.return_value = Result.failure("HTTP 500", "send_rejected")
        with patch.object(outbound_service, "alert_error") as mock_alert:
            response = deliver(_outcome(Transport.ULTRAMSG, "Hello"))

        assert json.loads(response.body) == {"ok": True, "sent": False, "duplicate": False}
        mock_alert.assert_called_once()

    def test_missing_credentials_alerts_critical(self):
        with patch.object(
            outbound_service, "get_ultramsg_client", side_effect=ConfigurationError("no creds")
        ), patch.object(outbound_service, "alert_critical") as mock_alert:
            response = deliver(_outcome(Transport.ULTRAMSG, "Hello"))

        assert json.loads(response.body)["ok"] is True
        mock_alert.assert_called_once()

    def test_voice_reply_for_voice_note(self, client, media_settings, monkeypatch):
        monkeypatch.setattr(settings, "voice_replies_enabled", True)
        with patch.object(outbound_service.ai_service, "synthesize", return_value=b"ID3"):
            deliver(_outcome(Transport.ULTRAMSG, "Hello", audio_url="https://files.example/v.ogg"))

        audio_url = client.send_audio.call_args[0][1]
        assert audio_url.startswith("https://nurture.example/media/")
        assert list(media_settings.iterdir()) == []

    def test_no_voice_reply_when_disabled(self, client):
        deliver(_outcome(Transport.ULTRAMSG, "Hello", audio_url="https://files.example/v.ogg"))
        client.send_audio.assert_not_called()
