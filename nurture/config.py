from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./nurture.db"
    log_level: str = "INFO"
    cors_allow_origins: str = "*"

    # Conversation store
    store_max_messages: int = 500
    store_max_attempts: int = 5
    store_retry_backoff_seconds: float = 0.05

    # OpenAI collaborators
    openai_api_key: Optional[str] = None
    openai_model_chat: str = "gpt-4o-mini"
    openai_model_stt: str = "gpt-4o-mini-transcribe"
    openai_model_tts: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "alloy"
    llm_temperature: float = 0.5
    llm_max_tokens: int = 600
    llm_timeout_seconds: float = 20.0
    transcription_timeout_seconds: float = 30.0
    speech_timeout_seconds: float = 30.0

    # Reply shaping
    context_window_messages: int = 20
    reply_max_sentences: int = 4

    # Transports
    ultramsg_instance_id: Optional[str] = None
    ultramsg_token: Optional[str] = None
    ultramsg_api_url: str = "https://api.ultramsg.com"
    send_timeout_seconds: float = 15.0
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    voice_replies_enabled: bool = False

    # Short-lived media for synthesized audio
    media_storage_dir: str = "/tmp/nurture-media"
    media_signing_secret: Optional[str] = None
    public_base_url: str = "http://localhost:8000"
    media_url_ttl_seconds: int = 300

    # Operator alerts
    alert_bot_token: Optional[str] = None
    alert_chat_id: Optional[str] = None

    class Config:
        env_file = ".env"
        extra = "ignore"


class ConfigurationError(RuntimeError):
    """A collaborator was needed but its credentials are not configured."""


settings = Settings()
