import hashlib
import hmac
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Tuple
from urllib.parse import quote

import httpx

from nurture.config import ConfigurationError, settings
from nurture.logging_config import get_logger
from nurture.schemas.inbound import Transport
from nurture.services.llm import CollaboratorError

logger = get_logger("media_service")

MEDIA_MAX_BYTES = 16 * 1024 * 1024


def _normalize_media_path(path: str) -> str:
    normalized = (path or "").strip().lstrip("/")
    return normalized.replace("\\", "/")


def _sign_media_path(path: str, expires: int, secret: str) -> str:
    payload = f"{path}:{expires}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def build_signed_media_url(relative_path: str, *, ttl_seconds: Optional[int] = None) -> str:
    """Build a signed public URL for a file under ``media_storage_dir``."""
    if not settings.media_signing_secret:
        raise ConfigurationError("MEDIA_SIGNING_SECRET is not configured")
    ttl = ttl_seconds if ttl_seconds is not None else settings.media_url_ttl_seconds
    expires = int(time.time()) + max(int(ttl), 30)
    normalized_path = _normalize_media_path(relative_path)
    signature = _sign_media_path(normalized_path, expires, settings.media_signing_secret)
    quoted_path = quote(normalized_path, safe="/")
    return f"{settings.public_base_url.rstrip('/')}/media/{quoted_path}?expires={expires}&sig={signature}"


def verify_signed_media_path(relative_path: str, expires: int, signature: str) -> bool:
    if not settings.media_signing_secret:
        logger.error("MEDIA_SIGNING_SECRET not configured")
        return False
    if not signature:
        return False
    if expires < int(time.time()):
        return False
    normalized_path = _normalize_media_path(relative_path)
    expected = _sign_media_path(normalized_path, expires, settings.media_signing_secret)
    return hmac.compare_digest(expected, signature)


def resolve_media_path(relative_path: str) -> Optional[Path]:
    """Resolve a relative media path, refusing anything outside the storage dir."""
    base_dir = Path(settings.media_storage_dir).resolve()
    target_path = (base_dir / _normalize_media_path(relative_path)).resolve()
    if base_dir not in target_path.parents:
        return None
    return target_path


@contextmanager
def stored_media(content: bytes, *, suffix: str = ".mp3") -> Iterator[str]:
    """Expose ``content`` through a short-lived signed URL.

    The file is removed when the block exits, whether or not the send worked.
    """
    base_dir = Path(settings.media_storage_dir)
    base_dir.mkdir(parents=True, exist_ok=True)
    relative_path = f"{uuid.uuid4().hex}{suffix}"
    target_path = base_dir / relative_path
    target_path.write_bytes(content)
    try:
        yield build_signed_media_url(relative_path)
    finally:
        try:
            target_path.unlink()
        except FileNotFoundError:
            pass
        logger.debug(f"Released stored media {relative_path}")


def download_media(url: str, transport: Transport) -> Tuple[bytes, Optional[str]]:
    """Fetch inbound media. Twilio media URLs require account credentials."""
    auth = None
    if transport == Transport.TWILIO:
        if not settings.twilio_account_sid or not settings.twilio_auth_token:
            raise ConfigurationError("Twilio credentials are not configured")
        auth = (settings.twilio_account_sid, settings.twilio_auth_token)

    try:
        with httpx.Client(timeout=settings.transcription_timeout_seconds, follow_redirects=True) as client:
            response = client.get(url, auth=auth)
    except httpx.HTTPError as exc:
        raise CollaboratorError(f"Media download failed: {exc}") from exc

    if response.status_code != 200:
        raise CollaboratorError(f"Media download failed: HTTP {response.status_code}")
    if len(response.content) > MEDIA_MAX_BYTES:
        raise CollaboratorError(f"Media too large: {len(response.content)} bytes")

    mime_type = (response.headers.get("content-type") or "").split(";")[0].strip() or None
    return response.content, mime_type


def guess_audio_filename(mime_type: Optional[str]) -> str:
    extensions = {
        "audio/ogg": "ogg",
        "audio/mpeg": "mp3",
        "audio/mp4": "m4a",
        "audio/aac": "aac",
        "audio/amr": "amr",
        "audio/wav": "wav",
        "audio/webm": "webm",
    }
    return f"voice.{extensions.get((mime_type or '').lower(), 'ogg')}"
