from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, UploadFile, status
from fastapi.responses import FileResponse, Response
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from nurture.config import ConfigurationError
from nurture.logging_config import get_logger
from nurture.services import ai_service, media_service
from nurture.services.llm import CollaboratorError

logger = get_logger("speech")

router = APIRouter()

STT_MAX_BYTES = 25 * 1024 * 1024


class SpeechRequest(BaseModel):
    text: str = ""
    voice: Optional[str] = None


@router.post("/api/stt")
async def speech_to_text(file: Optional[UploadFile] = File(None), language: Optional[str] = Form(None)):
    """Transcribe an uploaded recording from the web widget."""
    if file is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No audio file uploaded")
    audio = await file.read()
    if not audio:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty audio file")
    if len(audio) > STT_MAX_BYTES:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Audio file too large")

    try:
        text = await run_in_threadpool(
            ai_service.transcribe,
            audio,
            filename=file.filename or media_service.guess_audio_filename(file.content_type),
            mime_type=file.content_type,
            language_hint=(language or "").strip().lower() or None,
        )
    except ConfigurationError as exc:
        logger.critical(f"Transcription unavailable: {exc}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Transcription unavailable")
    except CollaboratorError as exc:
        logger.error(f"Transcription failed: {exc}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Transcription failed")
    return {"text": text}


@router.post("/api/tts")
async def text_to_speech(request: SpeechRequest):
    """Synthesize an mp3 reading of ``text``."""
    text = (request.text or "").strip()
    if not text:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No text provided")

    try:
        audio = await run_in_threadpool(ai_service.synthesize, text, request.voice)
    except ConfigurationError as exc:
        logger.critical(f"Speech synthesis unavailable: {exc}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Speech synthesis unavailable")
    except CollaboratorError as exc:
        logger.error(f"Speech synthesis failed: {exc}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Speech synthesis failed")
    return Response(content=audio, media_type="audio/mpeg")


@router.get("/media/{media_path:path}")
async def serve_media(media_path: str, expires: int, sig: str):
    """Serve locally stored media via signed URLs."""
    normalized_path = (media_path or "").strip().lstrip("/")
    if not normalized_path:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing media path")
    if not media_service.verify_signed_media_path(normalized_path, expires, sig):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired signature")

    target_path = media_service.resolve_media_path(normalized_path)
    if target_path is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid media path")
    if not target_path.exists() or not target_path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")

    return FileResponse(target_path)
