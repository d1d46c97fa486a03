from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from nurture.routers.whatsapp import handle_delivery
from nurture.schemas.inbound import WebChatRequest
from nurture.services.inbound_normalizer import normalize_web_request

router = APIRouter()


@router.post("/api/chat")
async def web_chat(request: WebChatRequest):
    """Web widget chat: same pipeline as WhatsApp, reply returned inline."""
    result = normalize_web_request(request)
    if not result.ok:
        return JSONResponse({"ok": False, "error": result.error_code}, status_code=status.HTTP_400_BAD_REQUEST)
    return await handle_delivery(result.value)
