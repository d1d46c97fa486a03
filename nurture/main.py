import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from nurture.config import settings
from nurture.database import init_db
from nurture.logging_config import get_logger, setup_logging
from nurture.routers import chat, speech, whatsapp
from nurture.services.conversation_store import get_conversation_store

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Health Nurture API",
    description="WhatsApp and web assistant for youth health information",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(whatsapp.router)
app.include_router(chat.router)
app.include_router(speech.router)


@app.on_event("startup")
async def startup() -> None:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return
    init_db()
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set; chat replies and voice features will fail")
    logger.info("Health Nurture API started", extra={"context": {"cors_origins": cors_origins}})


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check():
    conversations_count = get_conversation_store().count()
    return {"status": "ok", "conversations": conversations_count}
