import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from zapflow.database import get_db
from zapflow.logging_config import setup_logging
from zapflow.models import AiChatAgent, Conversation, Message, WhatsappSession
from zapflow.routers import admin, alerts, whatsapp_webhook
from zapflow.services.auto_response_service import close_redis

setup_logging(os.environ.get("LOG_LEVEL", "INFO"))

app = FastAPI(
    title="Zapflow API",
    description="WhatsApp conversation core: webhook ingress, contact identity and AI auto-replies",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(whatsapp_webhook.router)
app.include_router(admin.router)
app.include_router(alerts.router)


@app.on_event("shutdown")
async def shutdown_redis():
    await close_redis()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "sessions": db.query(WhatsappSession).count(),
        "conversations": db.query(Conversation).count(),
        "messages": db.query(Message).count(),
        "agents": db.query(AiChatAgent).count(),
    }
