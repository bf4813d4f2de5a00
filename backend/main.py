"""
chatrelay - Streaming chat relay for hosted LLM deployments
FastAPI backend with WebSocket (primary) and SSE (fallback) chat channels
"""

from contextlib import asynccontextmanager
import logging
import os
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from routers import chat, chat_streaming, conversations
from errors import register_exception_handlers
from logging_config import setup_logging
from services.database import close_database, get_database
from utils.llm import close_clients, get_chat_store
from config import runtime_config

setup_logging()
logger = logging.getLogger(__name__)

# Instance ID - changes on every startup, used by clients to detect restarts
INSTANCE_ID = str(uuid.uuid4())

CORS_ALLOW_ORIGINS = [o.strip() for o in os.environ.get("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown events"""
    # Startup
    if not runtime_config.deployment_id:
        logger.warning("AICORE_DEPLOYMENT_ID not set - chat requests will fail")
    if not runtime_config.search_enabled:
        logger.info("Web search disabled (AICORE_PERPLEXITY_DEPLOYMENT_ID not set)")

    store = await get_chat_store()
    logger.info(f"chatrelay ready: store={type(store).__name__} model_type={runtime_config.model_type}")

    yield

    # Shutdown
    await close_clients()
    await close_database()
    logger.info("chatrelay signing off")


app = FastAPI(
    title="chatrelay",
    description="Streaming chat relay with web search tool interception",
    version="0.1.0",
    lifespan=lifespan,
)


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


# Request body size limits; chat requests carry base64 attachments
MAX_BODY_SIZE_CHAT = 50 * 1024 * 1024
MAX_BODY_SIZE_API = 1 * 1024 * 1024


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests with bodies exceeding size limits."""

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit():
            size = int(content_length)
            limit = MAX_BODY_SIZE_CHAT if request.url.path.startswith("/api/chat") else MAX_BODY_SIZE_API
            if size > limit:
                return JSONResponse(
                    status_code=413,
                    content={"error": f"Request body too large ({size} bytes, limit {limit} bytes)"},
                )
        return await call_next(request)


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestSizeLimitMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials="*" not in CORS_ALLOW_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app, production=runtime_config.is_production)

# Chat router is mounted WITHOUT /api prefix so WebSocket is at /ws/chat
app.include_router(chat.router, tags=["chat"])
app.include_router(chat_streaming.router)
app.include_router(conversations.router)


@app.get("/health")
async def health():
    """Health check - reports provider configuration and persistence mode."""
    db = await get_database()
    db_health = await db.health_check()
    checks = {
        "provider": "ok" if runtime_config.deployment_id and runtime_config.service_url else "unconfigured",
        "search": "ok" if runtime_config.search_enabled else "disabled",
        "postgres": db_health.get("status", "unknown"),
    }
    degraded = checks["provider"] != "ok" or checks["postgres"] == "error"
    return {
        "status": "degraded" if degraded else "healthy",
        "service": "chatrelay",
        "instance": INSTANCE_ID,
        "checks": checks,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), ws_max_size=64 * 1024 * 1024)
