# replai-backend/main.py
import logging
import time

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from replai.admin_router import router as admin_router
from replai.billing.router import router as billing_router
from replai.chats.router import router as chats_router
from replai.config import get_settings
from replai.db import init_db
from replai.errors import ReplaiError, SyncAborted, UpstreamError
from replai.reviews.router import router as reviews_router
from replai.utils import parse_origins

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("replai")

# =========================
# App
# =========================
app = FastAPI(title="Replai Backend", version="1.0.0")

# ---- CORS: múltiples orígenes (localhost + producción) ----
ALLOWED_ORIGINS = parse_origins(settings.frontend_origin) or ["http://localhost:5173"]
logger.info("[app] CORS allow_origins = %s", ALLOWED_ORIGINS)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,  # No usar "*" con allow_credentials=True
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    init_db()
    logger.info("[app] ✅ DB lista")


# =========================
# Errores -> {"error": ...}
# =========================
@app.exception_handler(ReplaiError)
async def replai_error_handler(request: Request, exc: ReplaiError):
    body = {"error": exc.message}
    if isinstance(exc, SyncAborted):
        body.update(fetched=exc.fetched, inserted=exc.inserted)
    if isinstance(exc, UpstreamError):
        body.update(upstream_status=exc.status, retryable=exc.retryable)

    if exc.status_code >= 500:
        logger.error("[app] %s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "invalid request", "detail": jsonable_encoder(exc.errors())})


# =========================
# Rutas
# =========================
@app.get("/health")
def health():
    return {"ok": True, "ts": int(time.time())}


app.include_router(reviews_router)
app.include_router(chats_router)
app.include_router(billing_router)
app.include_router(admin_router)
