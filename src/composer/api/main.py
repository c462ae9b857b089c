from __future__ import annotations

from datetime import UTC, datetime
import os

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.chat import router as chat_router
from .routers.drafts import router as drafts_router
from .routers.classify import router as classify_router
from .routers.diag import router as diag_router
from ..observability.metrics import metrics_middleware_factory

load_dotenv()  # Load environment variables from .env if present (OPENAI_API_KEY, COMPOSER_*, etc.)

app = FastAPI(title="Composer API", version="0.1.0")

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(chat_router)
app.include_router(drafts_router)
app.include_router(classify_router)
app.include_router(diag_router)

# Also expose the same routers under /api for the web client proxy
app.include_router(chat_router, prefix="/api")
app.include_router(drafts_router, prefix="/api")
app.include_router(classify_router, prefix="/api")

_cors_origins = [
    origin.strip()
    for origin in (os.getenv("COMPOSER_CORS_ORIGINS") or "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def root():
    return {"name": "Composer API", "version": "0.1.0"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "thread_store": os.getenv("COMPOSER_THREAD_STORE_IMPL", "memory"),
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
