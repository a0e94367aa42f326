import logging

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from fibertrace.api.sync import router as sync_router
from fibertrace.db import Base, get_engine
from fibertrace.telemetry import setup_otel

logger = logging.getLogger(__name__)

app = FastAPI(title="FiberTrace Sync")
setup_otel(app)

app.include_router(sync_router, prefix="/api")


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.head("/health")
def head_health():
    return Response(status_code=200)


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
def _create_tables():
    import fibertrace.models  # noqa: F401

    Base.metadata.create_all(get_engine())
    logger.info("sync_server_started")
