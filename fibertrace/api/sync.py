from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from fibertrace.db import get_db
from fibertrace.models.enums import Collection
from fibertrace.schemas.sync import PullResult, PushRequest, PushResult
from fibertrace.services.errors import FiberTraceError
from fibertrace.services.server_sync import sync_server

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/{collection}/push", response_model=PushResult)
def push_records(collection: Collection, payload: PushRequest, db: Session = Depends(get_db)):
    try:
        return sync_server.push(db, collection, payload.records)
    except FiberTraceError as exc:
        db.rollback()
        raise exc.to_http_exception() from exc


@router.get("/{collection}/pull", response_model=PullResult)
def pull_records(
    collection: Collection,
    since: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
):
    try:
        return sync_server.pull(db, collection, since=since)
    except FiberTraceError as exc:
        raise exc.to_http_exception() from exc
