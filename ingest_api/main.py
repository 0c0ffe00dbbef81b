"""Main FastAPI application for the ingest API.

POST /v1/telemetry/samples/batch  -- idempotent batch apply
GET  /v1/telemetry/samples/count  -- stored sample count (optionally per device)
GET  /health                      -- liveness + database check

Every item in a batch is validated on its own.  Malformed items are
reported back as rejected (the agent dead-letters them); valid items
are inserted with ``ON CONFLICT DO NOTHING`` on ``(device_id,
sample_id)`` and reported as applied whether or not they were new.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ingest_api import crud
from ingest_api.config import settings
from ingest_api.db import Base, engine, get_db
from ingest_api.schemas import (
    BatchRequest,
    BatchResponse,
    CountResponse,
    HealthResponse,
    IncomingSample,
    RejectedItem,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Create tables on startup (no migrations for a single table)."""
    Base.metadata.create_all(bind=engine)
    logger.info(
        "ingest_api_starting",
        name=settings.app_name,
        version=settings.app_version,
        database=engine.url.render_as_string(hide_password=True),
    )
    yield
    logger.info("ingest_api_stopping")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Idempotent sample store for store-and-forward telemetry agents",
    lifespan=lifespan,
)


def require_token(authorization: Optional[str] = Header(default=None)) -> None:
    if settings.api_token and authorization != f"Bearer {settings.api_token}":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid bearer token",
        )


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ())) or "item"
    return f"{loc}: {err.get('msg', 'invalid')}"


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check(db: Session = Depends(get_db)) -> HealthResponse:
    try:
        db.execute(text("SELECT 1"))
        database = "healthy"
    except SQLAlchemyError:
        logger.exception("health_db_check_failed")
        database = "unavailable"
    return HealthResponse(
        status="healthy" if database == "healthy" else "degraded",
        version=settings.app_version,
        database=database,
    )


@app.post(
    "/v1/telemetry/samples/batch",
    response_model=BatchResponse,
    status_code=status.HTTP_200_OK,
    tags=["Telemetry"],
    dependencies=[Depends(require_token)],
)
def apply_batch(
    request: BatchRequest,
    db: Session = Depends(get_db),
) -> BatchResponse:
    """Apply a batch of samples idempotently."""
    if len(request.samples) > settings.max_batch_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Batch exceeds {settings.max_batch_size} samples.",
        )

    valid: List[IncomingSample] = []
    rejected: List[RejectedItem] = []
    unidentified = 0

    for item in request.samples:
        raw_id = item.get("sample_id") if isinstance(item, dict) else None
        try:
            sample = IncomingSample.model_validate(item)
        except ValidationError as exc:
            if isinstance(raw_id, str) and raw_id:
                rejected.append(RejectedItem(sample_id=raw_id, reason=_first_error(exc)))
            else:
                unidentified += 1
            continue

        size = len(json.dumps(sample.payload, separators=(",", ":")).encode("utf-8"))
        if size > settings.max_payload_bytes:
            rejected.append(
                RejectedItem(
                    sample_id=sample.sample_id,
                    reason=f"payload too large ({size} > {settings.max_payload_bytes} bytes)",
                )
            )
            continue
        valid.append(sample)

    try:
        applied = crud.apply_samples(db, valid)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("batch_apply_failed", size=len(valid))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sample store unavailable; retry later.",
        )

    logger.info(
        "batch_applied",
        received=len(request.samples),
        applied=len(applied),
        rejected=len(rejected),
        unidentified=unidentified,
    )
    return BatchResponse(applied=applied, rejected=rejected, unidentified=unidentified)


@app.get(
    "/v1/telemetry/samples/count",
    response_model=CountResponse,
    tags=["Telemetry"],
    dependencies=[Depends(require_token)],
)
def count_samples(
    device_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> CountResponse:
    return CountResponse(device_id=device_id, count=crud.count_samples(db, device_id))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level=settings.log_level.lower(),
    )
