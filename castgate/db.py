# castgate/db.py
import os
import json
import uuid
import logging
from typing import Optional, Dict, Any

from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("castgate")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./castgate.db")


def _make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def reconfigure(url: str):
    """Reconfigure the DB engine and session factory at runtime (for tests)."""
    global engine, SessionLocal
    engine = _make_engine(url)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    # import models lazily so Base metadata has them
    import castgate.models as models  # noqa: F401
    Base.metadata.create_all(bind=engine)


def create_request(params) -> str:
    """
    Insert a new record in `pending` from a ValidCastRequest. Returns its id.
    """
    from castgate.models import RequestRecord, STATUS_PENDING

    db: Session = SessionLocal()
    try:
        rr = RequestRecord(
            id=str(uuid.uuid4()),
            request_type=params.request_type,
            status=STATUS_PENDING,
            input_prompt=params.prompt,
            input_data=json.dumps(params.data),
            input_primary_key=params.primary_key,
            output_name=params.output_name,
            output_schema=json.dumps(params.output_schema),
            output_effective_schema=json.dumps(params.effective_schema),
            invalidate_cache=params.invalidate_cache,
            model=params.model,
        )
        request_id = rr.id
        db.add(rr)
        db.commit()
        return request_id
    except SQLAlchemyError:
        db.rollback()
        logger.exception("DB save error")
        raise
    finally:
        db.close()


def find_request(request_id: str):
    """Return the detached RequestRecord or None."""
    from castgate.models import RequestRecord

    db: Session = SessionLocal()
    try:
        return db.get(RequestRecord, request_id)
    finally:
        db.close()


def update_request(request_id: str, fields: Dict[str, Any]) -> None:
    from castgate.models import RequestRecord, _utcnow

    db: Session = SessionLocal()
    try:
        values = dict(fields)
        values["updated_at"] = _utcnow()
        db.execute(update(RequestRecord).where(RequestRecord.id == request_id).values(**values))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("DB update error", extra={"llm_request_id": request_id})
        raise
    finally:
        db.close()


def try_begin_processing(request_id: str) -> bool:
    """
    Atomically move a record from `pending` to `processing`.

    Single conditional UPDATE: of any number of concurrent callers at most one
    sees rowcount == 1. Returns False when the record is not pending.
    """
    from castgate.models import RequestRecord, STATUS_PENDING, STATUS_PROCESSING, _utcnow

    db: Session = SessionLocal()
    try:
        now = _utcnow()
        res = db.execute(
            update(RequestRecord)
            .where(RequestRecord.id == request_id, RequestRecord.status == STATUS_PENDING)
            .values(status=STATUS_PROCESSING, started_at=now, updated_at=now)
        )
        db.commit()
        return res.rowcount == 1
    except SQLAlchemyError:
        db.rollback()
        logger.exception("DB update error", extra={"llm_request_id": request_id})
        raise
    finally:
        db.close()


def _iso(ts) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


def _json_or_none(text: Optional[str]) -> Any:
    return json.loads(text) if text else None


def record_to_dict(rr) -> Dict[str, Any]:
    """
    API view of a record. `result` is only exposed once the request succeeded;
    raises ValueError if the stored result cannot be parsed.
    """
    from castgate.models import STATUS_SUCCESS

    result = json.loads(rr.result) if rr.status == STATUS_SUCCESS and rr.result else None
    return {
        "id": rr.id,
        "requestType": rr.kind,
        "llmStatus": rr.status,
        "input": {
            "prompt": rr.input_prompt,
            "data": _json_or_none(rr.input_data),
            "primaryKey": rr.input_primary_key,
        },
        "output": {
            "name": rr.output_name,
            "schema": _json_or_none(rr.output_schema),
            "effectiveSchema": _json_or_none(rr.output_effective_schema),
        },
        "result": result,
        "error": rr.error,
        "fullPrompt": rr.full_prompt,
        "model": rr.model,
        "llmUsage": {
            "promptTokens": rr.llm_usage_prompt_tokens,
            "completionTokens": rr.llm_usage_completion_tokens,
            "totalTokens": rr.llm_usage_total_tokens,
        },
        "cacheUsage": {
            "promptTokens": rr.cache_usage_prompt_tokens,
            "completionTokens": rr.cache_usage_completion_tokens,
            "totalTokens": rr.cache_usage_total_tokens,
        },
        "createdAt": _iso(rr.created_at),
        "startedAt": _iso(rr.started_at),
        "finishedAt": _iso(rr.finished_at),
        "updatedAt": _iso(rr.updated_at),
    }
