# castgate/models.py
import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text

from castgate.db import Base

# Request lifecycle: pending -> processing -> success | failed
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = (STATUS_SUCCESS, STATUS_FAILED)

REQUEST_TYPE_VALUE = "value"
REQUEST_TYPE_ARRAY = "array"


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


class RequestRecord(Base):
    __tablename__ = "llm_requests"

    id = Column(String(36), primary_key=True, index=True)
    request_type = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default=STATUS_PENDING, index=True)

    input_prompt = Column(Text, nullable=False)
    input_data = Column(Text, nullable=True)
    input_primary_key = Column(String(255), nullable=True)
    output_name = Column(String(255), nullable=False)
    output_schema = Column(Text, nullable=False)
    output_effective_schema = Column(Text, nullable=False)
    invalidate_cache = Column(Boolean, nullable=False, default=False)

    model = Column(String(255), nullable=True)
    max_tokens = Column(Integer, nullable=False, default=8192)
    temperature = Column(Float, nullable=False, default=0.7)
    system_prompt = Column(Text, nullable=True)
    full_prompt = Column(Text, nullable=True)

    result = Column(Text, nullable=True)
    error = Column(Text, nullable=True)

    llm_usage_prompt_tokens = Column(Integer, nullable=False, default=0)
    llm_usage_completion_tokens = Column(Integer, nullable=False, default=0)
    llm_usage_total_tokens = Column(Integer, nullable=False, default=0)
    cache_usage_prompt_tokens = Column(Integer, nullable=False, default=0)
    cache_usage_completion_tokens = Column(Integer, nullable=False, default=0)
    cache_usage_total_tokens = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=_utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    @property
    def kind(self) -> str:
        return "cast/" + self.request_type
