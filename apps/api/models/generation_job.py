"""Generation job model."""

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func
import uuid

from database import Base


JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
ACTIVE_JOB_STATUSES = (JOB_QUEUED, JOB_PROCESSING)
TERMINAL_JOB_STATUSES = (JOB_COMPLETED, JOB_FAILED)


class GenerationJob(Base):
    """Billable unit of work: queued, run by a worker, polled by result id."""

    __tablename__ = "generation_jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    result_id = Column(String, nullable=False, unique=True, index=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String, nullable=False, index=True)
    payload_json = Column(JSON, nullable=False)
    billable_amount = Column(Integer, nullable=False, default=0)
    dispatch_mode = Column(String, nullable=False, default="remote")
    status = Column(String, nullable=False, default=JOB_QUEUED, index=True)
    progress = Column(Integer, nullable=False, default=0)
    stage = Column(String, nullable=True)
    queue_job_id = Column(String, nullable=True, index=True)
    charge_status = Column(String, nullable=False, default="pending")
    error_code = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    result_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
