from sqlalchemy import Column, Integer, String, Enum, DateTime, JSON, Text
from database import Base
from models.common import utcnow
import enum


class JobStatus(enum.Enum):
    PENDING = "pending"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


class ScheduledJob(Base):
    __tablename__ = "scheduled_jobs"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String, nullable=False, index=True)
    entity_id = Column(Integer, nullable=False, index=True)
    run_at = Column(DateTime, nullable=False, index=True)
    payload = Column(JSON, default=dict)
    status = Column(Enum(JobStatus), default=JobStatus.PENDING, nullable=False)
    attempts = Column(Integer, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    finished_at = Column(DateTime, nullable=True)
