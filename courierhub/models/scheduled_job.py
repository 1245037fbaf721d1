"""
Durable scheduled job model

Delayed work (e.g. an NDR workflow action due in 4 hours) is stored as a row
with a due time and claimed by the job worker via conditional UPDATE.
In-process timers are never used for this.
"""
from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, Text, JSON, Index

from courierhub.core.database import Base, UTCDateTime, utcnow


class ScheduledJobStatus(str, PyEnum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ScheduledJobType(str, PyEnum):
    NDR_ACTION = "ndr_action"


class ScheduledJob(Base):
    __tablename__ = "scheduled_jobs"
    __table_args__ = (
        Index("ix_scheduled_jobs_due", "status", "run_at"),
        Index("ix_scheduled_jobs_reference", "reference_type", "reference_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    job_type = Column(String(50), nullable=False)
    payload = Column(JSON, default=dict, nullable=False)

    # What the job belongs to, so owners can cancel pending work
    reference_type = Column(String(30), nullable=True)
    reference_id = Column(Integer, nullable=True)

    run_at = Column(UTCDateTime, nullable=False)
    status = Column(String(20), default=ScheduledJobStatus.PENDING.value, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    locked_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<ScheduledJob(id={self.id}, type={self.job_type}, status={self.status}, run_at={self.run_at})>"
