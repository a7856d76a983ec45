from datetime import datetime, timezone

from sqlalchemy import Column, DateTime


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SoftDeleteMixin:
    """Rows are never removed; queries opt in to live rows with ``Model.live()``."""

    deleted_at = Column(DateTime, nullable=True)

    @classmethod
    def live(cls):
        return cls.deleted_at.is_(None)


def as_naive_utc(value: datetime) -> datetime:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
