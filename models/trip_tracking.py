from sqlalchemy import Column, Integer, ForeignKey, Float, DateTime
from database import Base
from models.common import utcnow


class TripTracking(Base):
    """Append-only GPS samples of a trip; distances are in metres."""

    __tablename__ = "trip_trackings"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    distance = Column(Float, nullable=False, default=0.0)
    cumulative_distance = Column(Float, nullable=False, default=0.0)
    recorded_at = Column(DateTime, default=utcnow)
