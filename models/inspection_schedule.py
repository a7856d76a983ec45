from sqlalchemy import Column, Integer, String, ForeignKey, Enum, Text, DateTime
from sqlalchemy.orm import relationship
from database import Base
from models.common import SoftDeleteMixin, utcnow
from models.car import Car
from models.user import User
import enum


class InspectionScheduleStatus(enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SIGNED = "signed"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


# statuses in which a schedule still occupies the car
OPEN_SCHEDULE_STATUSES = (
    InspectionScheduleStatus.PENDING,
    InspectionScheduleStatus.IN_PROGRESS,
    InspectionScheduleStatus.SIGNED,
)


class InspectionSchedule(SoftDeleteMixin, Base):
    __tablename__ = "inspection_schedules"

    id = Column(Integer, primary_key=True, index=True)
    technician_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    car_id = Column(Integer, ForeignKey("cars.id"), nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(Enum(InspectionScheduleStatus), default=InspectionScheduleStatus.PENDING, nullable=False)
    inspection_address = Column(String, nullable=False)
    inspection_date = Column(DateTime, nullable=False)
    note = Column(Text, nullable=True)
    gps_device_id = Column(Integer, ForeignKey("gps_devices.id"), nullable=True)
    report_id = Column(Integer, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    car = relationship(Car)
    technician = relationship(User, foreign_keys=[technician_id])

    __mapper_args__ = {"version_id_col": version}
