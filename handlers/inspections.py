from datetime import datetime, timedelta
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field

import config
from database import for_update
from handlers.auth import require_role, get_live
from handlers.contracts import contract_for_car, render_contract_document, reset_signatures
from handlers.results import operation, Forbidden, NotFound, Conflict, DomainError
from models.car import Car, CarStatus
from models.car_contract import CarContractStatus
from models.common import utcnow
from models.gps import GPSDevice, CarGPS, DeviceStatus
from models.inspection_schedule import InspectionSchedule, InspectionScheduleStatus, OPEN_SCHEDULE_STATUSES
from models.user import User, UserRole
from services import jobs
from services.notifications import notify

EXPIRE_SCHEDULE_JOB = "inspection.expire"


class SchedulePayload(BaseModel):
    car_id: int
    technician_id: int
    inspection_address: str = Field(min_length=1)
    inspection_date: datetime
    note: Optional[str] = None


class InspectionResultPayload(BaseModel):
    inspection_results: str = Field(min_length=1)
    gps_device_id: int
    is_approved: bool


def _assigned_schedule(db, caller: User, schedule_id: int) -> InspectionSchedule:
    require_role(caller, UserRole.TECHNICIAN)
    schedule = for_update(db.query(InspectionSchedule).filter(
        InspectionSchedule.id == schedule_id,
        InspectionSchedule.live(),
    )).first()
    if not schedule:
        raise NotFound("Inspection schedule not found")
    if schedule.technician_id != caller.id:
        raise Forbidden("You are not the assigned technician")
    return schedule


def _available_device(db, device_id: int) -> GPSDevice:
    device = for_update(db.query(GPSDevice).filter(GPSDevice.id == device_id)).first()
    if not device:
        raise NotFound("GPS device not found")
    if device.status != DeviceStatus.AVAILABLE:
        raise DomainError("GPS device is already in use or unavailable")
    return device


def bind_device(db, car: Car, device: GPSDevice) -> CarGPS:
    """Attaches a locked, available device to the car at its pickup location."""
    if db.query(CarGPS).filter(CarGPS.car_id == car.id).first():
        raise DomainError("The car already has a GPS device")
    car_gps = CarGPS(
        car_id=car.id,
        device_id=device.id,
        latitude=car.pickup_latitude,
        longitude=car.pickup_longitude,
    )
    db.add(car_gps)
    device.status = DeviceStatus.IN_USED
    return car_gps


@operation
def create_inspection_schedule(db, caller: User, payload) -> InspectionSchedule:
    require_role(caller, UserRole.CONSULTANT)
    data = SchedulePayload.model_validate(payload)

    car = get_live(db, Car, data.car_id, "Car")
    if car.status != CarStatus.PENDING:
        raise DomainError("Only cars waiting for onboarding can be inspected")
    technician = get_live(db, User, data.technician_id, "Technician")
    if technician.role != UserRole.TECHNICIAN:
        raise DomainError("The assignee is not a technician")
    if data.inspection_date <= utcnow():
        raise DomainError("Inspection date must be in the future")

    busy = db.query(InspectionSchedule).filter(
        InspectionSchedule.car_id == car.id,
        InspectionSchedule.status.in_(OPEN_SCHEDULE_STATUSES),
        InspectionSchedule.live(),
    ).first()
    if busy:
        raise Conflict("The car already has an open inspection schedule")

    schedule = InspectionSchedule(
        car_id=car.id,
        technician_id=technician.id,
        created_by=caller.id,
        inspection_address=data.inspection_address,
        inspection_date=data.inspection_date,
        note=data.note,
    )
    db.add(schedule)
    db.flush()

    start_deadline = schedule.inspection_date + timedelta(minutes=config.INSPECTION_START_GRACE_MINUTES)
    finish_deadline = schedule.inspection_date + timedelta(minutes=config.INSPECTION_APPROVAL_WINDOW_MINUTES)
    jobs.schedule_job(db, EXPIRE_SCHEDULE_JOB, schedule.id, start_deadline, {"stage": "start"})
    jobs.schedule_job(db, EXPIRE_SCHEDULE_JOB, schedule.id, finish_deadline, {"stage": "finish"})

    notify(db, technician, "New inspection", "inspection_scheduled", schedule=schedule, car=car)
    notify(db, car.owner, "Inspection scheduled", "inspection_scheduled", schedule=schedule, car=car)
    logger.info(f"Inspection {schedule.id} for car {car.id} scheduled by consultant {caller.id}")
    return schedule


@operation
def start_inspection(db, caller: User, schedule_id: int, gps_device_id: int) -> InspectionSchedule:
    schedule = _assigned_schedule(db, caller, schedule_id)
    if schedule.status != InspectionScheduleStatus.PENDING:
        raise Conflict(f"Inspection is {schedule.status.value}")
    deadline = schedule.inspection_date + timedelta(minutes=config.INSPECTION_START_GRACE_MINUTES)
    if utcnow() > deadline:
        raise Conflict("The inspection has expired")

    running = db.query(InspectionSchedule).filter(
        InspectionSchedule.technician_id == caller.id,
        InspectionSchedule.status == InspectionScheduleStatus.IN_PROGRESS,
        InspectionSchedule.id != schedule.id,
        InspectionSchedule.live(),
    ).first()
    if running:
        raise Conflict("You already have an inspection in progress")

    device = db.query(GPSDevice).filter(GPSDevice.id == gps_device_id).first()
    if not device:
        raise NotFound("GPS device not found")
    if device.status != DeviceStatus.AVAILABLE:
        raise DomainError("GPS device is already in use or unavailable")

    schedule.gps_device_id = device.id
    schedule.status = InspectionScheduleStatus.IN_PROGRESS
    logger.info(f"Inspection {schedule.id} started by technician {caller.id} with device {device.id}")
    return schedule


@operation
def complete_inspection(db, caller: User, schedule_id: int, payload) -> InspectionSchedule:
    """Records the technician's verdict; approval makes the car bookable."""
    data = InspectionResultPayload.model_validate(payload)
    require_role(caller, UserRole.TECHNICIAN)
    schedule = _assigned_schedule(db, caller, schedule_id)
    if schedule.status != InspectionScheduleStatus.IN_PROGRESS:
        raise Conflict(f"Inspection is {schedule.status.value}")

    contract = contract_for_car(db, schedule.car_id, lock=True)
    if not contract:
        raise NotFound("The car has no contract")
    if contract.status != CarContractStatus.OWNER_SIGNED:
        raise DomainError("The contract is not waiting for inspection")
    device = _available_device(db, data.gps_device_id)

    car = schedule.car
    now = utcnow()
    contract.technician_id = caller.id
    contract.inspection_results = data.inspection_results
    contract.technician_signed_at = now

    if data.is_approved:
        bind_device(db, car, device)
        contract.gps_device_id = device.id
        contract.status = CarContractStatus.COMPLETED
        schedule.status = InspectionScheduleStatus.APPROVED
        car.status = CarStatus.AVAILABLE
    else:
        contract.status = CarContractStatus.REJECTED
        schedule.status = InspectionScheduleStatus.REJECTED
        car.status = CarStatus.REJECTED
    contract.terms = render_contract_document(db, contract, car, caller)

    verdict = "approved" if data.is_approved else "rejected"
    notify(db, car.owner, f"Inspection {verdict}", "inspection_finished", car=car, approved=data.is_approved)
    logger.info(f"Inspection {schedule.id} {verdict} by technician {caller.id}")
    return schedule


@operation
def approve_inspection_schedule(db, caller: User, schedule_id: int, note: str = None,
                                is_approved: bool = True) -> InspectionSchedule:
    schedule = _assigned_schedule(db, caller, schedule_id)
    if schedule.status != InspectionScheduleStatus.SIGNED:
        raise Conflict("Only signed inspections can be approved")

    contract = contract_for_car(db, schedule.car_id, lock=True)
    if not contract:
        raise NotFound("The car has no contract")
    if contract.owner_signed_at is None or contract.technician_signed_at is None:
        raise DomainError("The contract is missing a signature")
    if utcnow() > schedule.inspection_date + timedelta(minutes=config.INSPECTION_APPROVAL_WINDOW_MINUTES):
        raise DomainError("The inspection schedule has expired")

    schedule.note = note or schedule.note
    car = schedule.car
    if not is_approved:
        schedule.status = InspectionScheduleStatus.REJECTED
        logger.info(f"Inspection {schedule.id} rejected by technician {caller.id}")
        return schedule

    if contract.gps_device_id is None:
        raise DomainError("car not assigned a GPS device")
    device = _available_device(db, contract.gps_device_id)
    bind_device(db, car, device)
    contract.status = CarContractStatus.COMPLETED
    contract.terms = render_contract_document(db, contract, car, caller)
    schedule.status = InspectionScheduleStatus.APPROVED
    car.status = CarStatus.AVAILABLE

    notify(db, car.owner, "Inspection approved", "inspection_finished", car=car, approved=True)
    logger.info(f"Inspection {schedule.id} approved by technician {caller.id}")
    return schedule


@jobs.register(EXPIRE_SCHEDULE_JOB)
def expire_schedule(db, job, now) -> bool:
    schedule = for_update(db.query(InspectionSchedule).filter(
        InspectionSchedule.id == job.entity_id,
        InspectionSchedule.live(),
    )).first()
    if not schedule:
        return False

    stage = (job.payload or {}).get("stage", "finish")
    if stage == "start":
        if schedule.status != InspectionScheduleStatus.PENDING:
            return False
        if now < schedule.inspection_date + timedelta(minutes=config.INSPECTION_START_GRACE_MINUTES):
            return False
    else:
        if schedule.status not in OPEN_SCHEDULE_STATUSES:
            return False
        if now < schedule.inspection_date + timedelta(minutes=config.INSPECTION_APPROVAL_WINDOW_MINUTES):
            return False

    schedule.status = InspectionScheduleStatus.EXPIRED
    contract = contract_for_car(db, schedule.car_id, lock=True)
    if contract and contract.status in (
        CarContractStatus.PENDING, CarContractStatus.OWNER_SIGNED, CarContractStatus.TECHNICIAN_SIGNED,
    ):
        reset_signatures(contract)

    notify(db, schedule.technician, "Inspection expired", "inspection_expired", schedule=schedule)
    logger.info(f"Inspection {schedule.id} expired ({stage})")
    return True
