import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from loguru import logger

from database import for_update
from handlers.auth import get_live
from handlers.results import operation, Forbidden, NotFound, Conflict, DomainError
from models.car import Car
from models.car_contract import CarContract, CarContractStatus
from models.common import utcnow
from models.inspection_schedule import InspectionSchedule, InspectionScheduleStatus
from models.user import User, UserRole
from services.documents import render_car_contract
from services.encryption import decrypt_field

SIGNABLE_STATUSES = (
    CarContractStatus.PENDING,
    CarContractStatus.OWNER_SIGNED,
    CarContractStatus.TECHNICIAN_SIGNED,
)


class Signer(enum.Enum):
    OWNER = "owner"
    TECHNICIAN = "technician"


@dataclass
class SigningState:
    owner_signed_at: Optional[datetime]
    technician_signed_at: Optional[datetime]
    status: CarContractStatus
    changed: bool

    @property
    def fully_signed(self) -> bool:
        return self.owner_signed_at is not None and self.technician_signed_at is not None


def next_signing_state(owner_signed_at, technician_signed_at, status: CarContractStatus,
                       signer: Signer, now: datetime) -> SigningState:
    """
    Computes the contract's signatures after ``signer`` signs.

    A party that already signed keeps its original date and the status is
    left alone, so repeating a signature changes nothing.
    """
    if status not in SIGNABLE_STATUSES:
        raise Conflict(f"Contract in status {status.value} cannot be signed")

    changed = False
    match signer:
        case Signer.OWNER:
            if owner_signed_at is None:
                owner_signed_at = now
                status = CarContractStatus.OWNER_SIGNED
                changed = True
        case Signer.TECHNICIAN:
            if technician_signed_at is None:
                technician_signed_at = now
                status = CarContractStatus.TECHNICIAN_SIGNED
                changed = True
    return SigningState(owner_signed_at, technician_signed_at, status, changed)


def apply_signature(contract: CarContract, schedule: InspectionSchedule, signer: Signer, now: datetime) -> SigningState:
    state = next_signing_state(contract.owner_signed_at, contract.technician_signed_at, contract.status, signer, now)
    contract.owner_signed_at = state.owner_signed_at
    contract.technician_signed_at = state.technician_signed_at
    contract.status = state.status
    if state.fully_signed and schedule.status == InspectionScheduleStatus.IN_PROGRESS:
        schedule.status = InspectionScheduleStatus.SIGNED
    return state


def reset_signatures(contract: CarContract):
    contract.owner_signed_at = None
    contract.technician_signed_at = None
    contract.status = CarContractStatus.PENDING


def contract_for_car(db, car_id: int, lock: bool = False):
    query = db.query(CarContract).filter(CarContract.car_id == car_id, CarContract.live())
    if lock:
        query = for_update(query)
    return query.first()


def active_schedule(db, car_id: int, *statuses: InspectionScheduleStatus):
    return for_update(db.query(InspectionSchedule).filter(
        InspectionSchedule.car_id == car_id,
        InspectionSchedule.status.in_(statuses),
        InspectionSchedule.live(),
    ).order_by(InspectionSchedule.id.desc())).first()


def render_contract_document(db, contract: CarContract, car: Car, technician: User) -> str:
    owner = car.owner
    return render_car_contract(
        contract=contract,
        car=car,
        owner=owner,
        technician=technician,
        owner_license=decrypt_field(owner.encryption_key, owner.encrypted_license_number),
        technician_license=decrypt_field(technician.encryption_key, technician.encrypted_license_number),
        license_plate=decrypt_field(car.encryption_key, car.encrypted_license_plate),
        signed_on=utcnow(),
    )


@operation
def sign_contract(db, caller: User, car_id: int) -> CarContract:
    car = get_live(db, Car, car_id, "Car")
    contract = contract_for_car(db, car.id, lock=True)
    if not contract:
        raise NotFound("The car has no contract")

    if caller is not None and caller.role == UserRole.OWNER and car.owner_id == caller.id:
        signer = Signer.OWNER
    elif caller is not None and caller.role == UserRole.TECHNICIAN and contract.technician_id == caller.id:
        signer = Signer.TECHNICIAN
    else:
        raise Forbidden("You are not allowed to sign this contract")

    if contract.status not in SIGNABLE_STATUSES:
        raise Conflict(f"Contract in status {contract.status.value} cannot be signed")

    schedule = active_schedule(db, car.id, InspectionScheduleStatus.IN_PROGRESS, InspectionScheduleStatus.SIGNED)
    if not schedule:
        raise NotFound("No inspection in progress for this car")

    state = apply_signature(contract, schedule, signer, utcnow())
    if state.changed:
        logger.info(f"Contract {contract.id} signed by {signer.value} {caller.id}")
    else:
        logger.info(f"Contract {contract.id}: {signer.value} {caller.id} already signed")
    return contract


@operation
def update_contract(db, caller: User, schedule_id: int) -> CarContract:
    """Prepares the car's contract for signing from the technician's running inspection."""
    if caller is None or caller.role != UserRole.TECHNICIAN:
        raise Forbidden("Only technicians can prepare contracts")

    schedule = get_live(db, InspectionSchedule, schedule_id, "Inspection schedule")
    if schedule.technician_id != caller.id:
        raise Forbidden("You are not the assigned technician")
    if schedule.status != InspectionScheduleStatus.IN_PROGRESS:
        raise Conflict("The inspection is not in progress")
    if schedule.gps_device_id is None:
        raise DomainError("car not assigned a GPS device")

    contract = contract_for_car(db, schedule.car_id, lock=True)
    if contract is None:
        contract = CarContract(car_id=schedule.car_id, terms=schedule.car.terms)
        db.add(contract)
    elif contract.status in (CarContractStatus.COMPLETED, CarContractStatus.REJECTED):
        raise Conflict(f"Contract is already {contract.status.value}")

    contract.technician_id = caller.id
    contract.gps_device_id = schedule.gps_device_id
    # a changed contract has to be signed again
    reset_signatures(contract)
    db.flush()
    logger.info(f"Contract {contract.id} prepared for car {schedule.car_id} by technician {caller.id}")
    return contract
