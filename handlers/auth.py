from models.user import User, UserRole
from handlers.results import Forbidden, NotFound


def require_role(caller: User, *roles: UserRole):
    if caller is None or caller.deleted_at is not None:
        raise Forbidden("You must be signed in to do this")
    if caller.role not in roles:
        raise Forbidden(f"Role {caller.role.value} is not allowed to do this")


def require_active(caller: User):
    if caller.is_banned:
        raise Forbidden("Your account is banned")


def get_live(db, model, entity_id: int, label: str = None):
    row = db.query(model).filter(model.id == entity_id, model.live()).first()
    if not row:
        raise NotFound(f"{label or model.__name__} not found")
    return row
