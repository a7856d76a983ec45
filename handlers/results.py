import enum
import functools
from dataclasses import dataclass
from typing import Any, Optional

from loguru import logger
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm.exc import StaleDataError

from database import run_after_commit, discard_after_commit


class ErrorKind(enum.Enum):
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    DOMAIN = "domain"


class EngineError(Exception):
    kind = ErrorKind.DOMAIN

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Forbidden(EngineError):
    kind = ErrorKind.FORBIDDEN


class NotFound(EngineError):
    kind = ErrorKind.NOT_FOUND


class Conflict(EngineError):
    kind = ErrorKind.CONFLICT


class ValidationError(EngineError):
    kind = ErrorKind.VALIDATION


class DomainError(EngineError):
    kind = ErrorKind.DOMAIN


@dataclass
class Result:
    ok: bool
    value: Any = None
    message: str = ""
    error: Optional[ErrorKind] = None

    @classmethod
    def success(cls, value=None, message: str = "OK"):
        return cls(ok=True, value=value, message=message)

    @classmethod
    def fail(cls, error: ErrorKind, message: str):
        return cls(ok=False, message=message, error=error)


def _describe(e: PydanticValidationError) -> str:
    parts = []
    for err in e.errors():
        field = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{field}: {err['msg']}" if field else err["msg"])
    return "; ".join(parts)


def operation(fn):
    """
    Runs ``fn(db, ...)`` as one transaction.

    Commits on success and releases the session's after-commit callbacks.
    Expected failures (``EngineError``, payload validation, a concurrent
    modification caught by a version column) roll back and come back as a
    failed ``Result``; anything else rolls back and propagates.
    """

    @functools.wraps(fn)
    def wrapper(db, *args, **kwargs):
        try:
            value = fn(db, *args, **kwargs)
            db.commit()
        except EngineError as e:
            _abort(db)
            logger.info(f"{fn.__name__} refused ({e.kind.value}): {e.message}")
            return Result.fail(e.kind, e.message)
        except PydanticValidationError as e:
            _abort(db)
            message = _describe(e)
            logger.info(f"{fn.__name__} rejected input: {message}")
            return Result.fail(ErrorKind.VALIDATION, message)
        except StaleDataError:
            _abort(db)
            logger.warning(f"{fn.__name__}: concurrent modification detected")
            return Result.fail(ErrorKind.CONFLICT, "The record was modified concurrently, please retry")
        except Exception:
            _abort(db)
            logger.exception(f"{fn.__name__} failed")
            raise

        run_after_commit(db)
        if isinstance(value, Result):
            return value
        return Result.success(value)

    return wrapper


def _abort(db):
    db.rollback()
    discard_after_commit(db)
