from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from config import DATABASE_URL

engine = create_engine(DATABASE_URL, echo=False)
SessionLocal = sessionmaker(bind=engine)

Base = declarative_base()

_AFTER_COMMIT = "after_commit"


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    # every model module registers its table on Base.metadata when imported
    import models.encryption_key  # noqa: F401
    import models.user  # noqa: F401
    import models.car  # noqa: F401
    import models.gps  # noqa: F401
    import models.car_contract  # noqa: F401
    import models.inspection_schedule  # noqa: F401
    import models.booking  # noqa: F401
    import models.contract  # noqa: F401
    import models.trip_tracking  # noqa: F401
    import models.review  # noqa: F401
    import models.payment  # noqa: F401
    import models.job  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def for_update(query):
    """SELECT ... FOR UPDATE where the backend supports row locks."""
    if query.session.get_bind().dialect.name == "sqlite":
        return query
    return query.with_for_update()


# ⬇️ Side effects that must only happen once the transaction is durable
def after_commit(db, callback):
    db.info.setdefault(_AFTER_COMMIT, []).append(callback)


def run_after_commit(db):
    for callback in db.info.pop(_AFTER_COMMIT, []):
        callback()


def discard_after_commit(db):
    db.info.pop(_AFTER_COMMIT, None)
