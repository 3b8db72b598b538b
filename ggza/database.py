import logging

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from ggza.config import DATABASE_URL, WRITE_RETRIES

logger = logging.getLogger(__name__)

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, future=True, pool_pre_ping=True, connect_args=connect_args)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_in_transaction(db: Session, unit, *, retries: int | None = None):
    """Run ``unit(db)`` and commit, re-running the whole unit on write races.

    A uniqueness race surfaces as ``IntegrityError`` and an optimistic version
    clash as ``StaleDataError``. Both roll the transaction back so that the
    unit can re-read committed state and take its idempotent path.
    """
    budget = WRITE_RETRIES if retries is None else retries
    for attempt in range(1, budget + 1):
        try:
            result = unit(db)
            db.commit()
            return result
        except (IntegrityError, StaleDataError) as exc:
            db.rollback()
            if attempt == budget:
                raise
            logger.warning("Write race on %s (try %s/%s): %s", getattr(unit, "__name__", "unit"), attempt, budget, type(exc).__name__)
        except Exception:
            db.rollback()
            raise
