import logging
import os
from collections.abc import Callable, Iterable, Sequence
from contextlib import contextmanager
from threading import Lock
from typing import TypeVar

from dotenv import load_dotenv
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from clinic_engine.core import config
from clinic_engine.core.errors import PersistenceFailure


load_dotenv()
DATABASE_URL = os.getenv("DATABASE_URL")

engine = create_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

logger = logging.getLogger(__name__)

T = TypeVar('T')

_schema_lock = Lock()
_engine_schema_checked = False


def ensure_engine_schema() -> None:
    global _engine_schema_checked

    if _engine_schema_checked:
        return

    with _schema_lock:
        if _engine_schema_checked:
            return

        inspector = inspect(engine)
        table_names = set(inspector.get_table_names())

        migration_steps = []
        if 'patients' in table_names:
            existing_columns = {column['name'] for column in inspector.get_columns('patients')}
            migration_steps.extend(
                statement
                for column_name, statement in [
                    ('ready_for_new_appointment',
                     'ALTER TABLE patients ADD COLUMN ready_for_new_appointment BOOLEAN DEFAULT FALSE'),
                    ('total_sessions_required', 'ALTER TABLE patients ADD COLUMN total_sessions_required INTEGER'),
                    ('remaining_sessions', 'ALTER TABLE patients ADD COLUMN remaining_sessions INTEGER'),
                ]
                if column_name not in existing_columns
            )

        with engine.begin() as connection:
            for statement in migration_steps:
                connection.execute(text(statement))
            if 'appointments' in table_names:
                connection.execute(
                    text('CREATE INDEX IF NOT EXISTS idx_appointments_clinician_date '
                         'ON appointments(clinician_id, date)')
                )
            if 'billing_records' in table_names:
                connection.execute(
                    text('CREATE INDEX IF NOT EXISTS idx_billing_patient_kind '
                         'ON billing_records(patient_id, kind, created_at)')
                )

        _engine_schema_checked = True


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session):
    """Commit everything done inside the block atomically, or nothing at all."""
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Write rolled back after a database error.')
        raise PersistenceFailure('Database unavailable. The operation can be retried.') from exc
    except Exception:
        db.rollback()
        raise


def chunked(items: Sequence[T], limit: int) -> Iterable[Sequence[T]]:
    if limit <= 0:
        raise ValueError('Batch limit must be positive.')
    for start in range(0, len(items), limit):
        yield items[start:start + limit]


def run_in_batches(
    db: Session,
    items: Iterable[T],
    operation: Callable[[Session, T], None],
    limit: int | None = None,
) -> int:
    """Apply ``operation`` to every item, committing one atomic batch per ``limit`` items.

    Returns the number of batches committed. A failing batch is rolled back on its
    own; batches committed before it stay committed.
    """
    batch_limit = limit or config.WRITE_BATCH_LIMIT
    batches = 0
    for batch in chunked(list(items), batch_limit):
        with unit_of_work(db):
            for item in batch:
                operation(db, item)
        batches += 1
    return batches
