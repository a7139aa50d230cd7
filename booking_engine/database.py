from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from booking_engine.core import config


connect_args = {'check_same_thread': False} if config.DATABASE_URL.startswith('sqlite') else {}

engine = create_engine(config.DATABASE_URL, echo=config.DATABASE_ECHO, connect_args=connect_args)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

# Appointments in these states never hold a provider's time.
INACTIVE_APPOINTMENT_STATUSES = ('cancelled', 'rejected')

_schema_lock = Lock()
_appointment_schema_checked = False
_time_slot_schema_checked = False
_recurring_schema_checked = False


def _run_migration_steps(table_name: str, migration_steps: list[tuple[str, str]], statements: list[str]) -> None:
    inspector = inspect(engine)

    if table_name not in inspector.get_table_names():
        return

    existing_columns = {column['name'] for column in inspector.get_columns(table_name)}

    with engine.begin() as connection:
        for column_name, statement in migration_steps:
            if column_name not in existing_columns:
                connection.execute(text(statement))
        for statement in statements:
            connection.execute(text(statement))


def ensure_appointment_schema() -> None:
    global _appointment_schema_checked

    if _appointment_schema_checked:
        return

    with _schema_lock:
        if _appointment_schema_checked:
            return

        inactive = ', '.join(f"'{value}'" for value in INACTIVE_APPOINTMENT_STATUSES)
        _run_migration_steps(
            'appointments',
            [
                ('recurrence', "ALTER TABLE appointments ADD COLUMN recurrence VARCHAR DEFAULT 'none'"),
                ('external_booking', 'ALTER TABLE appointments ADD COLUMN external_booking BOOLEAN DEFAULT FALSE'),
                ('residencia_id', 'ALTER TABLE appointments ADD COLUMN residencia_id INTEGER'),
                ('recurring_rule_id', 'ALTER TABLE appointments ADD COLUMN recurring_rule_id INTEGER'),
                ('notes', 'ALTER TABLE appointments ADD COLUMN notes VARCHAR'),
            ],
            [
                'CREATE INDEX IF NOT EXISTS idx_appointments_provider_start ON appointments(provider_id, start_time)',
                'CREATE INDEX IF NOT EXISTS idx_appointments_time_range ON appointments(start_time, end_time)',
                # At most one active appointment per provider start time.
                'CREATE UNIQUE INDEX IF NOT EXISTS uq_appointments_provider_start_active '
                f'ON appointments(provider_id, start_time) WHERE status NOT IN ({inactive})',
            ],
        )

        _appointment_schema_checked = True


def ensure_time_slot_schema() -> None:
    global _time_slot_schema_checked

    if _time_slot_schema_checked:
        return

    with _schema_lock:
        if _time_slot_schema_checked:
            return

        _run_migration_steps(
            'provider_time_slots',
            [
                ('slot_datetime_start', 'ALTER TABLE provider_time_slots ADD COLUMN slot_datetime_start TIMESTAMP'),
                ('slot_datetime_end', 'ALTER TABLE provider_time_slots ADD COLUMN slot_datetime_end TIMESTAMP'),
                ('slot_type', "ALTER TABLE provider_time_slots ADD COLUMN slot_type VARCHAR DEFAULT 'generated'"),
            ],
            [
                'CREATE INDEX IF NOT EXISTS idx_time_slots_listing_date '
                'ON provider_time_slots(provider_id, listing_id, slot_date)',
                'CREATE INDEX IF NOT EXISTS idx_time_slots_listing_datetime '
                'ON provider_time_slots(provider_id, listing_id, slot_datetime_start)',
            ],
        )

        _time_slot_schema_checked = True


def ensure_recurring_schema() -> None:
    global _recurring_schema_checked

    if _recurring_schema_checked:
        return

    with _schema_lock:
        if _recurring_schema_checked:
            return

        _run_migration_steps(
            'recurring_rules',
            [
                ('day_of_month', 'ALTER TABLE recurring_rules ADD COLUMN day_of_month INTEGER'),
                ('client_name', 'ALTER TABLE recurring_rules ADD COLUMN client_name VARCHAR'),
            ],
            ['CREATE INDEX IF NOT EXISTS idx_recurring_rules_provider_active ON recurring_rules(provider_id, is_active)'],
        )
        _run_migration_steps(
            'recurring_instances',
            [],
            ['CREATE INDEX IF NOT EXISTS idx_recurring_instances_rule_start ON recurring_instances(recurring_rule_id, start_time)'],
        )

        _recurring_schema_checked = True


def ensure_scheduling_schema() -> None:
    ensure_appointment_schema()
    ensure_time_slot_schema()
    ensure_recurring_schema()
