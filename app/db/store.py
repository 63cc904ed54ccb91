from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

import pilltime
from shared.contracts.enums import OccurrenceStatus

from .models import Base, Medication, MedicationLog, PushSubscription


def _to_medication(row: Medication) -> pilltime.Medication:
    return pilltime.Medication(
        id=row.id,
        name=row.name,
        times=tuple(row.times or ()),
        start_date=row.start_date,
        end_date=row.end_date,
        active=row.active,
        dosage=row.dosage,
    )


def _to_occurrence(row: MedicationLog) -> pilltime.Occurrence:
    return pilltime.Occurrence(
        id=row.id,
        medication_id=row.medication_id,
        scheduled_time=row.scheduled_time,
        status=row.status,
        taken_time=row.taken_time,
        notes=row.notes,
    )


def _to_subscriber(row: PushSubscription) -> pilltime.Subscriber:
    return pilltime.Subscriber(
        endpoint=row.endpoint,
        keys=dict(row.keys or {}),
        created_at=row.created_at,
        user_agent=row.user_agent,
    )


class SqlStore:
    """Relational store. Every method runs in its own short transaction."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def session(self) -> Session:
        return self._sessions()

    def get_medication(self, medication_id: int) -> Optional[pilltime.Medication]:
        with self.session() as db:
            row = db.get(Medication, medication_id)
            return _to_medication(row) if row else None

    def list_active_medications_on(self, day: date) -> List[pilltime.Medication]:
        stmt = (
            select(Medication)
            .where(Medication.active.is_(True))
            .where(Medication.start_date <= day)
            .where(or_(Medication.end_date.is_(None), Medication.end_date >= day))
            .order_by(Medication.id)
        )
        with self.session() as db:
            return [_to_medication(row) for row in db.execute(stmt).scalars()]

    def insert_occurrence_if_absent(self, medication_id: int, scheduled_time: datetime) -> bool:
        # The unique constraint decides; a concurrent duplicate is a no-op.
        with self.session() as db:
            db.add(
                MedicationLog(
                    medication_id=medication_id,
                    scheduled_time=scheduled_time,
                    status=OccurrenceStatus.PENDING,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True

    def mark_overdue_missed(self, now: datetime) -> int:
        stmt = (
            update(MedicationLog)
            .where(MedicationLog.status == OccurrenceStatus.PENDING)
            .where(MedicationLog.scheduled_time < now)
            .values(status=OccurrenceStatus.MISSED)
            .execution_options(synchronize_session=False)
        )
        with self.session() as db:
            result = db.execute(stmt)
            db.commit()
            return result.rowcount or 0

    def find_pending_at_minute(self, minute: datetime) -> List[pilltime.DueOccurrence]:
        stmt = (
            select(MedicationLog, Medication)
            .join(Medication, MedicationLog.medication_id == Medication.id)
            .where(MedicationLog.status == OccurrenceStatus.PENDING)
            .where(Medication.active.is_(True))
            .where(MedicationLog.scheduled_time >= minute)
            .where(MedicationLog.scheduled_time < minute + timedelta(minutes=1))
            .order_by(MedicationLog.scheduled_time, MedicationLog.id)
        )
        with self.session() as db:
            return [
                pilltime.DueOccurrence(
                    occurrence_id=log.id,
                    medication_id=med.id,
                    medication_name=med.name,
                    dosage=med.dosage,
                    scheduled_time=log.scheduled_time,
                )
                for log, med in db.execute(stmt).all()
            ]

    def list_occurrences_on(self, day: date) -> List[Tuple[pilltime.Occurrence, pilltime.Medication]]:
        start = datetime.combine(day, datetime.min.time())
        stmt = (
            select(MedicationLog, Medication)
            .join(Medication, MedicationLog.medication_id == Medication.id)
            .where(MedicationLog.scheduled_time >= start)
            .where(MedicationLog.scheduled_time < start + timedelta(days=1))
            .order_by(MedicationLog.scheduled_time, MedicationLog.id)
        )
        with self.session() as db:
            return [(_to_occurrence(log), _to_medication(med)) for log, med in db.execute(stmt).all()]

    def save_subscriber(
        self,
        endpoint: str,
        keys: Dict[str, str],
        created_at: datetime,
        user_agent: Optional[str] = None,
    ) -> pilltime.Subscriber:
        try:
            return self._upsert_subscriber(endpoint, keys, created_at, user_agent)
        except IntegrityError:
            # A concurrent subscribe inserted the endpoint first; the retry takes the update path.
            return self._upsert_subscriber(endpoint, keys, created_at, user_agent)

    def _upsert_subscriber(
        self,
        endpoint: str,
        keys: Dict[str, str],
        created_at: datetime,
        user_agent: Optional[str],
    ) -> pilltime.Subscriber:
        with self.session() as db:
            row = db.execute(
                select(PushSubscription).where(PushSubscription.endpoint == endpoint)
            ).scalar_one_or_none()
            if row is None:
                row = PushSubscription(endpoint=endpoint)
                db.add(row)
            row.keys = dict(keys)
            row.user_agent = user_agent
            row.created_at = created_at
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise
            return _to_subscriber(row)

    def list_subscribers(self) -> List[pilltime.Subscriber]:
        with self.session() as db:
            rows = db.execute(select(PushSubscription).order_by(PushSubscription.id)).scalars()
            return [_to_subscriber(row) for row in rows]

    def delete_subscriber(self, endpoint: str) -> bool:
        with self.session() as db:
            result = db.execute(delete(PushSubscription).where(PushSubscription.endpoint == endpoint))
            db.commit()
            return bool(result.rowcount)

    def delete_subscribers_older_than(self, cutoff: datetime) -> int:
        with self.session() as db:
            result = db.execute(delete(PushSubscription).where(PushSubscription.created_at < cutoff))
            db.commit()
            return result.rowcount or 0
