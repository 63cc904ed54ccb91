from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple
from zoneinfo import ZoneInfo

from shared.contracts.enums import DeliveryOutcome, OccurrenceStatus, ReminderAction
from shared.contracts.models import NotificationAction, NotificationPayload

logger = logging.getLogger(__name__)

TAKEN_ACTION_TITLE = "✓ Mark as Taken"
SNOOZE_ACTION_TITLE = "⏰ Snooze 10 min"
DEFAULT_BODY = "Time to take your medication"
DEFAULT_RETENTION_DAYS = 90

Clock = Callable[[], datetime]


def parse_time_of_day(value: str) -> time:
    """Parse a strict ``HH:MM`` string."""
    parts = value.strip().split(":") if isinstance(value, str) else []
    if len(parts) != 2 or not all(p.isdigit() and len(p) == 2 for p in parts):
        raise ValueError(f"invalid time of day: {value!r}")
    return time(int(parts[0]), int(parts[1]))


def wall_clock(tz_name: Optional[str] = None) -> Clock:
    """Return a clock producing naive wall-clock datetimes in ``tz_name`` (host local when unset)."""
    zone = ZoneInfo(tz_name) if tz_name else None

    def now() -> datetime:
        if zone is None:
            return datetime.now()
        return datetime.now(zone).replace(tzinfo=None)

    return now


def truncate_to_minute(moment: datetime) -> datetime:
    return moment.replace(second=0, microsecond=0)


@dataclass(frozen=True)
class Medication:
    id: int
    name: str
    times: Tuple[str, ...]
    start_date: date
    end_date: Optional[date] = None
    active: bool = True
    dosage: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "times", tuple(self.times))

    def is_scheduled_on(self, day: date) -> bool:
        if not self.active or day < self.start_date:
            return False
        return self.end_date is None or day <= self.end_date


@dataclass(frozen=True)
class Occurrence:
    id: int
    medication_id: int
    scheduled_time: datetime
    status: OccurrenceStatus = OccurrenceStatus.PENDING
    taken_time: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class DueOccurrence:
    occurrence_id: int
    medication_id: int
    medication_name: str
    dosage: Optional[str]
    scheduled_time: datetime


@dataclass(frozen=True)
class Subscriber:
    endpoint: str
    keys: Dict[str, str]
    created_at: datetime
    user_agent: Optional[str] = None


@dataclass
class DeliveryReport:
    sent: int = 0
    failed: int = 0
    removed: int = 0
    outcomes: List[Tuple[str, DeliveryOutcome]] = field(default_factory=list)

    def record(self, endpoint: str, outcome: DeliveryOutcome) -> None:
        self.outcomes.append((endpoint, outcome))
        if outcome == DeliveryOutcome.DELIVERED:
            self.sent += 1
            return
        self.failed += 1
        if outcome == DeliveryOutcome.PERMANENT_FAILURE:
            self.removed += 1


@dataclass(frozen=True)
class DispatchSummary:
    enabled: bool
    occurrences: int = 0
    sent: int = 0
    failed: int = 0


class ReminderStore(Protocol):
    def get_medication(self, medication_id: int) -> Optional[Medication]: ...

    def list_active_medications_on(self, day: date) -> List[Medication]: ...

    def insert_occurrence_if_absent(self, medication_id: int, scheduled_time: datetime) -> bool: ...

    def mark_overdue_missed(self, now: datetime) -> int: ...

    def find_pending_at_minute(self, minute: datetime) -> List[DueOccurrence]: ...

    def list_occurrences_on(self, day: date) -> List[Tuple[Occurrence, Medication]]: ...

    def save_subscriber(
        self, endpoint: str, keys: Dict[str, str], created_at: datetime, user_agent: Optional[str] = None
    ) -> Subscriber: ...

    def list_subscribers(self) -> List[Subscriber]: ...

    def delete_subscriber(self, endpoint: str) -> bool: ...

    def delete_subscribers_older_than(self, cutoff: datetime) -> int: ...


class PushTransport(Protocol):
    enabled: bool

    def send_to_all(self, payload: NotificationPayload) -> DeliveryReport: ...


@dataclass
class InMemoryStore:
    """Thread-safe store double honouring the (medication, scheduled_time) uniqueness rule."""

    medications: Dict[int, Medication] = field(default_factory=dict)
    occurrences: Dict[int, Occurrence] = field(default_factory=dict)
    subscribers: Dict[str, Subscriber] = field(default_factory=dict)
    _keys: Dict[Tuple[int, datetime], int] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add_medication(self, medication: Medication) -> Medication:
        with self._lock:
            self.medications[medication.id] = medication
        return medication

    def get_medication(self, medication_id: int) -> Optional[Medication]:
        with self._lock:
            return self.medications.get(medication_id)

    def list_active_medications_on(self, day: date) -> List[Medication]:
        with self._lock:
            return [m for m in self.medications.values() if m.is_scheduled_on(day)]

    def insert_occurrence_if_absent(self, medication_id: int, scheduled_time: datetime) -> bool:
        key = (medication_id, scheduled_time)
        with self._lock:
            if key in self._keys:
                return False
            occurrence_id = len(self.occurrences) + 1
            self.occurrences[occurrence_id] = Occurrence(
                id=occurrence_id, medication_id=medication_id, scheduled_time=scheduled_time
            )
            self._keys[key] = occurrence_id
            return True

    def occurrence_at(self, medication_id: int, scheduled_time: datetime) -> Optional[Occurrence]:
        with self._lock:
            occurrence_id = self._keys.get((medication_id, scheduled_time))
            return self.occurrences.get(occurrence_id) if occurrence_id else None

    def set_status(
        self, occurrence_id: int, status: OccurrenceStatus, taken_time: Optional[datetime] = None
    ) -> Occurrence:
        with self._lock:
            updated = replace(self.occurrences[occurrence_id], status=status, taken_time=taken_time)
            self.occurrences[occurrence_id] = updated
            return updated

    def mark_overdue_missed(self, now: datetime) -> int:
        changed = 0
        with self._lock:
            for occurrence_id, occ in self.occurrences.items():
                if occ.status == OccurrenceStatus.PENDING and occ.scheduled_time < now:
                    self.occurrences[occurrence_id] = replace(occ, status=OccurrenceStatus.MISSED)
                    changed += 1
        return changed

    def find_pending_at_minute(self, minute: datetime) -> List[DueOccurrence]:
        with self._lock:
            occurrences = sorted(self.occurrences.values(), key=lambda o: (o.scheduled_time, o.id))
            medications = dict(self.medications)
        due = []
        for occ in occurrences:
            if occ.status != OccurrenceStatus.PENDING or truncate_to_minute(occ.scheduled_time) != minute:
                continue
            med = medications.get(occ.medication_id)
            if med is None or not med.active:
                continue
            due.append(
                DueOccurrence(
                    occurrence_id=occ.id,
                    medication_id=med.id,
                    medication_name=med.name,
                    dosage=med.dosage,
                    scheduled_time=occ.scheduled_time,
                )
            )
        return due

    def list_occurrences_on(self, day: date) -> List[Tuple[Occurrence, Medication]]:
        with self._lock:
            rows = [
                (occ, self.medications[occ.medication_id])
                for occ in self.occurrences.values()
                if occ.scheduled_time.date() == day and occ.medication_id in self.medications
            ]
        return sorted(rows, key=lambda row: (row[0].scheduled_time, row[0].id))

    def save_subscriber(
        self, endpoint: str, keys: Dict[str, str], created_at: datetime, user_agent: Optional[str] = None
    ) -> Subscriber:
        subscriber = Subscriber(endpoint=endpoint, keys=dict(keys), created_at=created_at, user_agent=user_agent)
        with self._lock:
            self.subscribers[endpoint] = subscriber
        return subscriber

    def list_subscribers(self) -> List[Subscriber]:
        with self._lock:
            return list(self.subscribers.values())

    def delete_subscriber(self, endpoint: str) -> bool:
        with self._lock:
            return self.subscribers.pop(endpoint, None) is not None

    def delete_subscribers_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [e for e, s in self.subscribers.items() if s.created_at < cutoff]
            for endpoint in stale:
                del self.subscribers[endpoint]
        return len(stale)


@dataclass
class FakeTransport:
    enabled: bool = True
    subscriber_count: int = 1
    sent: List[NotificationPayload] = field(default_factory=list)

    def send_to_all(self, payload: NotificationPayload) -> DeliveryReport:
        self.sent.append(payload)
        report = DeliveryReport()
        for i in range(self.subscriber_count):
            report.record(f"fake://{i}", DeliveryOutcome.DELIVERED)
        return report


class OccurrenceGenerator:
    """Expand medication schedules into pending occurrences.

    Idempotency rests on the store: ``insert_occurrence_if_absent`` must reject a
    second row for the same (medication, scheduled_time) atomically, so the daily
    cadence and an ad hoc edit can race on one medication without duplicating.
    """

    def __init__(self, store: ReminderStore):
        self.store = store

    def generate_for(self, medication_id: int, target_dates: Iterable[date]) -> int:
        try:
            medication = self.store.get_medication(medication_id)
            if medication is None or not medication.active:
                return 0
            return self._generate(medication, target_dates)
        except Exception:
            logger.exception("Occurrence generation failed for medication %s", medication_id)
            return 0

    def generate_for_date(self, day: date) -> int:
        created = 0
        for medication in self.store.list_active_medications_on(day):
            try:
                created += self._generate(medication, [day])
            except Exception:
                logger.exception("Occurrence generation failed for medication %s on %s", medication.id, day)
        logger.info("Created %d occurrences for %s", created, day.isoformat())
        return created

    def _generate(self, medication: Medication, target_dates: Iterable[date]) -> int:
        created = 0
        for day in sorted(set(target_dates)):
            if not medication.is_scheduled_on(day):
                continue
            for raw in dict.fromkeys(medication.times):
                try:
                    at = parse_time_of_day(raw)
                except ValueError:
                    logger.warning("Skipping invalid time %r on medication %s", raw, medication.id)
                    continue
                if self.store.insert_occurrence_if_absent(medication.id, datetime.combine(day, at)):
                    created += 1
        return created


class MissedDoseDetector:
    def __init__(self, store: ReminderStore):
        self.store = store

    def sweep(self, now: datetime) -> int:
        changed = self.store.mark_overdue_missed(now)
        if changed:
            logger.info("Marked %d occurrences as missed", changed)
        return changed


class DueOccurrenceLocator:
    """Find pending occurrences of active medications scheduled in the current minute.

    Matching is exact-minute. A minute the engine never visits (process paused,
    restart) is not backfilled: those occurrences get no notification and are
    later marked missed by the sweep.
    """

    def __init__(self, store: ReminderStore):
        self.store = store

    def find_due(self, now: datetime) -> List[DueOccurrence]:
        return self.store.find_pending_at_minute(truncate_to_minute(now))


def build_reminder_payload(due: DueOccurrence) -> NotificationPayload:
    return NotificationPayload(
        title=f"💊 Time for {due.medication_name}",
        body=f"Take {due.dosage}" if due.dosage else DEFAULT_BODY,
        tag=f"med-{due.occurrence_id}",
        data={"medicationId": due.medication_id, "logId": due.occurrence_id, "url": "/"},
        actions=[
            NotificationAction(action=ReminderAction.TAKEN, title=TAKEN_ACTION_TITLE),
            NotificationAction(action=ReminderAction.SNOOZE, title=SNOOZE_ACTION_TITLE),
        ],
        require_interaction=True,
    )


class NotificationDispatcher:
    """Broadcast one reminder per due occurrence to every subscriber.

    Sending never changes occurrence status.
    """

    def __init__(self, transport: PushTransport):
        self.transport = transport

    def notify(self, due_occurrences: List[DueOccurrence]) -> DispatchSummary:
        if not self.transport.enabled:
            if due_occurrences:
                logger.warning(
                    "Push notifications disabled (VAPID keys not configured); %d reminders not sent",
                    len(due_occurrences),
                )
            return DispatchSummary(enabled=False, occurrences=len(due_occurrences))

        sent = failed = 0
        for due in due_occurrences:
            try:
                report = self.transport.send_to_all(build_reminder_payload(due))
            except Exception:
                logger.exception("Dispatch failed for occurrence %s", due.occurrence_id)
                continue
            sent += report.sent
            failed += report.failed

        if due_occurrences:
            logger.info(
                "Dispatched %d due occurrences: %d sent, %d failed", len(due_occurrences), sent, failed
            )
        return DispatchSummary(enabled=True, occurrences=len(due_occurrences), sent=sent, failed=failed)


class ReminderFlow:
    def __init__(
        self,
        store: ReminderStore,
        transport: PushTransport,
        clock: Clock = datetime.now,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ):
        if retention_days < 1:
            raise ValueError("retention_days must be >= 1")
        self.store = store
        self.clock = clock
        self.retention_days = retention_days
        self.generator = OccurrenceGenerator(store)
        self.detector = MissedDoseDetector(store)
        self.locator = DueOccurrenceLocator(store)
        self.dispatcher = NotificationDispatcher(transport)

    def horizon(self) -> List[date]:
        today = self.clock().date()
        return [today, today + timedelta(days=1)]

    def generate_horizon(self) -> int:
        return sum(self.generator.generate_for_date(day) for day in self.horizon())

    def generate_tomorrow(self) -> int:
        return self.generator.generate_for_date(self.horizon()[1])

    def sweep_missed(self) -> int:
        return self.detector.sweep(self.clock())

    def dispatch_due(self) -> DispatchSummary:
        due = self.locator.find_due(self.clock())
        if not due:
            return DispatchSummary(enabled=self.dispatcher.transport.enabled)
        return self.dispatcher.notify(due)

    def cleanup_subscriptions(self) -> int:
        cutoff = self.clock() - timedelta(days=self.retention_days)
        removed = self.store.delete_subscribers_older_than(cutoff)
        if removed:
            logger.info("Removed %d subscriptions older than %d days", removed, self.retention_days)
        return removed

    def on_medication_created_or_reactivated(self, medication_id: int) -> int:
        return self.generator.generate_for(medication_id, self.horizon())

    def on_medication_times_or_dates_changed(self, medication_id: int) -> int:
        return self.generator.generate_for(medication_id, self.horizon())
