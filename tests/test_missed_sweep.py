from dataclasses import replace
from datetime import date, datetime, timedelta

from pilltime import (
    DueOccurrenceLocator,
    FakeTransport,
    InMemoryStore,
    Medication,
    MissedDoseDetector,
    OccurrenceGenerator,
    ReminderFlow,
)
from shared.contracts.enums import OccurrenceStatus

DAY = date(2024, 1, 11)
NOW = datetime(2024, 1, 11, 12, 0)


def _seeded_store() -> InMemoryStore:
    store = InMemoryStore()
    store.add_medication(
        Medication(id=1, name="Atorvastatin", times=("09:00", "21:00"), start_date=date(2024, 1, 1))
    )
    OccurrenceGenerator(store).generate_for_date(DAY)
    return store


def test_overdue_pending_becomes_missed():
    store = _seeded_store()

    assert MissedDoseDetector(store).sweep(NOW) == 1
    assert store.occurrence_at(1, datetime(2024, 1, 11, 9, 0)).status == OccurrenceStatus.MISSED
    assert store.occurrence_at(1, datetime(2024, 1, 11, 21, 0)).status == OccurrenceStatus.PENDING


def test_sweep_is_idempotent():
    store = _seeded_store()
    detector = MissedDoseDetector(store)

    assert detector.sweep(NOW) == 1
    assert detector.sweep(NOW) == 0
    assert detector.sweep(NOW + timedelta(minutes=30)) == 0


def test_acknowledged_occurrences_are_untouched():
    store = _seeded_store()
    morning = store.occurrence_at(1, datetime(2024, 1, 11, 9, 0))
    evening = store.occurrence_at(1, datetime(2024, 1, 11, 21, 0))
    store.set_status(morning.id, OccurrenceStatus.TAKEN, taken_time=datetime(2024, 1, 11, 9, 4))
    store.set_status(evening.id, OccurrenceStatus.SKIPPED)

    assert MissedDoseDetector(store).sweep(datetime(2024, 1, 12, 0, 0)) == 0
    assert store.occurrences[morning.id].status == OccurrenceStatus.TAKEN
    assert store.occurrences[morning.id].taken_time == datetime(2024, 1, 11, 9, 4)
    assert store.occurrences[evening.id].status == OccurrenceStatus.SKIPPED


def test_occurrence_scheduled_exactly_now_is_not_missed_yet():
    store = _seeded_store()

    assert MissedDoseDetector(store).sweep(datetime(2024, 1, 11, 9, 0)) == 0


def test_deactivated_medication_still_ages_into_missed():
    store = _seeded_store()
    store.add_medication(replace(store.get_medication(1), active=False))

    assert DueOccurrenceLocator(store).find_due(datetime(2024, 1, 11, 21, 0, 15)) == []
    assert OccurrenceGenerator(store).generate_for_date(date(2024, 1, 12)) == 0
    assert MissedDoseDetector(store).sweep(datetime(2024, 1, 11, 23, 0)) == 2


def test_flow_sweeps_with_its_clock():
    store = _seeded_store()
    flow = ReminderFlow(store, FakeTransport(), clock=lambda: NOW + timedelta(hours=1))

    assert flow.sweep_missed() == 1
