from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import date, datetime, time

import pytest

from pilltime import (
    FakeTransport,
    InMemoryStore,
    Medication,
    OccurrenceGenerator,
    ReminderFlow,
    parse_time_of_day,
    wall_clock,
)
from shared.contracts.enums import OccurrenceStatus


def _medication(**overrides) -> Medication:
    fields = dict(
        id=1,
        name="Metformin",
        times=("09:00", "21:00"),
        start_date=date(2024, 1, 10),
        end_date=date(2024, 1, 12),
        dosage="500mg",
    )
    fields.update(overrides)
    return Medication(**fields)


def test_window_correctness():
    store = InMemoryStore()
    store.add_medication(_medication())
    generator = OccurrenceGenerator(store)

    assert generator.generate_for_date(date(2024, 1, 11)) == 2
    assert generator.generate_for_date(date(2024, 1, 13)) == 0
    assert generator.generate_for_date(date(2024, 1, 9)) == 0

    scheduled = sorted(o.scheduled_time for o in store.occurrences.values())
    assert scheduled == [datetime(2024, 1, 11, 9, 0), datetime(2024, 1, 11, 21, 0)]
    assert all(o.status == OccurrenceStatus.PENDING for o in store.occurrences.values())


def test_start_and_end_dates_are_inclusive():
    store = InMemoryStore()
    store.add_medication(_medication())
    generator = OccurrenceGenerator(store)

    assert generator.generate_for_date(date(2024, 1, 10)) == 2
    assert generator.generate_for_date(date(2024, 1, 12)) == 2


def test_generation_is_idempotent():
    store = InMemoryStore()
    store.add_medication(_medication())
    generator = OccurrenceGenerator(store)
    days = {date(2024, 1, 10), date(2024, 1, 11)}

    assert generator.generate_for(1, days) == 4
    assert generator.generate_for(1, days) == 0
    assert generator.generate_for_date(date(2024, 1, 11)) == 0
    assert len(store.occurrences) == 4


def test_open_ended_medication_generates_far_in_the_future():
    store = InMemoryStore()
    store.add_medication(_medication(end_date=None))

    assert OccurrenceGenerator(store).generate_for_date(date(2031, 6, 1)) == 2


def test_inactive_or_unknown_medication_generates_nothing():
    store = InMemoryStore()
    store.add_medication(_medication(active=False))
    generator = OccurrenceGenerator(store)

    assert generator.generate_for_date(date(2024, 1, 11)) == 0
    assert generator.generate_for(1, [date(2024, 1, 11)]) == 0
    assert generator.generate_for(99, [date(2024, 1, 11)]) == 0
    assert store.occurrences == {}


def test_invalid_and_duplicate_times_are_skipped():
    store = InMemoryStore()
    store.add_medication(_medication(times=("08:00", "9am", "25:00", "08:00")))

    assert OccurrenceGenerator(store).generate_for_date(date(2024, 1, 11)) == 1


class FlakyStore(InMemoryStore):
    def insert_occurrence_if_absent(self, medication_id, scheduled_time):
        if medication_id == 2:
            raise RuntimeError("database is locked")
        return super().insert_occurrence_if_absent(medication_id, scheduled_time)


def test_one_medication_failure_does_not_abort_the_batch():
    store = FlakyStore()
    for med_id in (1, 2, 3):
        store.add_medication(_medication(id=med_id, times=("07:30",)))

    assert OccurrenceGenerator(store).generate_for_date(date(2024, 1, 11)) == 2
    assert {o.medication_id for o in store.occurrences.values()} == {1, 3}


def test_ad_hoc_generation_swallows_store_errors():
    store = FlakyStore()
    store.add_medication(_medication(id=2))

    assert OccurrenceGenerator(store).generate_for(2, [date(2024, 1, 11)]) == 0


def test_concurrent_callers_never_duplicate():
    store = InMemoryStore()
    store.add_medication(_medication())
    generator = OccurrenceGenerator(store)
    days = [date(2024, 1, 10), date(2024, 1, 11), date(2024, 1, 12)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: generator.generate_for(1, days), range(16)))

    assert sum(results) == 6
    assert len(store.occurrences) == 6


def test_readers_can_run_while_occurrences_are_inserted():
    store = InMemoryStore()
    times = tuple(f"{h:02d}:{m:02d}" for h in range(24) for m in (0, 15, 30, 45))
    for med_id in range(1, 6):
        store.add_medication(_medication(id=med_id, times=times, start_date=date(2024, 1, 1), end_date=None))
    generator = OccurrenceGenerator(store)
    days = [date(2024, 1, d) for d in range(1, 29)]

    def read(_):
        for day in days:
            store.list_occurrences_on(day)
            store.find_pending_at_minute(datetime.combine(day, time(9, 0)))
        return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        writers = [pool.submit(generator.generate_for, med_id, days) for med_id in range(1, 6)]
        readers = list(pool.map(read, range(8)))

    assert all(readers)
    assert sum(w.result() for w in writers) == 5 * len(times) * len(days)


def test_hooks_cover_today_and_tomorrow_only():
    store = InMemoryStore()
    store.add_medication(_medication(start_date=date(2024, 1, 1), end_date=None))
    flow = ReminderFlow(store, FakeTransport(), clock=lambda: datetime(2024, 1, 10, 8, 0))

    assert flow.on_medication_created_or_reactivated(1) == 4
    assert {o.scheduled_time.date() for o in store.occurrences.values()} == {
        date(2024, 1, 10),
        date(2024, 1, 11),
    }

    store.add_medication(replace(store.get_medication(1), times=("09:00", "13:00", "21:00")))
    assert flow.on_medication_times_or_dates_changed(1) == 2


def test_reactivation_fills_the_horizon():
    store = InMemoryStore()
    store.add_medication(_medication(start_date=date(2024, 1, 1), end_date=None, active=False))
    flow = ReminderFlow(store, FakeTransport(), clock=lambda: datetime(2024, 1, 10, 23, 50))

    assert flow.on_medication_created_or_reactivated(1) == 0

    store.add_medication(replace(store.get_medication(1), active=True))
    assert flow.on_medication_created_or_reactivated(1) == 4


def test_startup_and_midnight_generation():
    store = InMemoryStore()
    store.add_medication(_medication(start_date=date(2024, 1, 1), end_date=None))
    store.add_medication(_medication(id=2, name="Lisinopril", times=("08:00",), start_date=date(2024, 1, 11)))
    flow = ReminderFlow(store, FakeTransport(), clock=lambda: datetime(2024, 1, 10, 0, 0, 5))

    assert flow.generate_horizon() == 5
    assert flow.generate_tomorrow() == 0


@pytest.mark.parametrize("raw, expected", [("00:00", time(0, 0)), ("09:05", time(9, 5)), ("23:59", time(23, 59))])
def test_parse_time_of_day_accepts_hh_mm(raw, expected):
    assert parse_time_of_day(raw) == expected


@pytest.mark.parametrize("raw", ["9:00", "24:00", "12:60", "noon", "12:00:00", ""])
def test_parse_time_of_day_rejects_malformed_values(raw):
    with pytest.raises(ValueError):
        parse_time_of_day(raw)


def test_wall_clock_returns_naive_datetimes():
    assert wall_clock()().tzinfo is None
    assert wall_clock("Europe/Berlin")().tzinfo is None
