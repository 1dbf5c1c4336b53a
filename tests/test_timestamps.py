from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from report_store import looks_machine_readable, to_display_timestamp

IST = ZoneInfo("Asia/Kolkata")


@pytest.mark.parametrize("value, expected", [
    ("2024-01-05T08:30:00.000Z", "05/01/2024, 14:00:00"),
    ("2024-01-05T20:00:00", "06/01/2024, 01:30:00"),
    ("2024-01-05T08:30:00+05:30", "05/01/2024, 08:30:00"),
])
def test_iso_values_render_in_local_time(value, expected):
    assert to_display_timestamp(value, IST) == expected


@pytest.mark.parametrize("value", ["05/01/2024, 14:00:00", "Tuesday", ""])
def test_non_iso_values_are_left_alone(value):
    assert to_display_timestamp(value, IST) == value


def test_display_format_is_not_machine_readable():
    assert looks_machine_readable("2024-01-05T08:30:00Z")
    assert not looks_machine_readable("05/01/2024, 14:00:00")


def test_display_timestamp_uses_store_zone(store):
    moment = datetime(2024, 1, 5, 8, 30, tzinfo=timezone.utc)

    assert store.display_timestamp(moment) == "05/01/2024, 14:00:00"


def _snapshot(store, primary_rows):
    return (
        [(r.id, r.submitted_at) for r in store.get_all()],
        [(r["uid"], r["report_date"], r["submitted_at"]) for r in primary_rows()],
    )


def test_migration_rewrites_both_backends_once(store, make_report, primary_rows):
    store.insert(make_report(report_date="2024-01-05", submitted_at="2024-01-05T08:30:00.000Z"))
    store.insert(make_report(report_date="2024-01-06", submitted_at="06/01/2024, 09:15:00"))

    assert store.migrate_timestamps_to_local_format() == 1
    first_pass = _snapshot(store, primary_rows)

    assert store.check_duplicate("42", "2024-01-05").submitted_at == "05/01/2024, 14:00:00"
    assert store.check_duplicate("42", "2024-01-06").submitted_at == "06/01/2024, 09:15:00"
    assert sorted(r["submitted_at"] for r in primary_rows()) == [
        "05/01/2024, 14:00:00",
        "06/01/2024, 09:15:00",
    ]

    assert store.migrate_timestamps_to_local_format() == 0
    assert _snapshot(store, primary_rows) == first_pass


def test_migration_without_primary_still_updates_cache(offline_store, make_report):
    report_id = offline_store.insert(make_report(submitted_at="2024-01-05T08:30:00Z"))

    assert offline_store.migrate_timestamps_to_local_format() == 1
    assert offline_store.get_by_id(report_id).submitted_at == "05/01/2024, 14:00:00"
