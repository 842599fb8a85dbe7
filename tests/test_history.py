from __future__ import annotations

import datetime as dt
import random
import sqlite3
from collections import Counter
from pathlib import Path

import pytest

from backend import history as history_module
from backend.history import (
    TRANSITION_LINK,
    VISIT_DURATION,
    HistoryWriter,
    SequenceAllocator,
    TemplateMissingError,
    UrlEntry,
    UrlListError,
    from_chrome_time,
    load_urls,
    prepare_databases,
    random_date_in_last_days,
    sample_urls,
    shuffle_in_place,
    to_chrome_time,
)

UTC = dt.timezone.utc


def test_chrome_time_of_unix_epoch() -> None:
    assert to_chrome_time(dt.datetime(1970, 1, 1, tzinfo=UTC)) == 11_644_473_600_000_000
    assert from_chrome_time(0) == dt.datetime(1601, 1, 1, tzinfo=UTC)


@pytest.mark.parametrize(
    "moment",
    [
        dt.datetime(2024, 2, 29, 23, 59, 59, 999_999, tzinfo=UTC),
        dt.datetime(1999, 12, 31, 12, 0, tzinfo=dt.timezone(dt.timedelta(hours=8))),
        dt.datetime(2031, 7, 4, 3, 14, 15, 926_535, tzinfo=dt.timezone(dt.timedelta(hours=-5, minutes=-30))),
        dt.datetime(1601, 1, 1, 0, 0, 1, tzinfo=UTC),
    ],
)
def test_chrome_time_round_trip(moment: dt.datetime) -> None:
    back = from_chrome_time(to_chrome_time(moment))

    assert abs(back - moment) < dt.timedelta(milliseconds=1)


def test_random_dates_survive_round_trip() -> None:
    rng = random.Random(7)
    for _ in range(500):
        moment = random_date_in_last_days(30, rng)
        assert abs(from_chrome_time(to_chrome_time(moment)) - moment) < dt.timedelta(milliseconds=1)


def test_to_chrome_time_rejects_naive_datetimes() -> None:
    with pytest.raises(ValueError):
        to_chrome_time(dt.datetime(2024, 1, 1))


def test_random_date_stays_inside_window() -> None:
    now = dt.datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
    rng = random.Random(3)

    moments = [random_date_in_last_days(7, rng, now=now) for _ in range(1000)]

    assert all(now - dt.timedelta(days=7) <= m <= now for m in moments)
    # continuous offsets, not whole days
    assert len({m.time() for m in moments}) > 900


def test_random_date_rejects_negative_window() -> None:
    with pytest.raises(ValueError):
        random_date_in_last_days(-1)


def test_shuffle_is_uniform() -> None:
    rng = random.Random(1234)
    counts: Counter = Counter()
    trials = 6000
    for _ in range(trials):
        items = [1, 2, 3]
        shuffle_in_place(items, rng)
        counts[tuple(items)] += 1

    assert len(counts) == 6
    for ordering, n in counts.items():
        assert 800 < n < 1200, (ordering, n)


def test_shuffle_keeps_elements() -> None:
    items = list(range(50))
    shuffle_in_place(items, random.Random(0))

    assert sorted(items) == list(range(50))


def _pool(n: int) -> list:
    return [UrlEntry(f"https://site{i}.test/", f"Site {i}") for i in range(n)]


@pytest.mark.parametrize("count", [0, 1, 5, 10])
def test_sample_returns_requested_number_of_distinct_entries(count: int) -> None:
    pool = _pool(10)

    picked = sample_urls(pool, count, random.Random(count))

    assert len(picked) == count
    assert len(set(picked)) == count
    assert set(picked) <= set(pool)


def test_sample_larger_than_pool_returns_everything() -> None:
    pool = _pool(4)

    picked = sample_urls(pool, 10, random.Random(1))

    assert sorted(picked, key=lambda e: e.url) == sorted(pool, key=lambda e: e.url)


def test_sample_does_not_reorder_the_pool() -> None:
    pool = _pool(6)
    original = list(pool)

    sample_urls(pool, 3, random.Random(2))

    assert pool == original


def test_load_urls_concatenates_files_in_order(data_dir: Path, write_url_csv) -> None:
    write_url_csv("news", [("https://a.test/", "A"), ("https://b.test/", "B, with comma")])
    write_url_csv("shops", [("https://c.test/", "C")])

    entries = load_urls(["shops", "news"], data_dir / "urls")

    assert entries == [
        UrlEntry("https://c.test/", "C"),
        UrlEntry("https://a.test/", "A"),
        UrlEntry("https://b.test/", "B, with comma"),
    ]


def test_load_urls_requires_url_and_title_columns(data_dir: Path, write_url_csv) -> None:
    write_url_csv("broken", [("https://a.test/", "A")], header=("link", "title"))

    with pytest.raises(UrlListError):
        load_urls(["broken"], data_dir / "urls")


def test_load_urls_missing_file(data_dir: Path) -> None:
    with pytest.raises(UrlListError):
        load_urls(["nope"], data_dir / "urls")


def test_prepare_databases_replaces_previous_output(data_dir: Path, tmp_path: Path) -> None:
    out = tmp_path / "out"
    out.mkdir()
    (out / "History").write_bytes(b"stale")

    paths = prepare_databases(data_dir / "templates", out)

    con = sqlite3.connect(str(paths.history))
    try:
        assert con.execute("SELECT COUNT(*) FROM urls").fetchone()[0] == 0
    finally:
        con.close()
    assert paths.favicons.read_bytes() == (data_dir / "templates" / "Favicons").read_bytes()


def test_prepare_databases_requires_templates(tmp_path: Path) -> None:
    (tmp_path / "templates").mkdir()

    with pytest.raises(TemplateMissingError):
        prepare_databases(tmp_path / "templates", tmp_path / "out")


def test_history_ids_start_at_one(history_con: sqlite3.Connection) -> None:
    writer = HistoryWriter(history_con)
    when = dt.datetime(2024, 5, 1, 8, 30, tzinfo=UTC)

    outcomes = [writer.add_url(f"https://site{i}.test/", f"Site {i}", when) for i in range(3)]

    assert [o.record_id for o in outcomes] == [1, 2, 3]
    assert all(o.status == "added" for o in outcomes)
    urls = history_con.execute("SELECT id, url, title, last_visit_time FROM urls ORDER BY id").fetchall()
    assert urls == [(i + 1, f"https://site{i}.test/", f"Site {i}", to_chrome_time(when)) for i in range(3)]
    visits = history_con.execute(
        "SELECT id, url, visit_time, transition, visit_duration FROM visits ORDER BY id"
    ).fetchall()
    assert visits == [(i, i, to_chrome_time(when), TRANSITION_LINK, VISIT_DURATION) for i in (1, 2, 3)]


def test_history_ids_continue_after_existing_max(history_con: sqlite3.Connection) -> None:
    history_con.execute("INSERT INTO urls(id,url,title,last_visit_time) VALUES(41,'https://old.test/','Old',1)")
    history_con.execute("INSERT INTO visits(id,url,visit_time) VALUES(9,41,1)")

    outcome = HistoryWriter(history_con).add_url("https://new.test/", "New", dt.datetime.now(UTC))

    assert outcome.record_id == 42
    assert history_con.execute("SELECT id, url FROM visits WHERE url=42").fetchall() == [(10, 42)]


def test_history_write_failure_rolls_back(history_con: sqlite3.Connection, rows) -> None:
    history_con.execute("DROP TABLE visits")

    outcome = HistoryWriter(history_con).add_url("https://a.test/", "A", dt.datetime.now(UTC))

    assert outcome.status == "failed"
    assert outcome.reason
    assert rows(history_con, "urls") == 0
    assert not history_con.in_transaction


def test_allocator_rejects_unknown_tables(history_con: sqlite3.Connection) -> None:
    allocator = SequenceAllocator(history_con, ("urls",))

    with pytest.raises(ValueError):
        allocator.next_id("visits; DROP TABLE urls")


def test_failed_commit_does_not_wedge_the_connection(
    history_con: sqlite3.Connection, output_paths, rows
) -> None:
    history_con.execute("PRAGMA busy_timeout=50")
    reader = sqlite3.connect(str(output_paths.history), isolation_level=None)
    try:
        reader.execute("BEGIN")
        reader.execute("SELECT * FROM urls").fetchall()

        writer = HistoryWriter(history_con)
        first = writer.add_url("https://a.test/", "A", dt.datetime.now(UTC))

        assert first.status == "failed"
        assert "locked" in (first.reason or "")
        assert not history_con.in_transaction
    finally:
        reader.execute("COMMIT")
        reader.close()

    second = writer.add_url("https://b.test/", "B", dt.datetime.now(UTC))

    assert second.status == "added"
    assert second.record_id == 1
    assert rows(history_con, "urls") == 1
    assert rows(history_con, "visits") == 1


def test_unexpected_errors_are_reported_not_raised(
    history_con: sqlite3.Connection, monkeypatch: pytest.MonkeyPatch, rows
) -> None:
    def broken(moment: dt.datetime) -> int:
        raise RuntimeError("clock exploded")

    monkeypatch.setattr(history_module, "to_chrome_time", broken)

    outcome = HistoryWriter(history_con).add_url("https://a.test/", "A", dt.datetime.now(UTC))

    assert outcome.status == "failed"
    assert outcome.reason == "clock exploded"
    assert rows(history_con, "urls") == 0
