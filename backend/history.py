"""
History side of the generator: Chrome timestamps, URL lists, output database
preparation and the ``urls``/``visits`` writer.
"""

from __future__ import annotations

import contextlib
import csv
import datetime as dt
import logging
import os
import random
import shutil
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, MutableSequence, Optional, Sequence, TypeVar

from backend.schema import FAVICONS_DB_NAME, HISTORY_DB_NAME

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================================
# CONSTANTS AND HELPERS
# ============================================================================

EPOCH_1601_UTC = dt.datetime(1601, 1, 1, tzinfo=dt.timezone.utc)
ONE_MICROSECOND = dt.timedelta(microseconds=1)

# Chrome transition values - bitmasks
CORE_TRANSITION_LINK = 0
TRANSITION_CHAIN_START = 0x10000000
TRANSITION_CHAIN_END = 0x20000000

TRANSITION_LINK = CORE_TRANSITION_LINK | TRANSITION_CHAIN_START | TRANSITION_CHAIN_END
VISIT_DURATION = 24020632301


class GeneratorError(Exception):
    """Setup failure that aborts a generation run."""


class UrlListError(GeneratorError):
    pass


class TemplateMissingError(GeneratorError):
    pass


def to_chrome_time(tz_aware_dt: dt.datetime) -> int:
    if tz_aware_dt.tzinfo is None:
        raise ValueError("Datetime must be timezone-aware.")
    utc = tz_aware_dt.astimezone(dt.timezone.utc)
    return (utc - EPOCH_1601_UTC) // ONE_MICROSECOND


def from_chrome_time(chrome_time: int) -> dt.datetime:
    return EPOCH_1601_UTC + dt.timedelta(microseconds=int(chrome_time))


def random_date_in_last_days(
    days: float,
    rng: Optional[random.Random] = None,
    now: Optional[dt.datetime] = None,
) -> dt.datetime:
    """Return a moment uniformly distributed between ``now - days`` and ``now``."""
    if days < 0:
        raise ValueError("days must not be negative")
    rng = rng or random.Random()
    now = now or dt.datetime.now(dt.timezone.utc)
    return now - dt.timedelta(days=days * rng.random())


def shuffle_in_place(items: MutableSequence[T], rng: Optional[random.Random] = None) -> None:
    # Fisher-Yates
    rng = rng or random.Random()
    for i in range(len(items) - 1, 0, -1):
        j = rng.randint(0, i)
        items[i], items[j] = items[j], items[i]


# ============================================================================
# URL LISTS
# ============================================================================

@dataclass(frozen=True)
class UrlEntry:
    url: str
    title: str


def load_urls(names: Iterable[str], urls_dir: str | os.PathLike) -> List[UrlEntry]:
    """Read ``<urls_dir>/<name>.csv`` for every name, in order.

    Each file needs a header row with ``url`` and ``title`` columns. Rows keep
    their file order and files keep the order they were given in.
    """
    entries: List[UrlEntry] = []
    for name in names:
        path = Path(urls_dir) / f"{name}.csv"
        if not path.is_file():
            raise UrlListError(f"URL list not found: {path}")
        with open(path, "r", encoding="utf-8-sig", newline="") as f:
            reader = csv.DictReader(f)
            fieldnames = [(h or "").strip() for h in (reader.fieldnames or [])]
            if "url" not in fieldnames or "title" not in fieldnames:
                raise UrlListError(f"{path} must include 'url' and 'title' columns. Got: {fieldnames}")
            reader.fieldnames = fieldnames
            for row in reader:
                entries.append(UrlEntry(url=(row.get("url") or "").strip(), title=row.get("title") or ""))
        logger.debug("Loaded %s (%d URLs so far)", path, len(entries))
    return entries


def sample_urls(entries: Sequence[UrlEntry], count: int, rng: Optional[random.Random] = None) -> List[UrlEntry]:
    if count < 0:
        raise ValueError("count must not be negative")
    pool = list(entries)
    shuffle_in_place(pool, rng)
    return pool[:count]


# ============================================================================
# OUTPUT DATABASES
# ============================================================================

@dataclass(frozen=True)
class OutputPaths:
    history: Path
    favicons: Path


def prepare_databases(templates_dir: str | os.PathLike, output_dir: str | os.PathLike) -> OutputPaths:
    """Replace the output History/Favicons files with fresh template copies."""
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    paths = OutputPaths(history=out_dir / HISTORY_DB_NAME, favicons=out_dir / FAVICONS_DB_NAME)

    for path in (paths.history, paths.favicons):
        if path.exists():
            path.unlink()

    for name, path in ((HISTORY_DB_NAME, paths.history), (FAVICONS_DB_NAME, paths.favicons)):
        template = Path(templates_dir) / name
        if not template.is_file():
            raise TemplateMissingError(f"Template database not found: {template}")
        shutil.copyfile(template, path)
    return paths


def open_database(path: str | os.PathLike) -> sqlite3.Connection:
    # Transactions are opened explicitly by SequenceAllocator.transaction().
    return sqlite3.connect(str(path), isolation_level=None)


class SequenceAllocator:
    """Hands out ``max(id) + 1`` ids for the tables of one connection.

    Ids must be allocated inside :meth:`transaction`, which holds the sqlite
    write lock from the max read until the inserts are committed.
    """

    def __init__(self, con: sqlite3.Connection, tables: Iterable[str]):
        self.con = con
        self.tables = frozenset(tables)

    def next_id(self, table: str) -> int:
        if table not in self.tables:
            raise ValueError(f"Unknown table: {table}")
        row = self.con.execute(f"SELECT COALESCE(MAX(id), 0) FROM {table}").fetchone()
        return int(row[0]) + 1

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        self.con.execute("BEGIN IMMEDIATE")
        try:
            yield self.con
        except BaseException:
            if self.con.in_transaction:
                self.con.execute("ROLLBACK")
            raise
        else:
            try:
                self.con.execute("COMMIT")
            except BaseException:
                if self.con.in_transaction:
                    self.con.execute("ROLLBACK")
                raise


# ============================================================================
# HISTORY WRITER
# ============================================================================

@dataclass(frozen=True)
class UrlOutcome:
    url: str
    stage: str
    status: str
    reason: Optional[str] = None
    record_id: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status in ("added", "reused")


class HistoryWriter:
    def __init__(self, con: sqlite3.Connection):
        self.con = con
        self.allocator = SequenceAllocator(con, ("urls", "visits"))

    def add_url(self, url: str, title: str, date: dt.datetime) -> UrlOutcome:
        try:
            visit_time = to_chrome_time(date)
            with self.allocator.transaction() as con:
                url_id = self.allocator.next_id("urls")
                con.execute(
                    "INSERT INTO urls(id,url,title,visit_count,last_visit_time) VALUES(?,?,?,1,?)",
                    (url_id, url, title, visit_time),
                )
                self._add_visit(con, url_id, visit_time)
        except Exception as exc:
            logger.exception("Could not add history entry for %s", url)
            return UrlOutcome(url, "history", "failed", reason=str(exc))
        return UrlOutcome(url, "history", "added", record_id=url_id)

    def _add_visit(self, con: sqlite3.Connection, url_id: int, visit_time: int) -> int:
        visit_id = self.allocator.next_id("visits")
        con.execute(
            "INSERT INTO visits(id,url,visit_time,transition,visit_duration) VALUES(?,?,?,?,?)",
            (visit_id, url_id, visit_time, TRANSITION_LINK, VISIT_DURATION),
        )
        return visit_id
