"""
Generate a fake Chrome ``History`` and ``Favicons`` pair from CSV URL lists.

Run with ``python -m backend.generate``. Every setting has a default below and
can be overridden through ``HISTGEN_<FIELD>`` environment variables, e.g.
``HISTGEN_NUMBER_OF_URLS=25``.
"""

from __future__ import annotations

import csv
import dataclasses
import logging
import os
import random
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests

from backend.favicons import FaviconWriter
from backend.history import (
    GeneratorError,
    HistoryWriter,
    OutputPaths,
    UrlEntry,
    UrlOutcome,
    load_urls,
    open_database,
    prepare_databases,
    random_date_in_last_days,
    sample_urls,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "HISTGEN_"


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass(frozen=True)
class GeneratorConfig:
    # The maximum number of days in the past to add the history.
    days_back_to_add: float = 7.0
    # The number of historical entries to add.
    number_of_urls: int = 10
    # CSV files to read, located in '<data_dir>/urls/<name>.csv'.
    url_files_to_load: Tuple[str, ...] = ("sample",)
    data_dir: str = "data"
    output_dir: str = "output"
    request_timeout: float = 10.0
    # Zone used for the console log line only; timestamps are stored in UTC.
    timezone: str = "UTC"

    @property
    def urls_dir(self) -> Path:
        return Path(self.data_dir) / "urls"

    @property
    def templates_dir(self) -> Path:
        return Path(self.data_dir) / "templates"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GeneratorConfig":
        environ = os.environ if environ is None else environ
        defaults = cls()
        overrides: Dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            current = getattr(defaults, f.name)
            if isinstance(current, tuple):
                overrides[f.name] = tuple(part.strip() for part in raw.split(",") if part.strip())
            elif isinstance(current, int):
                overrides[f.name] = int(raw)
            elif isinstance(current, float):
                overrides[f.name] = float(raw)
            else:
                overrides[f.name] = raw
        return dataclasses.replace(defaults, **overrides)


# ============================================================================
# RUN SUMMARY
# ============================================================================

@dataclass
class RunSummary:
    paths: OutputPaths
    entries: List[UrlEntry] = field(default_factory=list)
    outcomes: List[UrlOutcome] = field(default_factory=list)

    def _count(self, stage: str, status: str) -> int:
        return sum(1 for o in self.outcomes if o.stage == stage and o.status == status)

    @property
    def history_added(self) -> int:
        return self._count("history", "added")

    @property
    def favicons_added(self) -> int:
        return self._count("favicon", "added")

    @property
    def favicons_reused(self) -> int:
        return self._count("favicon", "reused")

    @property
    def mappings_added(self) -> int:
        return self.favicons_added + self.favicons_reused

    @property
    def failures(self) -> List[UrlOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "history": str(self.paths.history),
            "favicons": str(self.paths.favicons),
            "history_added": self.history_added,
            "favicons_added": self.favicons_added,
            "favicons_reused": self.favicons_reused,
            "mappings_added": self.mappings_added,
            "outcomes": [dataclasses.asdict(o) for o in self.outcomes],
        }


# ============================================================================
# PIPELINE
# ============================================================================

def generate(
    config: GeneratorConfig,
    rng: Optional[random.Random] = None,
    session: Optional[requests.Session] = None,
) -> RunSummary:
    rng = rng or random.Random()
    display_tz = ZoneInfo(config.timezone)

    entries = load_urls(config.url_files_to_load, config.urls_dir)
    selected = sample_urls(entries, config.number_of_urls, rng)
    paths = prepare_databases(config.templates_dir, config.output_dir)
    summary = RunSummary(paths=paths, entries=selected)

    own_session = session is None
    session = session or requests.Session()
    history_con = open_database(paths.history)
    try:
        favicon_con = open_database(paths.favicons)
        try:
            history = HistoryWriter(history_con)
            favicons = FaviconWriter(favicon_con, session=session, timeout=config.request_timeout)
            for entry in selected:
                date = random_date_in_last_days(config.days_back_to_add, rng)
                logger.info(
                    "Adding %s with title %s on %s",
                    entry.url,
                    entry.title,
                    date.astimezone(display_tz).isoformat(sep=" ", timespec="seconds"),
                )
                summary.outcomes.append(history.add_url(entry.url, entry.title, date))
                summary.outcomes.append(favicons.add_favicon(entry.url, date))
        finally:
            favicon_con.close()
    finally:
        history_con.close()
        if own_session:
            session.close()
    return summary


def main() -> int:
    level_name = os.environ.get(ENV_PREFIX + "LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(level_name)
    logging.basicConfig(
        level=level if isinstance(level, int) else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not isinstance(level, int):
        logger.error("Unknown log level %r", level_name)
        return 1
    try:
        config = GeneratorConfig.from_env()
        summary = generate(config)
    except (GeneratorError, csv.Error, sqlite3.Error, OSError, ValueError, ZoneInfoNotFoundError):
        logger.exception("History generation failed")
        return 1

    logger.info(
        "Wrote %d URLs to %s and %d new favicons (%d reused) to %s",
        summary.history_added,
        summary.paths.history,
        summary.favicons_added,
        summary.favicons_reused,
        summary.paths.favicons,
    )
    for outcome in summary.failures:
        logger.info("%s %s for %s: %s", outcome.stage, outcome.status, outcome.url, outcome.reason)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
