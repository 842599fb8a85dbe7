"""
Template schemas for the Chrome History and Favicons databases.

The generator never creates tables at run time: it copies pre-built template
files from ``data/templates``. This module holds the SQL those templates are
built from, so they can be regenerated with ``python -m backend.schema``.
"""

from __future__ import annotations

import os
import sqlite3
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

HISTORY_DB_NAME = "History"
FAVICONS_DB_NAME = "Favicons"


# ============================================================================
# HISTORY SCHEMA
# ============================================================================

HISTORY_SCHEMA_SQL = """
PRAGMA journal_mode=DELETE;
PRAGMA synchronous=FULL;

CREATE TABLE IF NOT EXISTS meta(
  key LONGVARCHAR NOT NULL UNIQUE PRIMARY KEY,
  value LONGVARCHAR
);

CREATE TABLE IF NOT EXISTS urls(
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  url LONGVARCHAR,
  title LONGVARCHAR,
  visit_count INTEGER DEFAULT 0 NOT NULL,
  typed_count INTEGER DEFAULT 0 NOT NULL,
  last_visit_time INTEGER NOT NULL,
  hidden INTEGER DEFAULT 0 NOT NULL
);

CREATE TABLE IF NOT EXISTS visits(
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  url INTEGER NOT NULL,
  visit_time INTEGER NOT NULL,
  from_visit INTEGER,
  external_referrer_url TEXT,
  transition INTEGER DEFAULT 0 NOT NULL,
  segment_id INTEGER,
  visit_duration INTEGER DEFAULT 0 NOT NULL,
  incremented_omnibox_typed_score BOOLEAN DEFAULT FALSE NOT NULL,
  opener_visit INTEGER,
  originator_cache_guid TEXT,
  originator_visit_id INTEGER,
  originator_from_visit INTEGER,
  originator_opener_visit INTEGER,
  is_known_to_sync BOOLEAN DEFAULT FALSE NOT NULL,
  consider_for_ntp_most_visited BOOLEAN DEFAULT FALSE NOT NULL,
  visited_link_id INTEGER DEFAULT 0 NOT NULL,
  app_id TEXT
);

CREATE TABLE IF NOT EXISTS visit_source(
  id INTEGER PRIMARY KEY,
  source INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS keyword_search_terms(
  keyword_id INTEGER NOT NULL,
  url_id INTEGER NOT NULL,
  term LONGVARCHAR NOT NULL,
  normalized_term LONGVARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS segments(
  id INTEGER PRIMARY KEY,
  name VARCHAR,
  url_id INTEGER NON NULL
);

CREATE TABLE IF NOT EXISTS segment_usage(
  id INTEGER PRIMARY KEY,
  segment_id INTEGER NOT NULL,
  time_slot INTEGER NOT NULL,
  visit_count INTEGER DEFAULT 0 NOT NULL
);

CREATE INDEX IF NOT EXISTS visits_url_index ON visits(url);
CREATE INDEX IF NOT EXISTS visits_from_index ON visits(from_visit);
CREATE INDEX IF NOT EXISTS visits_time_index ON visits(visit_time);
CREATE INDEX IF NOT EXISTS urls_url_index ON urls(url);
CREATE INDEX IF NOT EXISTS keyword_search_terms_index1 ON keyword_search_terms(keyword_id, normalized_term);
CREATE INDEX IF NOT EXISTS keyword_search_terms_index2 ON keyword_search_terms(url_id);
CREATE INDEX IF NOT EXISTS segments_name ON segments(name);
CREATE INDEX IF NOT EXISTS segments_url_id ON segments(url_id);
CREATE INDEX IF NOT EXISTS segment_usage_time_slot_segment_id ON segment_usage(time_slot, segment_id);
"""

HISTORY_META: List[Tuple[str, str]] = [
    ("version", "70"),
    ("last_compatible_version", "16"),
    ("mmap_status", "-1"),
]


# ============================================================================
# FAVICONS SCHEMA
# ============================================================================

FAVICONS_SCHEMA_SQL = """
PRAGMA journal_mode=DELETE;
PRAGMA synchronous=FULL;

CREATE TABLE IF NOT EXISTS meta(
  key LONGVARCHAR NOT NULL UNIQUE PRIMARY KEY,
  value LONGVARCHAR
);

CREATE TABLE IF NOT EXISTS favicons(
  id INTEGER PRIMARY KEY,
  url LONGVARCHAR NOT NULL,
  icon_type INTEGER DEFAULT 1
);

CREATE TABLE IF NOT EXISTS favicon_bitmaps(
  id INTEGER PRIMARY KEY,
  icon_id INTEGER NOT NULL,
  last_updated INTEGER DEFAULT 0,
  image_data BLOB,
  width INTEGER DEFAULT 0,
  height INTEGER DEFAULT 0,
  last_requested INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS icon_mapping(
  id INTEGER PRIMARY KEY,
  page_url LONGVARCHAR NOT NULL,
  icon_id INTEGER
);

CREATE INDEX IF NOT EXISTS favicons_url ON favicons(url);
CREATE INDEX IF NOT EXISTS favicon_bitmaps_icon_id ON favicon_bitmaps(icon_id);
CREATE INDEX IF NOT EXISTS icon_mapping_page_url_idx ON icon_mapping(page_url);
CREATE INDEX IF NOT EXISTS icon_mapping_icon_id_idx ON icon_mapping(icon_id);
"""

FAVICONS_META: List[Tuple[str, str]] = [
    ("version", "8"),
    ("last_compatible_version", "8"),
]

TEMPLATES: Dict[str, Tuple[str, List[Tuple[str, str]]]] = {
    HISTORY_DB_NAME: (HISTORY_SCHEMA_SQL, HISTORY_META),
    FAVICONS_DB_NAME: (FAVICONS_SCHEMA_SQL, FAVICONS_META),
}


def init_db(path: str, schema_sql: str, meta: List[Tuple[str, str]]) -> None:
    con = sqlite3.connect(path)
    try:
        con.executescript(schema_sql)
        con.executemany("INSERT OR IGNORE INTO meta(key,value) VALUES(?,?)", meta)
        con.commit()
    finally:
        con.close()


def build_templates(templates_dir: str | os.PathLike) -> Dict[str, Path]:
    """Write empty History and Favicons databases into ``templates_dir``.

    Existing template files are replaced.
    """
    out_dir = Path(templates_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    built: Dict[str, Path] = {}
    for name, (schema_sql, meta) in TEMPLATES.items():
        path = out_dir / name
        if path.exists():
            path.unlink()
        init_db(str(path), schema_sql, meta)
        built[name] = path
    return built


def main(argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    target = args[0] if args else os.path.join("data", "templates")
    for name, path in build_templates(target).items():
        print(f"[template] {name} -> {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
