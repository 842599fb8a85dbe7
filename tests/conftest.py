from __future__ import annotations

import csv
import sqlite3
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import pytest
import requests

from backend.history import OutputPaths, open_database, prepare_databases
from backend.schema import build_templates


class FakeResponse:
    def __init__(
        self,
        url: str,
        *,
        status_code: int = 200,
        text: str = "",
        content: bytes = b"",
        json_data: Any = None,
        content_type: str = "text/html; charset=utf-8",
    ) -> None:
        self.url = url
        self.status_code = status_code
        self.text = text
        self.content = content or text.encode("utf-8")
        self.headers = {"Content-Type": content_type}
        self._json = json_data
        self.closed = False

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error for url: {self.url}", response=self)

    def json(self) -> Any:
        if self._json is None:
            raise ValueError("response body is not JSON")
        return self._json

    def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i : i + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, routes: Dict[str, Any]) -> None:
        self.routes = routes
        self.calls: List[str] = []

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            raise requests.ConnectionError(f"no route to {url}")
        if isinstance(route, Exception):
            raise route
        return route

    def close(self) -> None:
        pass


@pytest.fixture(autouse=True)
def _no_network(monkeypatch: pytest.MonkeyPatch) -> None:
    def blocked(self: requests.Session, method: str, url: str, *args: Any, **kwargs: Any) -> None:
        raise AssertionError(f"unexpected network call: {method} {url}")

    monkeypatch.setattr(requests.Session, "request", blocked)


@pytest.fixture
def fake_response() -> Callable[..., FakeResponse]:
    return FakeResponse


@pytest.fixture
def fake_session() -> Callable[[Dict[str, Any]], FakeSession]:
    return FakeSession


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    root = tmp_path / "data"
    build_templates(root / "templates")
    (root / "urls").mkdir(parents=True)
    return root


@pytest.fixture
def write_url_csv(data_dir: Path) -> Callable[[str, Sequence[Tuple[str, str]]], Path]:
    def write(name: str, rows: Sequence[Tuple[str, str]], header: Optional[Sequence[str]] = None) -> Path:
        path = data_dir / "urls" / f"{name}.csv"
        with open(path, "w", encoding="utf-8", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(header or ("url", "title"))
            writer.writerows(rows)
        return path

    return write


@pytest.fixture
def output_paths(data_dir: Path, tmp_path: Path) -> OutputPaths:
    return prepare_databases(data_dir / "templates", tmp_path / "output")


@pytest.fixture
def history_con(output_paths: OutputPaths) -> Iterator[sqlite3.Connection]:
    con = open_database(output_paths.history)
    yield con
    con.close()


@pytest.fixture
def favicon_con(output_paths: OutputPaths) -> Iterator[sqlite3.Connection]:
    con = open_database(output_paths.favicons)
    yield con
    con.close()


def count_rows(con: sqlite3.Connection, table: str) -> int:
    return int(con.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])


@pytest.fixture
def rows() -> Callable[[sqlite3.Connection, str], int]:
    return count_rows
