"""
Favicons side of the generator.

For every page URL the writer resolves one icon per origin: an icon already
stored for ``<origin>/favicon.ico`` is reused, otherwise the site's icons are
discovered, a PNG is picked, downloaded and stored as a favicon bitmap. Each
page URL then gets an ``icon_mapping`` row pointing at that icon.
"""

from __future__ import annotations

import datetime as dt
import logging
import os
import re
import sqlite3
import tempfile
import urllib.parse
from dataclasses import dataclass
from html.parser import HTMLParser
from typing import Iterable, List, Optional, Sequence, Tuple

import requests
from requests.exceptions import RequestException

from backend.history import SequenceAllocator, UrlOutcome, to_chrome_time

logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS AND HELPERS
# ============================================================================

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/121.0 Safari/537.36"
)
DEFAULT_TIMEOUT = 10.0

ICON_TYPE_FAVICON = 1
DEFAULT_ICON_SIZE = 16
PREFERRED_ICON_SIZES = (16, 32)

_LEADING_INT_RE = re.compile(r"\s*(\d+)")
_DEFAULT_PORTS = {"http": 80, "https": 443}


class FaviconDiscoveryError(Exception):
    pass


def url_host(url: str) -> str:
    """Return ``host[:port]`` of an absolute URL, dropping the scheme's default port."""
    p = urllib.parse.urlsplit(url)
    if not p.scheme or not p.hostname:
        raise ValueError(f"Not an absolute URL: {url!r}")
    host = p.hostname
    if ":" in host:
        host = f"[{host}]"
    if p.port and p.port != _DEFAULT_PORTS.get(p.scheme):
        host = f"{host}:{p.port}"
    return host


def url_origin(url: str) -> str:
    return f"{urllib.parse.urlsplit(url).scheme}://{url_host(url)}"


def favicon_index_url(url: str) -> str:
    return f"{url_origin(url)}/favicon.ico"


def parse_icon_size(sizes: str) -> Optional[int]:
    # "16x16 32x32" -> 16
    m = _LEADING_INT_RE.match(sizes or "")
    return int(m.group(1)) if m else None


def is_png_source(src: str) -> bool:
    return urllib.parse.urlsplit(src).path.lower().endswith(".png")


# ============================================================================
# DISCOVERY
# ============================================================================

@dataclass(frozen=True)
class IconCandidate:
    src: str
    sizes: str = ""
    type: str = ""
    rel: str = ""


@dataclass(frozen=True)
class SelectedIcon:
    src: str
    size: int


class IconLinkParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__()
        self.candidates: List[IconCandidate] = []
        self.base_href: Optional[str] = None
        self.manifest_hrefs: List[str] = []

    def handle_starttag(self, tag: str, attrs: List[Tuple[str, Optional[str]]]) -> None:
        tag = tag.lower()
        attrs_dict = {k.lower(): (v or "") for k, v in attrs}

        if tag == "base":
            href = attrs_dict.get("href", "").strip()
            if href and self.base_href is None:
                self.base_href = href
            return

        if tag != "link":
            return

        rel = attrs_dict.get("rel", "").strip()
        href = attrs_dict.get("href", "").strip()
        if not href or not rel:
            return

        rel_l = rel.lower()
        if rel_l == "manifest":
            self.manifest_hrefs.append(href)
            return
        if "icon" not in rel_l or href.lower().startswith("data:"):
            return

        self.candidates.append(
            IconCandidate(
                src=href,
                sizes=attrs_dict.get("sizes", "").strip(),
                type=attrs_dict.get("type", "").strip(),
                rel=rel,
            )
        )


def _get(session: requests.Session, url: str, timeout: float, accept: str, **kwargs) -> requests.Response:
    return session.get(
        url,
        headers={"User-Agent": DEFAULT_USER_AGENT, "Accept": accept},
        timeout=timeout,
        **kwargs,
    )


def _fetch_homepage(session: requests.Session, host: str, timeout: float) -> requests.Response:
    accept = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
    try:
        response = _get(session, f"https://{host}/", timeout, accept)
    except requests.ConnectionError:
        logger.debug("https://%s/ unreachable, retrying over http", host)
        response = _get(session, f"http://{host}/", timeout, accept)
    response.raise_for_status()
    return response


def _manifest_icons(session: requests.Session, manifest_url: str, timeout: float) -> List[IconCandidate]:
    try:
        response = _get(session, manifest_url, timeout, "application/manifest+json,application/json,*/*;q=0.5")
        response.raise_for_status()
        doc = response.json()
    except (RequestException, ValueError) as exc:
        logger.debug("Ignoring manifest %s: %s", manifest_url, exc)
        return []

    icons = doc.get("icons") if isinstance(doc, dict) else None
    if not isinstance(icons, list):
        return []

    final_url = response.url or manifest_url
    out: List[IconCandidate] = []
    for icon in icons:
        if not isinstance(icon, dict):
            continue
        src = (icon.get("src") or "").strip()
        if not src:
            continue
        out.append(
            IconCandidate(
                src=urllib.parse.urljoin(final_url, src),
                sizes=(icon.get("sizes") or "").strip(),
                type=(icon.get("type") or "").strip(),
                rel="manifest-icon",
            )
        )
    return out


def _dedupe(candidates: Iterable[IconCandidate]) -> List[IconCandidate]:
    seen = set()
    out: List[IconCandidate] = []
    for c in candidates:
        if c.src in seen:
            continue
        seen.add(c.src)
        out.append(c)
    return out


def discover_icons(
    host: str,
    session: Optional[requests.Session] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> List[IconCandidate]:
    """Return the icons a site advertises, in document order.

    ``<link rel="...icon...">`` tags come first, then icons listed in web app
    manifests. All sources are absolute URLs. A site that advertises nothing
    yields an empty list.
    """
    own_session = session is None
    session = session or requests.Session()
    try:
        try:
            response = _fetch_homepage(session, host, timeout)
        except RequestException as exc:
            raise FaviconDiscoveryError(f"Could not load homepage of '{host}': {exc}") from exc

        final_url = response.url or f"https://{host}/"
        content_type = (response.headers.get("Content-Type") or "").split(";", 1)[0].strip().lower()

        parser = IconLinkParser()
        if "html" in content_type or "xml" in content_type:
            parser.feed(response.text)
        base = urllib.parse.urljoin(final_url, parser.base_href) if parser.base_href else final_url

        candidates = [
            IconCandidate(urllib.parse.urljoin(base, c.src), c.sizes, c.type, c.rel)
            for c in parser.candidates
        ]
        for href in parser.manifest_hrefs:
            candidates.extend(_manifest_icons(session, urllib.parse.urljoin(base, href), timeout))
        return _dedupe(candidates)
    finally:
        if own_session:
            session.close()


def select_icon(candidates: Sequence[IconCandidate]) -> Optional[SelectedIcon]:
    """Pick the PNG icon to store.

    The last PNG seen wins, except that the scan stops at the first PNG that
    declares a 16 or 32 pixel size. PNGs without a usable ``sizes`` keep the
    size of the previous declaration, 16 by default.
    """
    src: Optional[str] = None
    size = DEFAULT_ICON_SIZE
    for icon in candidates:
        if not is_png_source(icon.src):
            continue
        src = icon.src
        declared = parse_icon_size(icon.sizes) if icon.sizes else None
        if declared is None:
            continue
        size = declared
        if size in PREFERRED_ICON_SIZES:
            break
    if src is None:
        return None
    return SelectedIcon(src=src, size=size)


def download_icon(
    src: str,
    session: Optional[requests.Session] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> bytes:
    """Stream an icon into its own temporary file and return its bytes."""
    own_session = session is None
    session = session or requests.Session()

    with tempfile.NamedTemporaryFile(prefix="favicon-", suffix=".png", delete=False) as tmp:
        tmp_path = tmp.name

    try:
        response = _get(session, src, timeout, "image/avif,image/webp,image/apng,image/*,*/*;q=0.8", stream=True)
        try:
            response.raise_for_status()
            with open(tmp_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=8192):
                    if chunk:
                        f.write(chunk)
        finally:
            response.close()

        with open(tmp_path, "rb") as f:
            return f.read()
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        if own_session:
            session.close()


# ============================================================================
# FAVICON WRITER
# ============================================================================

class FaviconWriter:
    def __init__(
        self,
        con: sqlite3.Connection,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.con = con
        self.session = session
        self.timeout = timeout
        self.allocator = SequenceAllocator(con, ("favicons", "favicon_bitmaps", "icon_mapping"))

    def find_icon_id(self, index_url: str) -> Optional[int]:
        row = self.con.execute("SELECT id FROM favicons WHERE url=? LIMIT 1", (index_url,)).fetchone()
        return int(row[0]) if row is not None else None

    def add_favicon(self, url: str, date: dt.datetime) -> UrlOutcome:
        try:
            index_url = favicon_index_url(url)
            icon_id = self.find_icon_id(index_url)
            selected: Optional[SelectedIcon] = None
            image_data: Optional[bytes] = None

            if icon_id is None:
                host = url_host(url)
                candidates = discover_icons(host, session=self.session, timeout=self.timeout)
                if not candidates:
                    logger.warning("No favicons exist for '%s'.", host)
                    return UrlOutcome(url, "favicon", "skipped", reason="no favicons")

                selected = select_icon(candidates)
                if selected is None:
                    logger.warning("No suitable favicon exists for '%s'.", host)
                    return UrlOutcome(url, "favicon", "skipped", reason="no suitable favicon")

                image_data = download_icon(selected.src, session=self.session, timeout=self.timeout)

            with self.allocator.transaction() as con:
                if selected is not None:
                    icon_id = self._insert_icon(con, index_url, selected, image_data, to_chrome_time(date))
                mapping_id = self.allocator.next_id("icon_mapping")
                con.execute(
                    "INSERT INTO icon_mapping(id,page_url,icon_id) VALUES(?,?,?)",
                    (mapping_id, url, icon_id),
                )
        except Exception as exc:
            logger.exception("Could not add favicon for %s", url)
            return UrlOutcome(url, "favicon", "failed", reason=str(exc))

        status = "added" if selected is not None else "reused"
        return UrlOutcome(url, "favicon", status, record_id=icon_id)

    def _insert_icon(
        self,
        con: sqlite3.Connection,
        index_url: str,
        selected: SelectedIcon,
        image_data: Optional[bytes],
        last_updated: int,
    ) -> int:
        icon_id = self.allocator.next_id("favicons")
        con.execute(
            "INSERT INTO favicons(id,url,icon_type) VALUES(?,?,?)",
            (icon_id, index_url, ICON_TYPE_FAVICON),
        )
        bitmap_id = self.allocator.next_id("favicon_bitmaps")
        con.execute(
            "INSERT INTO favicon_bitmaps(id,icon_id,last_updated,image_data,width,height) VALUES(?,?,?,?,?,?)",
            (bitmap_id, icon_id, last_updated, sqlite3.Binary(image_data or b""), selected.size, selected.size),
        )
        return icon_id
