"""
Import normalizer: JSON / CSV / HTML table / browser bookmark files.

Pipeline stages:
  1. Decode + dispatch by extension (content sniff when there is none)
  2. Format parser -> raw ImportRow list
  3. finalize_rows(): scheme fix-up, drop rows without an http(s) URL,
     merge duplicates by URL
  4. import_rows(): persist in chunks, creating missing categories/tags

Any parse failure aborts the whole file with ImportParseError; nothing is
written for a file that did not parse.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config.settings import (
    DEFAULT_CATEGORY_COLOR,
    DEFAULT_TAG_COLOR,
    IMPORT_CHUNK_SIZE,
    IMPORT_LOOKUP_BATCH,
)
from .crud import _next_pin_position
from .errors import ImportParseError
from .models import Category, Site, Tag
from .relation_maps import build_name_map
from .relations import RelationSync, chunked

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = ("json", "csv", "html", "htm")

# ==================================================
# PRICING
# ==================================================

PRICING_ALIASES = {
    "fully_free": ("fully_free", "fullyfree", "free", "besplatno"),
    "freemium": ("freemium",),
    "free_trial": ("free_trial", "freetrial", "trial"),
    "paid": ("paid", "nesto_se_placa", "nestoseplaca", "placeno", "premium"),
}
_PRICING_LOOKUP = {alias: value for value, aliases in PRICING_ALIASES.items() for alias in aliases}

# Checked in order; "free trial" must not fall through to fully_free
_PRICING_PATTERNS = (
    (re.compile(r"trial"), "free_trial"),
    (re.compile(r"freemium"), "freemium"),
    (re.compile(r"paid|premium|pla[cć]|money|cost"), "paid"),
    (re.compile(r"free|besplatn|gratis"), "fully_free"),
)


def normalize_pricing(raw) -> Optional[str]:
    """Map free-text pricing (English / Serbian) to the pricing enum, else None."""
    if raw is None:
        return None
    text = str(raw).strip().lower()
    if not text:
        return None
    for key in (re.sub(r"[\s\-]+", "_", text), re.sub(r"[^a-z0-9]", "", text)):
        if key in _PRICING_LOOKUP:
            return _PRICING_LOOKUP[key]
    for pattern, value in _PRICING_PATTERNS:
        if pattern.search(text):
            return value
    return None


# ==================================================
# ROW MODEL
# ==================================================


@dataclass
class ImportRow:
    name: str = ""
    url: str = ""
    description: Optional[str] = None
    pricing: Optional[str] = None
    use_case: Optional[str] = None
    is_favorite: bool = False
    is_pinned: bool = False
    categories: list = field(default_factory=list)  # [{"name": str, "color": str | None}]
    tags: list = field(default_factory=list)
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "url": self.url,
            "description": self.description,
            "pricing": self.pricing,
            "use_case": self.use_case,
            "is_favorite": self.is_favorite,
            "is_pinned": self.is_pinned,
            "categories": self.categories,
            "tags": self.tags,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class ParsedImport:
    format: str
    rows: list
    skipped: int = 0


_TRUTHY = {"true", "1", "yes", "y", "da", "⭐", "✓", "✔", "x"}

_DATE_FORMATS = (
    "%B %d, %Y %I:%M %p",  # Notion: January 5, 2024 3:12 PM
    "%B %d, %Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%d.%m.%Y",
    "%d/%m/%Y",
)


def _truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in _TRUTHY


def _parse_date(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is not None and parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def split_multi(value) -> list[str]:
    """
    Multi-value cell -> names. Lists pass through, strings split on ; or ,
    A double-quoted name keeps its separators ("Tools, misc"; "" is a quote).
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = []
        for v in value:
            if isinstance(v, dict):
                v = v.get("name")
            if v is not None and str(v).strip():
                items.append(str(v).strip())
        return items

    text = str(value)
    parts: list[str] = []
    buf: list[str] = []
    in_quotes = False
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == '"':
            if in_quotes and text[i + 1:i + 2] == '"':
                buf.append('"')
                i += 2
                continue
            in_quotes = not in_quotes
        elif ch in ";," and not in_quotes:
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
        i += 1
    parts.append("".join(buf))
    return [part.strip() for part in parts if part.strip()]


def _terms(value) -> list[dict]:
    """Category/tag cell -> [{name, color}], keeping colors carried by JSON objects."""
    out, seen = [], set()
    values = value if isinstance(value, (list, tuple)) else split_multi(value)
    for item in values:
        if isinstance(item, dict):
            name = str(item.get("name") or "").strip()
            color = item.get("color")
        else:
            name = str(item or "").strip()
            color = None
        if name and name not in seen:
            seen.add(name)
            out.append({"name": name, "color": color})
    return out


def looks_like_url(text: str) -> bool:
    return bool(re.match(r"^(https?://|www\.)\S+$", (text or "").strip(), re.IGNORECASE))


def name_from_url(url: str) -> str:
    host = urlparse(url if "://" in url else f"https://{url}").hostname or ""
    return re.sub(r"^www\.", "", host) or url


# ==================================================
# HEADER SYNONYMS
# ==================================================

HEADER_SYNONYMS = {
    "name": ("name", "title", "resource", "naziv", "ime"),
    "url": ("url", "link", "website", "href", "sajt", "adresa"),
    "categories": ("category", "categories", "kategorija", "kategorije"),
    "tags": ("tags", "tag", "oznake", "oznaka"),
    "description": ("description", "desc", "opis"),
    "pricing": ("pricing", "price", "select", "cena", "cijena"),
    "is_favorite": ("favorite", "isfavorite", "isfavorited", "favourite", "omiljeno"),
    "is_pinned": ("pinned", "ispinned"),
    "use_case": ("usecase",),
    "created_at": ("createdtime", "createdat", "created"),
}
_EXACT_HEADERS = {syn: canon for canon, syns in HEADER_SYNONYMS.items() for syn in syns}

# Substring rules for HTML headers, first match wins
_HEADER_FRAGMENTS = (
    ("name", ("name", "title", "naziv")),
    ("url", ("url", "link", "adres", "website", "sajt", "href")),
    ("categories", ("categor", "kategorij")),
    ("tags", ("tag", "oznak")),
    ("pricing", ("pricing", "price", "cena", "cijena")),
    ("is_favorite", ("favorite", "favourite", "omilj")),
    ("is_pinned", ("pinned",)),
    ("description", ("desc", "opis")),
    ("created_at", ("created",)),
)


def normalize_header(header: str) -> str:
    return re.sub(r"[^a-z0-9]", "", (header or "").lower())


def map_header(header: str, fuzzy: bool = False) -> Optional[str]:
    key = normalize_header(header)
    if key in _EXACT_HEADERS:
        return _EXACT_HEADERS[key]
    if fuzzy:
        for canon, fragments in _HEADER_FRAGMENTS:
            if any(f in key for f in fragments):
                return canon
    return None


def row_from_fields(fields: dict) -> ImportRow:
    """Canonical field dict -> ImportRow (shared by every format)."""
    name = str(fields.get("name") or "").strip()
    url = str(fields.get("url") or "").strip()
    if not url and looks_like_url(name):
        name, url = "", name
    if url and not name:
        name = name_from_url(url)
    description = fields.get("description")
    use_case = fields.get("use_case")
    return ImportRow(
        name=name,
        url=url,
        description=str(description).strip() or None if description is not None else None,
        pricing=normalize_pricing(fields.get("pricing")),
        use_case=str(use_case).strip() or None if use_case is not None else None,
        is_favorite=_truthy(fields.get("is_favorite")),
        is_pinned=_truthy(fields.get("is_pinned")),
        categories=_terms(fields.get("categories")),
        tags=_terms(fields.get("tags")),
        created_at=_parse_date(fields.get("created_at")),
    )


# ==================================================
# JSON
# ==================================================


def parse_json(text: str) -> list[ImportRow]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ImportParseError(f"Invalid JSON: {e}")

    if isinstance(data, dict):
        items = data.get("sites")
        if items is None:
            items = data.get("data")
    else:
        items = data
    if not isinstance(items, list):
        raise ImportParseError("JSON must be an array of sites or an object with a 'sites' or 'data' array")

    rows = []
    for item in items:
        if not isinstance(item, dict):
            continue
        rows.append(row_from_fields({
            "name": item.get("name") or item.get("title"),
            "url": item.get("url") or item.get("link") or item.get("website"),
            "description": item.get("description"),
            "pricing": item.get("pricing"),
            "use_case": item.get("use_case"),
            "is_favorite": item.get("is_favorite", item.get("favorite")),
            "is_pinned": item.get("is_pinned", item.get("pinned")),
            "categories": item.get("categories_array") or item.get("categories") or [],
            "tags": item.get("tags_array") or item.get("tags") or [],
            "created_at": item.get("created_at"),
        }))
    return rows


# ==================================================
# CSV
# ==================================================


def tokenize_csv(text: str) -> list[list[str]]:
    """
    Quote-aware CSV tokenizer.

    Handles commas and newlines inside quotes, doubled quotes ("") inside a
    quoted field and CRLF line endings. Cells are trimmed and blank lines
    dropped.
    """
    rows: list[list[str]] = []
    row: list[str] = []
    cell: list[str] = []
    in_quotes = False
    i, n = 0, len(text)

    def end_cell():
        row.append("".join(cell).strip())
        cell.clear()

    def end_row():
        end_cell()
        if any(c for c in row):
            rows.append(list(row))
        row.clear()

    while i < n:
        ch = text[i]
        if in_quotes:
            if ch == '"':
                if i + 1 < n and text[i + 1] == '"':
                    cell.append('"')
                    i += 2
                    continue
                in_quotes = False
            else:
                cell.append(ch)
        elif ch == '"':
            in_quotes = True
        elif ch == ",":
            end_cell()
        elif ch == "\r":
            if i + 1 < n and text[i + 1] == "\n":
                i += 1
            end_row()
        elif ch == "\n":
            end_row()
        else:
            cell.append(ch)
        i += 1

    if in_quotes:
        raise ImportParseError("CSV has an unterminated quoted field")
    if cell or row:
        end_row()
    return rows


def parse_csv(text: str) -> list[ImportRow]:
    table = tokenize_csv(text)
    if len(table) < 2:
        raise ImportParseError("CSV must have a header row and at least one data row")

    columns = [map_header(h) for h in table[0]]
    if "url" not in columns and "name" not in columns:
        raise ImportParseError("CSV needs a name or url column")

    rows = []
    for cells in table[1:]:
        fields: dict = {}
        for canon, value in zip(columns, cells):
            if canon and canon not in fields:
                fields[canon] = value
        rows.append(row_from_fields(fields))
    return rows


# ==================================================
# HTML TABLE (generic + Notion export)
# ==================================================


def _cell_values(cell) -> tuple[str, str, list[str], str]:
    """(text, first anchor href, .selected-value texts, anchor text)"""
    text = cell.get_text(" ", strip=True)
    link = cell.find("a", href=True)
    href = link["href"].strip() if link else ""
    link_text = link.get_text(" ", strip=True) if link else ""
    selected = [s.get_text(strip=True) for s in cell.select(".selected-value") if s.get_text(strip=True)]
    return text, href, selected, link_text


def _table_headers(table) -> list[str]:
    thead = table.find("thead")
    if thead:
        cells = thead.find_all(["th", "td"])
        if cells:
            return [c.get_text(" ", strip=True) for c in cells]
    first = table.find("tr")
    if first:
        ths = first.find_all("th")
        if ths:
            return [c.get_text(" ", strip=True) for c in ths]
    return []


def _fields_from_cells(cells, headers: list[str]) -> dict:
    fields: dict = {}
    for idx, cell in enumerate(cells):
        text, href, selected, link_text = _cell_values(cell)
        if headers:
            canon = map_header(headers[idx], fuzzy=True) if idx < len(headers) else None
            if canon == "name":
                fields["name"] = text or link_text
                if href and not fields.get("url"):
                    fields["url"] = href
            elif canon == "url":
                fields["url"] = href or text
            elif canon in ("categories", "tags"):
                fields[canon] = selected or split_multi(text)
            elif canon is not None:
                fields[canon] = text
            elif looks_like_url(text) and not _has_url(fields):
                fields["url"] = text
            elif href and not _has_url(fields):
                fields["url"] = href
        else:
            # Positional: first cell is the name, the first URL-looking text
            # or anchor after it is the url. Plain text never becomes a url.
            if idx == 0:
                fields["name"] = text or link_text
            elif looks_like_url(text) and not _has_url(fields):
                fields["url"] = text
                continue
            if href and not _has_url(fields):
                fields["url"] = href
                if not fields.get("name") and link_text:
                    fields["name"] = link_text
    return fields


def _has_url(fields: dict) -> bool:
    return looks_like_url(fields.get("url") or "")


def parse_html_table(text: str) -> list[ImportRow]:
    soup = BeautifulSoup(text, "html.parser")
    rows: list[ImportRow] = []

    for table in soup.find_all("table"):
        headers = _table_headers(table)
        for tr in table.find_all("tr"):
            if headers and tr.find("th"):
                continue
            cells = tr.find_all("td")
            if not cells:
                continue
            row = row_from_fields(_fields_from_cells(cells, headers))
            if row.url:
                rows.append(row)
        if rows:
            return rows

    # Notion page export: links to sub-pages
    for link in soup.select(".link-to-page a, a.link-to-page"):
        name = link.get_text(" ", strip=True)
        href = (link.get("href") or "").strip()
        if name and href:
            rows.append(row_from_fields({"name": name, "url": href}))
    if rows:
        return rows

    # Notion bookmark blocks
    for block in soup.select(".bookmark"):
        title = block.select_one(".bookmark-title")
        desc = block.select_one(".bookmark-description")
        href = block.get("href") or (block.find("a", href=True) or {}).get("href")
        if title or href:
            rows.append(row_from_fields({
                "name": title.get_text(strip=True) if title else href,
                "url": href or "",
                "description": desc.get_text(strip=True) if desc else None,
            }))
    if rows:
        return rows

    seen = set()
    for link in soup.find_all("a", href=True):
        href = link["href"].strip()
        if href.startswith("http") and "notion.so" not in href and href not in seen:
            seen.add(href)
            rows.append(row_from_fields({"name": link.get_text(" ", strip=True) or href, "url": href}))
    return rows


# ==================================================
# BROWSER BOOKMARKS (Netscape format)
# ==================================================

SKIP_FOLDERS = {
    "bookmarks bar",
    "bookmarks toolbar",
    "other bookmarks",
    "mobile bookmarks",
    "bookmarks menu",
    "toolbar",
    "menu",
    "unfiled bookmarks",
}


_BOOKMARK_ENTRY = re.compile(r"<dt[^>]*>\s*<(h3|a)[\s>]", re.IGNORECASE)


def is_bookmark_file(text: str) -> bool:
    """Netscape marker, or a <dl> whose entries are <dt><h3> folders or <dt><a> links."""
    if "NETSCAPE-Bookmark-file" in text:
        return True
    return re.search(r"<dl[\s>]", text, re.IGNORECASE) is not None and _BOOKMARK_ENTRY.search(text) is not None


def parse_bookmarks(text: str) -> list[ImportRow]:
    """
    Walk the DL/DT tree iteratively. An <h3> names the folder whose <dl>
    follows it; every <a> below gets the full folder path as categories.

    html.parser leaves <dt>/<p> unclosed, so folders and links end up nested
    deeper than the markup suggests. The walk only tracks h3 -> dl pairs,
    which holds for both shapes.
    """
    soup = BeautifulSoup(text, "html.parser")
    rows: list[ImportRow] = []

    # frame: [children iterator, folder path, pending folder name]
    stack = [[iter(soup.children), (), None]]
    while stack:
        frame = stack[-1]
        node = next(frame[0], None)
        if node is None:
            stack.pop()
            if stack and frame[2] is not None and stack[-1][2] is None:
                # <h3> closed inside its <dt>, the <dl> is a sibling of the <dt>
                stack[-1][2] = frame[2]
            continue
        tag = getattr(node, "name", None)
        if tag is None:
            continue
        if tag == "h3":
            frame[2] = node.get_text(" ", strip=True)
            continue
        if tag == "a":
            href = (node.get("href") or "").strip()
            if not href.lower().startswith(("http://", "https://")):
                continue
            add_date = node.get("add_date")
            created = None
            if add_date and add_date.isdigit():
                created = datetime.fromtimestamp(int(add_date), tz=timezone.utc).replace(tzinfo=None)
            rows.append(ImportRow(
                name=node.get_text(" ", strip=True) or name_from_url(href),
                url=href,
                categories=[{"name": f, "color": None} for f in frame[1]],
                created_at=created,
            ))
            continue
        if tag == "dl":
            folders = frame[1]
            pending = frame[2]
            frame[2] = None
            if pending and pending.strip().lower() not in SKIP_FOLDERS:
                folders = folders + (pending,)
            stack.append([iter(node.children), folders, None])
            continue
        stack.append([iter(node.children), frame[1], None])
    return rows


# ==================================================
# FINALIZE + DEDUPE
# ==================================================


def dedupe_key(url: str) -> str:
    return (url or "").strip().lower().rstrip("/")


def dedupe(rows: list[ImportRow]) -> list[ImportRow]:
    """
    Merge rows sharing a URL: categories/tags unioned, favorite/pinned OR-ed,
    first non-empty name and description win.
    """
    merged: dict[str, ImportRow] = {}
    for row in rows:
        key = dedupe_key(row.url)
        current = merged.get(key)
        if current is None:
            merged[key] = ImportRow(**{**row.__dict__, "categories": list(row.categories), "tags": list(row.tags)})
            continue
        if not current.name and row.name:
            current.name = row.name
        if not current.description and row.description:
            current.description = row.description
        if not current.pricing and row.pricing:
            current.pricing = row.pricing
        current.is_favorite = current.is_favorite or row.is_favorite
        current.is_pinned = current.is_pinned or row.is_pinned
        for attr in ("categories", "tags"):
            names = {t["name"] for t in getattr(current, attr)}
            for term in getattr(row, attr):
                if term["name"] not in names:
                    names.add(term["name"])
                    getattr(current, attr).append(term)
        if current.created_at is None:
            current.created_at = row.created_at
    return list(merged.values())


def finalize_rows(rows: list[ImportRow]) -> tuple[list[ImportRow], int]:
    """Return (deduplicated rows with an http(s) URL, number of rows dropped)."""
    kept = []
    for row in rows:
        url = (row.url or "").strip()
        if url.lower().startswith("www."):
            url = "https://" + url
        if not re.match(r"^https?://", url, re.IGNORECASE):
            continue
        row.url = url
        if not row.name:
            row.name = name_from_url(url)
        kept.append(row)
    merged = dedupe(kept)
    return merged, len(rows) - len(merged)


# ==================================================
# DISPATCH
# ==================================================


def _decode(content) -> str:
    if isinstance(content, str):
        return content.lstrip("\ufeff")
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise ImportParseError("File must be UTF-8 encoded")


def _extension(filename: str) -> str:
    name = (filename or "").strip().lower()
    return name.rsplit(".", 1)[-1] if "." in name else ""


def parse(filename: str, content, source: str = "auto") -> ParsedImport:
    text = _decode(content)
    if not text.strip():
        raise ImportParseError("File is empty")

    ext = _extension(filename)
    if not ext:
        stripped = text.lstrip()
        ext = "json" if stripped[:1] in ("[", "{") else "html" if stripped[:1] == "<" else "csv"
    if ext not in SUPPORTED_EXTENSIONS:
        raise ImportParseError(f"Unsupported file type '.{ext}' (expected .json, .csv, .html or .htm)")

    if ext == "json":
        fmt, raw = "json", parse_json(text)
    elif ext == "csv":
        fmt, raw = "csv", parse_csv(text)
    else:
        fmt, raw = "html", []
        if source == "bookmarks" or is_bookmark_file(text):
            fmt, raw = "bookmarks", parse_bookmarks(text)
        if not raw:
            fmt, raw = "html", parse_html_table(text)

    rows, skipped = finalize_rows(raw)
    if not rows:
        raise ImportParseError(f"No importable sites found in {fmt} file")
    logger.info(f"Parsed {filename}: {len(rows)} rows ({fmt}, {skipped} dropped or merged)")
    return ParsedImport(format=fmt, rows=rows, skipped=skipped)


# ==================================================
# PERSISTENCE
# ==================================================


@dataclass
class ImportReport:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list = field(default_factory=list)
    categories_created: int = 0
    tags_created: int = 0
    warnings: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "categoriesCreated": self.categories_created,
            "tagsCreated": self.tags_created,
        }


class ImportWriter:
    """Persist finalized rows for one user through the regular relation path."""

    def __init__(
        self,
        db: Session,
        user_id: str,
        import_source: Optional[str] = None,
        chunk_size: int = IMPORT_CHUNK_SIZE,
        lookup_batch: int = IMPORT_LOOKUP_BATCH,
    ):
        self.db = db
        self.user_id = user_id
        self.import_source = import_source
        self.chunk_size = chunk_size
        self.lookup_batch = lookup_batch
        self.sync = RelationSync(db)
        self.report = ImportReport()
        self._pin_cursor: Optional[int] = None
        self.categories = self._load_terms(Category)
        self.tags = self._load_terms(Tag)

    def _load_terms(self, model) -> dict[str, dict]:
        records = [t.to_dict() for t in self.db.query(model).filter(model.user_id == self.user_id).all()]
        return build_name_map(records, fold_case=True)

    def run(self, rows: list[ImportRow]) -> ImportReport:
        for chunk in chunked(rows, self.chunk_size):
            self._ensure_terms(Category, chunk, "categories", self.categories, DEFAULT_CATEGORY_COLOR)
            self._ensure_terms(Tag, chunk, "tags", self.tags, DEFAULT_TAG_COLOR)
            existing = self._existing_sites(chunk)
            fresh = []
            for row in chunk:
                site = existing.get(dedupe_key(row.url))
                if site is None:
                    fresh.append(row)
                else:
                    self._update(site, row)
            self._insert(fresh)
        logger.info(f"Import for {self.user_id} finished: {self.report.to_dict()}")
        return self.report

    def _ensure_terms(self, model, chunk, attr: str, name_map: dict, default_color: str):
        missing: dict[str, dict] = {}
        for row in chunk:
            for term in getattr(row, attr):
                key = term["name"].strip().lower()
                if key and key not in name_map and key not in missing:
                    missing[key] = term
        if not missing:
            return
        created = [
            model(user_id=self.user_id, name=term["name"].strip(), color=term.get("color") or default_color)
            for term in missing.values()
        ]
        try:
            self.db.add_all(created)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to create {attr} during import: {e}")
            self.report.errors.append({"stage": f"create_{attr}", "error": str(e)})
            return
        for obj in created:
            name_map[obj.name.strip().lower()] = obj.to_dict()
        if attr == "categories":
            self.report.categories_created += len(created)
        else:
            self.report.tags_created += len(created)

    def _existing_sites(self, chunk) -> dict[str, Site]:
        keys = list(dict.fromkeys(dedupe_key(r.url) for r in chunk))
        found: dict[str, Site] = {}
        for batch in chunked(keys, self.lookup_batch):
            variants = batch + [k + "/" for k in batch]
            sites = (
                self.db.query(Site)
                .filter(Site.user_id == self.user_id, func.lower(Site.url).in_(variants))
                .all()
            )
            for site in sites:
                found.setdefault(dedupe_key(site.url), site)
        return found

    def _ids(self, row: ImportRow, attr: str, name_map: dict) -> list[str]:
        ids = []
        for term in getattr(row, attr):
            record = name_map.get(term["name"].strip().lower())
            if record is not None:
                ids.append(record["id"])
        return ids

    def _update(self, site: Site, row: ImportRow):
        if row.name:
            site.name = row.name
        if row.pricing:
            site.pricing = row.pricing
        if row.description:
            site.description = row.description
        site.is_favorite = row.is_favorite
        if row.is_pinned and not site.is_pinned:
            site.pin_position = self._next_pin()
        elif not row.is_pinned:
            site.pin_position = None
        site.is_pinned = row.is_pinned
        if self.import_source:
            site.import_source = self.import_source
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            self.report.errors.append({"url": row.url, "error": str(e)})
            return
        self.report.updated += 1
        cat_ids = self._ids(row, "categories", self.categories) if row.categories else None
        tag_ids = self._ids(row, "tags", self.tags) if row.tags else None
        result = self.sync.reconcile_membership(site.id, cat_ids, tag_ids, user_id=self.user_id)
        self.report.warnings.extend(result.warning_dicts())

    def _new_site(self, row: ImportRow) -> Site:
        site = Site(
            user_id=self.user_id,
            name=row.name,
            url=row.url,
            pricing=row.pricing,
            description=row.description,
            use_case=row.use_case,
            is_favorite=row.is_favorite,
            is_pinned=row.is_pinned,
            import_source=self.import_source,
        )
        if row.created_at is not None:
            site.created_at = row.created_at
        if row.is_pinned:
            site.pin_position = self._next_pin()
        return site

    def _next_pin(self) -> int:
        """Next pin slot for this user; rows pinned within one import get consecutive slots."""
        if self._pin_cursor is None:
            self._pin_cursor = _next_pin_position(self.db, self.user_id) - 1
        self._pin_cursor += 1
        return self._pin_cursor

    def _insert(self, rows: list[ImportRow]):
        if not rows:
            return
        pairs = [(row, self._new_site(row)) for row in rows]
        try:
            self.db.add_all([site for _, site in pairs])
            self.db.commit()
            inserted = pairs
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Batch insert of {len(pairs)} sites failed, retrying per row: {e}")
            inserted = []
            for row, _ in pairs:
                site = self._new_site(row)
                try:
                    self.db.add(site)
                    self.db.commit()
                    inserted.append((row, site))
                except SQLAlchemyError as row_error:
                    self.db.rollback()
                    self.report.errors.append({"url": row.url, "error": str(row_error)})
        self.report.created += len(inserted)

        for row, site in inserted:
            for attr, name_map, attach in (
                ("categories", self.categories, self.sync.attach_categories),
                ("tags", self.tags, self.sync.attach_tags),
            ):
                ids = self._ids(row, attr, name_map)
                if ids:
                    result = attach(site.id, ids, user_id=self.user_id)
                    self.report.warnings.extend(result.warning_dicts())


def import_rows(
    db: Session,
    rows: list[ImportRow],
    user_id: str,
    import_source: Optional[str] = None,
    skipped: int = 0,
) -> ImportReport:
    writer = ImportWriter(db, user_id, import_source=import_source)
    report = writer.run(rows)
    report.skipped += skipped
    return report
