"""
Export a user's sites as json / csv / html.

All three shapes read back through site_organizer.importer, so an export is
also a backup: categories/tags keep their colors in json, html cells use the
`.selected-value` spans the HTML table parser reads as multi-values.
"""
import csv
import io
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session

from .errors import ValidationError
from .queries import FieldsMode, ListQueryBuilder, SiteFilters

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

EXPORT_FORMATS = {
    "json": "application/json",
    "csv": "text/csv",
    "html": "text/html",
}
CSV_HEADERS = ["Name", "URL", "Categories", "Tags", "Description", "Pricing", "Favorite", "Pinned"]


def load_export_rows(db: Session, user_id: str = None) -> list[dict]:
    builder = ListQueryBuilder(db)
    filters = SiteFilters(user_id=user_id, sort_by="name", sort_order="asc")
    sites = builder.build_query(filters).all()
    rows, diagnostics = builder.shape(sites, FieldsMode.FULL)
    if diagnostics:
        logger.warning(f"Export for {user_id} has incomplete relations: {diagnostics}")
    return rows


def _json_site(site: dict) -> dict:
    return {
        "name": site["name"],
        "url": site["url"],
        "description": site["description"],
        "pricing": site["pricing"],
        "use_case": site["use_case"],
        "is_favorite": site["is_favorite"],
        "is_pinned": site["is_pinned"],
        "created_at": site["created_at"],
        "categories_array": [{"name": c["name"], "color": c.get("color")} for c in site["categories"]],
        "tags_array": [{"name": t["name"], "color": t.get("color")} for t in site["tags"]],
    }


def to_json(rows: list[dict], exported_at: str) -> str:
    body = {"exported_at": exported_at, "count": len(rows), "sites": [_json_site(r) for r in rows]}
    return json.dumps(body, ensure_ascii=False, indent=2)


def _join_terms(names) -> str:
    """Names joined with "; ", quoting any that carry a separator or quote."""
    parts = []
    for name in names:
        if any(ch in name for ch in ",;\""):
            name = '"' + name.replace('"', '""') + '"'
        parts.append(name)
    return "; ".join(parts)


def to_csv(rows: list[dict]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for site in rows:
        writer.writerow([
            site["name"],
            site["url"],
            _join_terms(c["name"] for c in site["categories"]),
            _join_terms(t["name"] for t in site["tags"]),
            site["description"] or "",
            site["pricing"] or "",
            "true" if site["is_favorite"] else "false",
            "true" if site["is_pinned"] else "false",
        ])
    return buf.getvalue()


def to_html(rows: list[dict], exported_at: str) -> str:
    return templates.get_template("export.html").render(sites=rows, exported_at=exported_at)


def export_sites(db: Session, user_id: str = None, fmt: str = "json") -> tuple[str, str, str]:
    """Return (content, media_type, filename)."""
    fmt = (fmt or "json").strip().lower()
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(f"Unknown export format '{fmt}' (expected json, csv or html)")

    rows = load_export_rows(db, user_id)
    exported_at = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    if fmt == "json":
        content = to_json(rows, exported_at)
    elif fmt == "csv":
        content = to_csv(rows)
    else:
        content = to_html(rows, exported_at)

    filename = f"sites-{exported_at[:10]}.{fmt}"
    logger.info(f"Exported {len(rows)} sites for {user_id} as {fmt}")
    return content, EXPORT_FORMATS[fmt], filename
