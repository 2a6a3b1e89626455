"""
Filtered, sorted, paginated site reads.

A list request runs in three steps:
  1. build_query(): filters + ordering over sites (no limit/offset)
  2. fetch_relations_batched(): join rows and category/tag records for the
     page, fetched in fixed-size IN (...) batches one after another. A failed
     batch is logged into `diagnostics` and the page is still returned.
  3. A shaper (minimal / ids / full) turns rows into response dicts.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from sqlalchemy import case, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from .config.settings import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT, RELATION_BATCH_SIZE
from .errors import ValidationError
from .models import Category, Site, SiteCategory, SiteTag, Tag
from .relation_maps import (
    build_id_map,
    build_link_id_map,
    build_name_map,
    build_site_categories_map,
    build_site_tags_map,
    resolve_names,
)
from .relations import chunked

logger = logging.getLogger(__name__)

UNCATEGORIZED = "uncategorized"
UNTAGGED = "untagged"

SORT_COLUMNS = {
    "created_at": Site.created_at,
    "updated_at": Site.updated_at,
    "name": Site.name,
    "url": Site.url,
}
PRICING_ORDER = {"fully_free": 0, "freemium": 1, "free_trial": 2, "paid": 3}
UNPOSITIONED_PIN = 2 ** 31 - 1

_TRUTHY = {"1", "true", "yes", "on"}


# ==================================================
# PARAMETER PARSING
# ==================================================


def clamp_limit(raw: Any) -> int:
    """Absent, non-numeric or <= 0 -> default; anything above the cap -> cap."""
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return DEFAULT_PAGE_LIMIT
    if value <= 0:
        return DEFAULT_PAGE_LIMIT
    return min(value, MAX_PAGE_LIMIT)


def clamp_page(raw: Any) -> int:
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return 1
    return max(value, 1)


def parse_flag(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw or "").strip().lower() in _TRUTHY


class FieldsMode(str, Enum):
    MINIMAL = "minimal"
    IDS = "ids"
    FULL = "full"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "FieldsMode":
        if raw is None or str(raw).strip() == "":
            return cls.FULL
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise ValidationError(f"Unknown fields mode '{raw}' (expected one of: {allowed})")


@dataclass
class SiteFilters:
    q: Optional[str] = None
    category_id: Optional[str] = None
    tag_id: Optional[str] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"
    favorites: bool = False
    import_source: Optional[str] = None
    user_id: Optional[str] = None
    page: int = 1
    limit: int = DEFAULT_PAGE_LIMIT
    fields: FieldsMode = FieldsMode.FULL

    @classmethod
    def from_params(cls, params: dict) -> "SiteFilters":
        sort_by = (params.get("sort_by") or "created_at").strip()
        if sort_by not in SORT_COLUMNS and sort_by != "pricing":
            sort_by = "created_at"
        sort_order = (params.get("sort_order") or "desc").strip().lower()
        if sort_order not in ("asc", "desc"):
            sort_order = "desc"
        return cls(
            q=(params.get("q") or "").strip() or None,
            category_id=params.get("category_id") or None,
            tag_id=params.get("tag_id") or None,
            sort_by=sort_by,
            sort_order=sort_order,
            favorites=parse_flag(params.get("favorites")),
            import_source=params.get("import_source") or None,
            user_id=params.get("user_id") or None,
            page=clamp_page(params.get("page")),
            limit=clamp_limit(params.get("limit")),
            fields=FieldsMode.parse(params.get("fields")),
        )

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


# ==================================================
# BATCHED RELATION FETCH
# ==================================================


@dataclass
class RelationBatch:
    category_links: list = field(default_factory=list)   # [(site_id, category_id)]
    tag_links: list = field(default_factory=list)        # [(site_id, tag_id)]
    categories: dict = field(default_factory=dict)       # id -> record dict
    tags: dict = field(default_factory=dict)
    legacy_categories: dict = field(default_factory=dict)  # name -> record dict
    legacy_tags: dict = field(default_factory=dict)
    diagnostics: list = field(default_factory=list)


def _fetch_category_links(db: Session, site_ids: list[str]) -> list[tuple[str, str]]:
    rows = (
        db.query(SiteCategory.site_id, SiteCategory.category_id)
        .filter(SiteCategory.site_id.in_(site_ids))
        .all()
    )
    return [(r[0], r[1]) for r in rows]


def _fetch_tag_links(db: Session, site_ids: list[str]) -> list[tuple[str, str]]:
    rows = db.query(SiteTag.site_id, SiteTag.tag_id).filter(SiteTag.site_id.in_(site_ids)).all()
    return [(r[0], r[1]) for r in rows]


def _fetch_records(db: Session, model, ids: list[str]) -> list[dict]:
    return [r.to_dict() for r in db.query(model).filter(model.id.in_(ids)).all()]


def _fetch_records_by_name(db: Session, model, names: list[str], user_ids: list[str]) -> list[dict]:
    query = db.query(model).filter(model.name.in_(names))
    if user_ids:
        query = query.filter(model.user_id.in_(user_ids))
    return [r.to_dict() for r in query.all()]


def fetch_relations_batched(
    db: Session,
    sites: list[Site],
    batch_size: int = RELATION_BATCH_SIZE,
    with_records: bool = True,
) -> RelationBatch:
    """
    Fetch join rows (and optionally category/tag records) for `sites`.

    Batches run sequentially. A failing batch is rolled back and recorded in
    `diagnostics`; the sites it covered end up with empty relation arrays.
    """
    out = RelationBatch()
    site_ids = [s.id for s in sites]

    for stage, fetch, target in (
        ("category_links", _fetch_category_links, out.category_links),
        ("tag_links", _fetch_tag_links, out.tag_links),
    ):
        for index, batch in enumerate(chunked(site_ids, batch_size)):
            try:
                target.extend(fetch(db, batch))
            except SQLAlchemyError as e:
                db.rollback()
                logger.warning(f"Relation batch {stage}#{index} failed ({len(batch)} sites): {e}")
                out.diagnostics.append({"stage": stage, "batch": index, "size": len(batch), "error": str(e)})

    if not with_records:
        return out

    for stage, model, links, target in (
        ("categories", Category, out.category_links, out.categories),
        ("tags", Tag, out.tag_links, out.tags),
    ):
        ids = list(dict.fromkeys(other for _, other in links))
        for index, batch in enumerate(chunked(ids, batch_size)):
            try:
                target.update(build_id_map(_fetch_records(db, model, batch)))
            except SQLAlchemyError as e:
                db.rollback()
                logger.warning(f"Record batch {stage}#{index} failed: {e}")
                out.diagnostics.append({"stage": stage, "batch": index, "size": len(batch), "error": str(e)})

    _load_legacy_names(db, sites, out, batch_size)
    return out


def _load_legacy_names(db: Session, sites: list[Site], out: RelationBatch, batch_size: int):
    """Name maps for sites that still carry only legacy name strings."""
    linked_cat = {site_id for site_id, _ in out.category_links}
    linked_tag = {site_id for site_id, _ in out.tag_links}
    owners = sorted({s.user_id for s in sites if s.user_id})

    for stage, model, attr, linked, target in (
        ("legacy_categories", Category, "legacy_categories", linked_cat, out.legacy_categories),
        ("legacy_tags", Tag, "legacy_tags", linked_tag, out.legacy_tags),
    ):
        names: list[str] = []
        for s in sites:
            if s.id in linked:
                continue
            names.extend(s.to_dict()[attr])
        names = list(dict.fromkeys(names))
        for index, batch in enumerate(chunked(names, batch_size)):
            try:
                target.update(build_name_map(_fetch_records_by_name(db, model, batch, owners)))
            except SQLAlchemyError as e:
                db.rollback()
                out.diagnostics.append({"stage": stage, "batch": index, "size": len(batch), "error": str(e)})


# ==================================================
# RESPONSE SHAPERS
# ==================================================


class MinimalShaper:
    """Raw site fields, legacy arrays coerced to lists, no relation lookups."""
    needs_links = False
    needs_records = False

    def shape(self, sites: list[Site], relations: Optional[RelationBatch]) -> list[dict]:
        return [s.to_dict() for s in sites]


class IdsShaper:
    """Site fields plus bare category_ids / tag_ids."""
    needs_links = True
    needs_records = False

    def shape(self, sites: list[Site], relations: RelationBatch) -> list[dict]:
        cat_ids = build_link_id_map(relations.category_links)
        tag_ids = build_link_id_map(relations.tag_links)
        out = []
        for s in sites:
            item = s.to_dict()
            item["category_ids"] = cat_ids.get(s.id, [])
            item["tag_ids"] = tag_ids.get(s.id, [])
            out.append(item)
        return out


class FullShaper:
    """Site fields plus resolved {id, name, color} category and tag objects."""
    needs_links = True
    needs_records = True

    def shape(self, sites: list[Site], relations: RelationBatch) -> list[dict]:
        by_site_cat = build_site_categories_map(relations.category_links, relations.categories)
        by_site_tag = build_site_tags_map(relations.tag_links, relations.tags)
        out = []
        for s in sites:
            item = s.to_dict()
            if s.id in by_site_cat:
                item["categories"] = by_site_cat[s.id]
            else:
                item["categories"] = resolve_names(item["legacy_categories"], relations.legacy_categories)
            if s.id in by_site_tag:
                item["tags"] = by_site_tag[s.id]
            else:
                item["tags"] = resolve_names(item["legacy_tags"], relations.legacy_tags)
            out.append(item)
        return out


SHAPERS = {
    FieldsMode.MINIMAL: MinimalShaper(),
    FieldsMode.IDS: IdsShaper(),
    FieldsMode.FULL: FullShaper(),
}


# ==================================================
# QUERY BUILDER
# ==================================================


class ListQueryBuilder:
    def __init__(self, db: Session, batch_size: int = RELATION_BATCH_SIZE):
        self.db = db
        self.batch_size = batch_size

    def build_query(self, filters: SiteFilters) -> Query:
        query = self.db.query(Site)

        if filters.user_id:
            query = query.filter(Site.user_id == filters.user_id)

        if filters.category_id == UNCATEGORIZED:
            query = query.outerjoin(SiteCategory, SiteCategory.site_id == Site.id).filter(
                SiteCategory.site_id.is_(None)
            )
        elif filters.category_id:
            query = query.join(SiteCategory, SiteCategory.site_id == Site.id).filter(
                SiteCategory.category_id == filters.category_id
            )

        if filters.tag_id == UNTAGGED:
            query = query.outerjoin(SiteTag, SiteTag.site_id == Site.id).filter(SiteTag.site_id.is_(None))
        elif filters.tag_id:
            query = query.join(SiteTag, SiteTag.site_id == Site.id).filter(SiteTag.tag_id == filters.tag_id)

        if filters.q:
            query = query.filter(or_(
                Site.name.icontains(filters.q, autoescape=True),
                Site.url.icontains(filters.q, autoescape=True),
            ))

        if filters.favorites:
            query = query.filter(Site.is_favorite.is_(True))

        if filters.import_source:
            query = query.filter(Site.import_source == filters.import_source)

        return query.order_by(*self._ordering(filters))

    def _ordering(self, filters: SiteFilters) -> list:
        if filters.sort_by == "pricing":
            column = case(PRICING_ORDER, value=Site.pricing, else_=len(PRICING_ORDER))
        else:
            column = SORT_COLUMNS.get(filters.sort_by, Site.created_at)
        direction = column.asc() if filters.sort_order == "asc" else column.desc()
        # Pinned sites first, in pin order, whatever the chosen sort.
        # Unpinned rows all rank 0; pinned rows without a position rank last.
        pin_rank = case(
            (Site.is_pinned.is_(True), func.coalesce(Site.pin_position, UNPOSITIONED_PIN)),
            else_=0,
        )
        return [
            func.coalesce(Site.is_pinned, False).desc(),
            pin_rank.asc(),
            direction,
            Site.id.asc(),
        ]

    def count_query(self, filters: SiteFilters) -> int:
        return self.build_query(filters).order_by(None).count()

    def shape(self, sites: list[Site], mode: FieldsMode = FieldsMode.FULL) -> tuple[list[dict], list[dict]]:
        """Return (shaped rows, diagnostics)."""
        shaper = SHAPERS[mode]
        relations = None
        if shaper.needs_links:
            relations = fetch_relations_batched(
                self.db, sites, batch_size=self.batch_size, with_records=shaper.needs_records
            )
        rows = shaper.shape(sites, relations)
        return rows, (relations.diagnostics if relations else [])

    def list_sites(self, filters: SiteFilters) -> dict:
        total = self.count_query(filters)
        sites = self.build_query(filters).offset(filters.offset).limit(filters.limit).all()
        rows, diagnostics = self.shape(sites, filters.fields)
        debug = {
            "page": filters.page,
            "limit": filters.limit,
            "fields": filters.fields.value,
            "relationErrors": diagnostics,
        }
        return {"data": rows, "totalCount": total, "debug": debug}

    def get_site(self, site: Site) -> dict:
        rows, _ = self.shape([site], FieldsMode.FULL)
        return rows[0]
