from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import (
    ConflictError,
    InUseError,
    NotFoundError,
    Result,
    UpstreamError,
    ValidationError,
)
from .models import PRICING_VALUES, Category, Site, SiteCategory, SiteTag, Tag, utcnow
from .queries import ListQueryBuilder
from .relations import RelationSync, chunked, unique_ids

logger = logging.getLogger(__name__)

SITE_REQUIRED = ("name", "url", "pricing", "user_id")
SITE_UPDATABLE = ("name", "url", "pricing", "description", "use_case", "is_favorite", "is_needed", "is_pinned")
TERM_UPDATABLE = ("name", "color", "is_needed")


# --------------------------------------------------
# Normalization helpers
# --------------------------------------------------

def _clean(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def normalize_url(url: str) -> str:
    """Trim whitespace, ensure scheme."""
    url = (url or "").strip()
    if not url.lower().startswith(("http://", "https://")):
        url = "https://" + url
    return url


def validate_pricing(pricing) -> str:
    value = _clean(pricing)
    if value not in PRICING_VALUES:
        raise ValidationError(
            f"Invalid pricing '{pricing}' (expected one of: {', '.join(PRICING_VALUES)})"
        )
    return value


def require_fields(payload: dict, fields) -> None:
    missing = [f for f in fields if _clean(payload.get(f)) is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", data={"missing": missing})


def _commit(db: Session, what: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to {what}: {e}")
        raise UpstreamError(f"Failed to {what}", details=str(e))


# --------------------------------------------------
# Sites
# --------------------------------------------------

def get_site(db: Session, site_id: str) -> Site:
    site = db.query(Site).filter(Site.id == site_id).first()
    if site is None:
        raise NotFoundError(f"Site {site_id} not found")
    return site


def find_site_by_url(db: Session, user_id: str, url: str, exclude_id: Optional[str] = None) -> Optional[Site]:
    query = db.query(Site).filter(Site.user_id == user_id, Site.url == url)
    if exclude_id:
        query = query.filter(Site.id != exclude_id)
    return query.first()


def site_to_response(db: Session, site: Site) -> dict:
    """Fully normalized site: core fields plus categories/tags objects."""
    return ListQueryBuilder(db).get_site(site)


def _next_pin_position(db: Session, user_id: str) -> int:
    current = db.query(func.max(Site.pin_position)).filter(Site.user_id == user_id).scalar()
    return (current or 0) + 1


def create_site(db: Session, payload: dict) -> Result:
    """
    Insert a site, then attach its categories and tags.

    The site row is committed first. Relation failures after that point do
    not remove it; they come back as warnings on the Result.
    """
    require_fields(payload, SITE_REQUIRED)
    user_id = _clean(payload["user_id"])
    url = normalize_url(payload["url"])
    pricing = validate_pricing(payload["pricing"])

    existing = find_site_by_url(db, user_id, url)
    if existing is not None:
        logger.warning(f"Duplicate site URL for {user_id}: {url}")
        raise ConflictError("A site with this URL already exists", data=site_to_response(db, existing))

    site = Site(
        user_id=user_id,
        name=_clean(payload["name"]),
        url=url,
        pricing=pricing,
        description=_clean(payload.get("description")),
        use_case=_clean(payload.get("use_case")),
        is_favorite=bool(payload.get("is_favorite") or False),
        is_needed=payload.get("is_needed"),
        is_pinned=bool(payload.get("is_pinned") or False),
        import_source=_clean(payload.get("import_source")),
    )
    if site.is_pinned:
        site.pin_position = _next_pin_position(db, user_id)
    db.add(site)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        existing = find_site_by_url(db, user_id, url)
        if existing is None:
            raise UpstreamError("Failed to create site", details=str(e))
        raise ConflictError("A site with this URL already exists", data=site_to_response(db, existing))
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create site {url}: {e}")
        raise UpstreamError("Failed to create site", details=str(e))
    db.refresh(site)
    logger.info(f"Created site {site.id} ({url}) for {user_id}")

    result = Result()
    sync = RelationSync(db)
    result.extend(
        sync.attach_categories(
            site.id,
            category_ids=payload.get("category_ids"),
            category_names=payload.get("categories"),
            user_id=user_id,
        )
    )
    result.extend(sync.attach_tags(site.id, payload.get("tag_ids"), user_id=user_id))
    if result.warnings:
        logger.warning(f"Site {site.id} created with relation warnings: {result.warning_dicts()}")

    result.value = site_to_response(db, site)
    return result


def update_site(db: Session, site_id: str, payload: dict) -> Result:
    """
    Update core fields, then converge membership to category_ids / tag_ids
    when they are present in the payload.
    """
    site = get_site(db, site_id)
    changes = {k: payload[k] for k in SITE_UPDATABLE if k in payload}

    if "name" in changes:
        if _clean(changes["name"]) is None:
            raise ValidationError("Missing required fields: name", data={"missing": ["name"]})
        site.name = _clean(changes["name"])
    if "url" in changes:
        if _clean(changes["url"]) is None:
            raise ValidationError("Missing required fields: url", data={"missing": ["url"]})
        url = normalize_url(changes["url"])
        existing = find_site_by_url(db, site.user_id, url, exclude_id=site.id)
        if existing is not None:
            raise ConflictError("A site with this URL already exists", data=site_to_response(db, existing))
        site.url = url
    if "pricing" in changes:
        site.pricing = validate_pricing(changes["pricing"])
    for key in ("description", "use_case"):
        if key in changes:
            setattr(site, key, _clean(changes[key]))
    if "is_favorite" in changes:
        site.is_favorite = bool(changes["is_favorite"])
    if "is_needed" in changes:
        site.is_needed = changes["is_needed"]
    if "is_pinned" in changes:
        pinned = bool(changes["is_pinned"])
        if pinned and not site.is_pinned:
            site.pin_position = _next_pin_position(db, site.user_id)
        elif not pinned:
            site.pin_position = None
        site.is_pinned = pinned
    site.updated_at = utcnow()
    _commit(db, f"update site {site_id}")

    result = RelationSync(db).reconcile_membership(
        site.id,
        desired_category_ids=payload.get("category_ids"),
        desired_tag_ids=payload.get("tag_ids"),
        user_id=site.user_id,
    )
    db.refresh(site)
    result.value = site_to_response(db, site)
    return result


def retry_relations(db: Session, site_id: str, category_ids=None, tag_ids=None) -> Result:
    """User-triggered retry after a create/update came back with relation warnings."""
    site = get_site(db, site_id)
    result = RelationSync(db).reconcile_membership(
        site.id, desired_category_ids=category_ids, desired_tag_ids=tag_ids, user_id=site.user_id
    )
    result.value = site_to_response(db, site)
    return result


def delete_site(db: Session, site_id: str) -> dict:
    site = get_site(db, site_id)
    RelationSync(db).detach_all(site.id)
    db.delete(site)
    _commit(db, f"delete site {site_id}")
    logger.info(f"Deleted site {site_id}")
    return {"id": site_id}


# --------------------------------------------------
# Categories & tags
# --------------------------------------------------

_TERMS = {
    "categories": (Category, SiteCategory, SiteCategory.category_id),
    "tags": (Tag, SiteTag, SiteTag.tag_id),
}


def _term_model(kind: str):
    if kind not in _TERMS:
        raise ValidationError(f"Unknown type '{kind}'")
    return _TERMS[kind]


def list_terms(db: Session, kind: str, user_id: Optional[str] = None) -> list[dict]:
    model, _, _ = _term_model(kind)
    query = db.query(model)
    if user_id:
        query = query.filter(model.user_id == user_id)
    return [t.to_dict() for t in query.order_by(model.name.asc()).all()]


def get_term(db: Session, kind: str, term_id: str):
    model, _, _ = _term_model(kind)
    term = db.query(model).filter(model.id == term_id).first()
    if term is None:
        raise NotFoundError(f"{kind[:-1].capitalize()} {term_id} not found")
    return term


def create_term(db: Session, kind: str, payload: dict) -> tuple[dict, bool]:
    """
    Create a category or tag. A name the user already has returns the
    existing record with created=False.
    """
    model, _, _ = _term_model(kind)
    require_fields(payload, ("name", "user_id"))
    name = _clean(payload["name"])
    user_id = _clean(payload["user_id"])

    existing = db.query(model).filter(model.user_id == user_id, model.name == name).first()
    if existing is not None:
        return existing.to_dict(), False

    term = model(user_id=user_id, name=name, color=_clean(payload.get("color")))
    if payload.get("id"):
        term.id = str(payload["id"])
    if model is Tag and "is_needed" in payload:
        term.is_needed = payload["is_needed"]
    db.add(term)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.query(model).filter(model.user_id == user_id, model.name == name).first()
        if existing is None:
            raise ConflictError(f"{kind[:-1].capitalize()} id already exists")
        return existing.to_dict(), False
    except SQLAlchemyError as e:
        db.rollback()
        raise UpstreamError(f"Failed to create {kind[:-1]}", details=str(e))
    db.refresh(term)
    logger.info(f"Created {kind[:-1]} {term.id} ({name}) for {user_id}")
    return term.to_dict(), True


def update_term(db: Session, kind: str, term_id: str, payload: dict) -> dict:
    model, _, _ = _term_model(kind)
    term = get_term(db, kind, term_id)
    if "name" in payload:
        name = _clean(payload["name"])
        if name is None:
            raise ValidationError("Missing required fields: name", data={"missing": ["name"]})
        clash = (
            db.query(model)
            .filter(model.user_id == term.user_id, model.name == name, model.id != term.id)
            .first()
        )
        if clash is not None:
            raise ConflictError(f"{kind[:-1].capitalize()} '{name}' already exists", data=clash.to_dict())
        term.name = name
    if "color" in payload:
        term.color = _clean(payload["color"])
    if model is Tag and "is_needed" in payload:
        term.is_needed = payload["is_needed"]
    _commit(db, f"update {kind[:-1]} {term_id}")
    db.refresh(term)
    return term.to_dict()


def term_usage(db: Session, kind: str, term_ids: list[str], batch_size: int = 100) -> list[dict]:
    """
    Every site still linked to any of `term_ids`.
    Empty list means the terms can be deleted.
    """
    _, join_model, fk = _term_model(kind)
    usage: list[dict] = []
    for batch in chunked(unique_ids(term_ids), batch_size):
        rows = (
            db.query(fk, Site.id, Site.name, Site.url)
            .join(Site, Site.id == join_model.site_id)
            .filter(fk.in_(batch))
            .order_by(Site.name.asc())
            .all()
        )
        usage.extend({"term_id": r[0], "id": r[1], "name": r[2], "url": r[3]} for r in rows)
    return usage


def delete_term(db: Session, kind: str, term_id: str) -> dict:
    model, _, _ = _term_model(kind)
    term = get_term(db, kind, term_id)
    usage = term_usage(db, kind, [term.id])
    if usage:
        logger.warning(f"Refused to delete {kind[:-1]} {term_id}: used by {len(usage)} site(s)")
        raise InUseError(
            f"{kind[:-1].capitalize()} is used by {len(usage)} site(s)",
            data={"sites": usage},
        )
    db.delete(term)
    _commit(db, f"delete {kind[:-1]} {term_id}")
    logger.info(f"Deleted {kind[:-1]} {term_id}")
    return {"id": term_id}
