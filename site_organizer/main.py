import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud
from .bulk import BulkMutationCoordinator, RestorePayload, UndoRegistry
from .database import Base, engine, ensure_postgres_indexes, ensure_site_columns, get_db
from .errors import OrganizerError, ValidationError
from .exporter import export_sites
from .importer import import_rows, parse
from .link_check import check_sites
from .models import Site
from .queries import FieldsMode, ListQueryBuilder, SiteFilters
from .schemas import (
    BulkDeleteRequest,
    LinkCheckRequest,
    RelationsRetry,
    RestoreRequest,
    SiteCreate,
    SiteUpdate,
    TermCreate,
    TermUpdate,
    UndoRequest,
)
from .write_safety import (
    bulk_delete_limiter,
    get_client_ip,
    import_limiter,
    validate_import_file,
    validate_import_rows,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database schema and ensure late-added columns exist."""
    logger.info("Running database schema initialization...")
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Base tables created/verified")
    except SQLAlchemyError as e:
        logger.warning(f"Could not create base tables (might already exist in managed DB): {e}")

    try:
        ensure_site_columns()
    except SQLAlchemyError as e:
        logger.warning(f"Could not ensure site columns: {e}")

    ensure_postgres_indexes()
    logger.info("Database schema initialization completed")
    yield


app = FastAPI(title="Site Organizer", lifespan=lifespan)

# One pending undo per (user, view), process-wide
undo_registry = UndoRegistry()


def get_undo_registry() -> UndoRegistry:
    return undo_registry


@app.exception_handler(OrganizerError)
async def organizer_error_handler(request: Request, exc: OrganizerError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} ({exc.details})")
    return JSONResponse(jsonable_encoder(exc.to_envelope()), status_code=exc.status_code)


def _ok(data=None, warnings=None, status_code: int = 200, **extra) -> JSONResponse:
    body = {"success": True, "data": data}
    if warnings:
        body["warnings"] = warnings
    body.update(extra)
    return JSONResponse(jsonable_encoder(body), status_code=status_code)


# ==================================================
# SITES
# ==================================================


@app.get("/sites")
def list_sites(
    q: Optional[str] = None,
    category_id: Optional[str] = None,
    tag_id: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_order: Optional[str] = None,
    favorites: Optional[str] = None,
    import_source: Optional[str] = None,
    user_id: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    fields: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """
    Filtered, paginated site list.
    category_id / tag_id accept 'uncategorized' / 'untagged'.
    fields: minimal | ids | full (default).
    """
    filters = SiteFilters.from_params({
        "q": q,
        "category_id": category_id,
        "tag_id": tag_id,
        "sort_by": sort_by,
        "sort_order": sort_order,
        "favorites": favorites,
        "import_source": import_source,
        "user_id": user_id,
        "page": page,
        "limit": limit,
        "fields": fields,
    })
    result = ListQueryBuilder(db).list_sites(filters)
    return _ok(result["data"], totalCount=result["totalCount"], debug=result["debug"])


@app.post("/sites")
def create_site(body: SiteCreate, db: Session = Depends(get_db)):
    result = crud.create_site(db, body.model_dump(exclude_unset=True))
    return _ok(result.value, warnings=result.warning_dicts(), status_code=201)


@app.get("/sites/{site_id}")
def get_site(site_id: str, db: Session = Depends(get_db)):
    return _ok(crud.site_to_response(db, crud.get_site(db, site_id)))


@app.put("/sites/{site_id}")
def update_site(site_id: str, body: SiteUpdate, db: Session = Depends(get_db)):
    result = crud.update_site(db, site_id, body.model_dump(exclude_unset=True))
    return _ok(result.value, warnings=result.warning_dicts())


@app.delete("/sites/{site_id}")
def delete_site(site_id: str, db: Session = Depends(get_db)):
    return _ok(crud.delete_site(db, site_id))


@app.post("/sites/{site_id}/relations/retry")
def retry_site_relations(site_id: str, body: RelationsRetry, db: Session = Depends(get_db)):
    result = crud.retry_relations(db, site_id, body.category_ids, body.tag_ids)
    return _ok(result.value, warnings=result.warning_dicts())


# ==================================================
# CATEGORIES & TAGS
# ==================================================


def _create_term(db: Session, kind: str, body: TermCreate) -> JSONResponse:
    record, created = crud.create_term(db, kind, body.model_dump(exclude_unset=True))
    return _ok(record, status_code=201 if created else 200, created=created)


@app.get("/categories")
def list_categories(user_id: Optional[str] = None, db: Session = Depends(get_db)):
    return _ok(crud.list_terms(db, "categories", user_id))


@app.post("/categories")
def create_category(body: TermCreate, db: Session = Depends(get_db)):
    return _create_term(db, "categories", body)


@app.get("/categories/{category_id}")
def get_category(category_id: str, db: Session = Depends(get_db)):
    return _ok(crud.get_term(db, "categories", category_id).to_dict())


@app.put("/categories/{category_id}")
def update_category(category_id: str, body: TermUpdate, db: Session = Depends(get_db)):
    return _ok(crud.update_term(db, "categories", category_id, body.model_dump(exclude_unset=True)))


@app.delete("/categories/{category_id}")
def delete_category(category_id: str, db: Session = Depends(get_db)):
    return _ok(crud.delete_term(db, "categories", category_id))


@app.get("/tags")
def list_tags(user_id: Optional[str] = None, db: Session = Depends(get_db)):
    return _ok(crud.list_terms(db, "tags", user_id))


@app.post("/tags")
def create_tag(body: TermCreate, db: Session = Depends(get_db)):
    return _create_term(db, "tags", body)


@app.get("/tags/{tag_id}")
def get_tag(tag_id: str, db: Session = Depends(get_db)):
    return _ok(crud.get_term(db, "tags", tag_id).to_dict())


@app.put("/tags/{tag_id}")
def update_tag(tag_id: str, body: TermUpdate, db: Session = Depends(get_db)):
    return _ok(crud.update_term(db, "tags", tag_id, body.model_dump(exclude_unset=True)))


@app.delete("/tags/{tag_id}")
def delete_tag(tag_id: str, db: Session = Depends(get_db)):
    return _ok(crud.delete_term(db, "tags", tag_id))


# ==================================================
# BULK DELETE / UNDO / RESTORE
# ==================================================


def _reloader(db: Session, kind: str, user_id: Optional[str]):
    if kind == "sites":
        filters = SiteFilters(user_id=user_id, fields=FieldsMode.MINIMAL)
        return lambda: ListQueryBuilder(db).list_sites(filters)
    if kind in ("categories", "tags"):
        return lambda: crud.list_terms(db, kind, user_id)
    return None


@app.post("/bulk-delete")
def bulk_delete(
    request: Request,
    body: BulkDeleteRequest,
    db: Session = Depends(get_db),
    registry: UndoRegistry = Depends(get_undo_registry),
):
    """
    Delete many sites / categories / tags in one call.
    The response carries the restore payload; POST /undo replays it within
    the undo window.
    """
    ip = get_client_ip(request)
    if not bulk_delete_limiter.is_allowed(ip):
        return JSONResponse(
            {"success": False, "error": "Too many requests. Please wait before trying again."},
            status_code=429,
        )
    coordinator = BulkMutationCoordinator(db, registry, reload=_reloader(db, body.type, body.user_id))
    outcome = coordinator.bulk_delete(body.type, body.ids, user_id=body.user_id, view=body.view)
    return _ok(outcome.to_dict(), reloaded=outcome.reloaded)


@app.post("/undo")
def undo(body: UndoRequest, db: Session = Depends(get_db), registry: UndoRegistry = Depends(get_undo_registry)):
    result = BulkMutationCoordinator(db, registry).undo(user_id=body.user_id, view=body.view)
    return _ok(result.value, warnings=result.warning_dicts())


@app.post("/restore")
def restore(body: RestoreRequest, db: Session = Depends(get_db)):
    if not body.user_id:
        raise ValidationError("Missing required fields: user_id", data={"missing": ["user_id"]})
    payload = RestorePayload.from_dict(body.model_dump(exclude={"user_id"}))
    result = BulkMutationCoordinator(db).restore(payload, user_id=body.user_id)
    return _ok(result.value, warnings=result.warning_dicts())


# ==================================================
# IMPORT / EXPORT
# ==================================================


@app.post("/import")
async def import_file(
    request: Request,
    file: UploadFile = File(...),
    user_id: Optional[str] = Form(None),
    source: str = Form("auto"),
    import_source: Optional[str] = Form(None),
    db: Session = Depends(get_db),
):
    """
    Import sites from .json, .csv, .html/.htm (tables, Notion exports,
    browser bookmarks). A file that fails to parse imports nothing.
    """
    ip = get_client_ip(request)
    logger.info(f"POST /import from {ip}: {file.filename}")

    if not import_limiter.is_allowed(ip):
        return JSONResponse(
            {"success": False, "error": "Too many imports. Please wait before trying again."},
            status_code=429,
        )
    if not user_id:
        raise ValidationError("Missing required fields: user_id", data={"missing": ["user_id"]})

    content = await file.read()
    is_valid, error = validate_import_file(file.filename, len(content))
    if not is_valid:
        raise ValidationError(error)

    parsed = parse(file.filename, content, source=source)
    is_valid, error = validate_import_rows(len(parsed.rows))
    if not is_valid:
        raise ValidationError(error)

    report = import_rows(db, parsed.rows, user_id, import_source=import_source or parsed.format, skipped=parsed.skipped)
    return _ok(report.to_dict(), warnings=report.warnings, format=parsed.format)


@app.get("/export")
def export(user_id: Optional[str] = None, format: str = "json", db: Session = Depends(get_db)):
    content, media_type, filename = export_sites(db, user_id, format)
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ==================================================
# LINK CHECK / HEALTH
# ==================================================


@app.post("/links/check")
def check_links(body: LinkCheckRequest, db: Session = Depends(get_db)):
    if body.sites:
        sites = [s for s in body.sites if s.get("url")]
    elif body.user_id:
        rows = db.query(Site.id, Site.name, Site.url).filter(Site.user_id == body.user_id).all()
        sites = [{"id": r[0], "name": r[1], "url": r[2]} for r in rows]
    else:
        raise ValidationError("Provide either sites or user_id")
    return _ok(check_sites(sites))


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning(f"Health check failed: {e}")
        return JSONResponse({"success": False, "error": "database unavailable"}, status_code=503)
    return _ok({"status": "ok", "database": engine.dialect.name})
