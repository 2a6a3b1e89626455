"""
Bulk delete with a single-shot, time-boxed undo.

Flow for one bulk delete:
  1. usage check (categories/tags only): refuse while any site links them
  2. capture a RestorePayload: stripped entity rows + every join row
     referencing them. Always before anything is deleted.
  3. batched DELETE ... WHERE id IN (...) per table, one commit
  4. clear the view's selection, reload its items from the database
  5. open the undo window for (user, view), replacing any older one

Undo replays the payload through restore(): categories, tags, sites, then
join rows. It is best-effort; rows that can no longer be inserted are
skipped and reported, the rest is restored.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import DateTime
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config.settings import RELATION_BATCH_SIZE, UNDO_WINDOW_SECONDS
from .crud import term_usage
from .errors import (
    InUseError,
    RelationWarning,
    Result,
    UndoUnavailableError,
    UpstreamError,
    ValidationError,
)
from .models import Category, Site, SiteCategory, SiteTag, Tag
from .relations import chunked, unique_ids

logger = logging.getLogger(__name__)

BULK_TYPES = ("sites", "categories", "tags")
ENTITY_MODELS = {"sites": Site, "categories": Category, "tags": Tag}


def _row_dict(obj) -> dict:
    """Column values only. Datetimes become ISO strings so the payload is JSON-safe."""
    out = {}
    for column in obj.__table__.columns:
        value = getattr(obj, column.name)
        out[column.name] = value.isoformat() if isinstance(value, datetime) else value
    return out


def _parse_datetime(value):
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def strip_record(model, data: dict) -> dict:
    """Keep table columns only (drops joined/computed fields such as `categories`)."""
    out = {}
    for column in model.__table__.columns:
        if column.name not in data:
            continue
        value = data[column.name]
        if value is None and column.default is not None:
            continue
        if isinstance(column.type, DateTime):
            value = _parse_datetime(value)
        out[column.name] = value
    return out


@dataclass
class RestorePayload:
    sites: list = field(default_factory=list)
    categories: list = field(default_factory=list)
    tags: list = field(default_factory=list)
    site_categories: list = field(default_factory=list)
    site_tags: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "sites": self.sites,
            "categories": self.categories,
            "tags": self.tags,
            "site_categories": self.site_categories,
            "site_tags": self.site_tags,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RestorePayload":
        if not isinstance(data, dict):
            raise ValidationError("Restore payload must be an object")
        parts = {}
        for key in ("sites", "categories", "tags", "site_categories", "site_tags"):
            value = data.get(key) or []
            if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
                raise ValidationError(f"Restore payload field '{key}' must be a list of objects")
            parts[key] = value
        return cls(**parts)

    def is_empty(self) -> bool:
        return not any(self.to_dict().values())


@dataclass
class ViewState:
    """Client-visible list state of one view: what is selected, what is shown."""
    selected: set = field(default_factory=set)
    items: list = field(default_factory=list)


@dataclass
class BulkDeleteOutcome:
    type: str
    deleted: int
    payload: RestorePayload
    undo_window_seconds: float
    reloaded: Any = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "deleted": self.deleted,
            "restorePayload": self.payload.to_dict(),
            "undoWindowSeconds": self.undo_window_seconds,
        }


# ==================================================
# UNDO REGISTRY (in-memory, one slot per view)
# ==================================================


class UndoRegistry:
    """
    At most one pending undo per (user, view). Opening a new one forfeits
    the previous; taking it consumes it.
    """

    def __init__(self, window_seconds: float = UNDO_WINDOW_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self.clock = clock
        self._pending: dict[tuple, tuple[RestorePayload, float]] = {}

    def open(self, key: tuple, payload: RestorePayload) -> float:
        if key in self._pending:
            logger.info(f"Pending undo for {key} forfeited by a newer bulk delete")
        self._pending[key] = (payload, self.clock() + self.window_seconds)
        return self.window_seconds

    def remaining(self, key: tuple) -> float:
        entry = self._pending.get(key)
        if entry is None:
            return 0.0
        return max(0.0, entry[1] - self.clock())

    def has_pending(self, key: tuple) -> bool:
        return self.remaining(key) > 0

    def take(self, key: tuple) -> RestorePayload:
        entry = self._pending.pop(key, None)
        if entry is None:
            raise UndoUnavailableError("Nothing to undo")
        payload, expires_at = entry
        if self.clock() > expires_at:
            raise UndoUnavailableError("Undo window has expired")
        return payload


# ==================================================
# COORDINATOR
# ==================================================


class BulkMutationCoordinator:
    def __init__(
        self,
        db: Session,
        registry: Optional[UndoRegistry] = None,
        batch_size: int = RELATION_BATCH_SIZE,
        reload: Optional[Callable[[], Any]] = None,
    ):
        self.db = db
        self.registry = registry if registry is not None else UndoRegistry()
        self.batch_size = batch_size
        self.reload = reload

    # --------------------------------------------------
    # Capture
    # --------------------------------------------------

    def capture_restore_payload(self, kind: str, ids: list[str], user_id: Optional[str] = None) -> RestorePayload:
        model = ENTITY_MODELS[kind]
        payload = RestorePayload()
        records = []
        for batch in chunked(ids, self.batch_size):
            query = self.db.query(model).filter(model.id.in_(batch))
            if user_id:
                query = query.filter(model.user_id == user_id)
            records.extend(query.all())
        setattr(payload, kind, [_row_dict(r) for r in records])

        found = [r.id for r in records]
        # Deleted with bulk DELETEs below; keep them out of the identity map
        for r in records:
            self.db.expunge(r)
        if kind == "sites":
            payload.site_categories = self._links(SiteCategory, SiteCategory.site_id, found)
            payload.site_tags = self._links(SiteTag, SiteTag.site_id, found)
        elif kind == "categories":
            payload.site_categories = self._links(SiteCategory, SiteCategory.category_id, found)
        else:
            payload.site_tags = self._links(SiteTag, SiteTag.tag_id, found)
        return payload

    def _links(self, join_model, column, ids: list[str]) -> list[dict]:
        rows = []
        for batch in chunked(ids, self.batch_size):
            for link in self.db.query(join_model).filter(column.in_(batch)).all():
                rows.append(link.to_dict())
                self.db.expunge(link)
        return rows

    # --------------------------------------------------
    # Delete
    # --------------------------------------------------

    def bulk_delete(
        self,
        kind: str,
        ids,
        user_id: Optional[str] = None,
        view: str = "default",
        view_state: Optional[ViewState] = None,
    ) -> BulkDeleteOutcome:
        if kind not in BULK_TYPES:
            raise ValidationError(f"Invalid type '{kind}' (expected one of: {', '.join(BULK_TYPES)})")
        if not isinstance(ids, (list, tuple)):
            raise ValidationError("ids must be a non-empty array")
        ids = unique_ids(ids)
        if not ids:
            raise ValidationError("ids must be a non-empty array")

        if kind in ("categories", "tags"):
            usage = term_usage(self.db, kind, ids, batch_size=self.batch_size)
            if usage:
                logger.warning(f"Bulk delete of {kind} refused: {len(usage)} site link(s) remain")
                raise InUseError(
                    f"Cannot delete {kind} still used by sites",
                    data={"sites": usage},
                )

        payload = self.capture_restore_payload(kind, ids, user_id=user_id)
        found = [r["id"] for r in getattr(payload, kind)]

        try:
            for batch in chunked(found, self.batch_size):
                if kind == "sites":
                    self.db.query(SiteCategory).filter(SiteCategory.site_id.in_(batch)).delete(synchronize_session=False)
                    self.db.query(SiteTag).filter(SiteTag.site_id.in_(batch)).delete(synchronize_session=False)
                elif kind == "categories":
                    self.db.query(SiteCategory).filter(SiteCategory.category_id.in_(batch)).delete(synchronize_session=False)
                else:
                    self.db.query(SiteTag).filter(SiteTag.tag_id.in_(batch)).delete(synchronize_session=False)
                model = ENTITY_MODELS[kind]
                self.db.query(model).filter(model.id.in_(batch)).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Bulk delete of {len(found)} {kind} failed: {e}")
            raise UpstreamError(f"Failed to delete {kind}", details=str(e))

        logger.info(f"Bulk deleted {len(found)} {kind} (user={user_id}, view={view})")
        window = self.registry.open((user_id, view), payload)

        reloaded = None
        if view_state is not None:
            view_state.selected.clear()
        if self.reload is not None:
            reloaded = self.reload()
            if view_state is not None:
                view_state.items = reloaded
        return BulkDeleteOutcome(kind, len(found), payload, window, reloaded)

    # --------------------------------------------------
    # Undo / restore
    # --------------------------------------------------

    def undo(self, user_id: Optional[str] = None, view: str = "default") -> Result:
        payload = self.registry.take((user_id, view))
        logger.info(f"Undoing bulk delete for user={user_id}, view={view}")
        return self.restore(payload, user_id=user_id)

    def restore(self, payload: RestorePayload, user_id: Optional[str] = None) -> Result:
        """
        Re-insert a captured payload. Entities first, join rows last.

        Rows owned by someone else, rows whose id already exists and sites
        whose URL was taken in the meantime are skipped and listed in the
        report. Join rows are only restored when both ends exist.
        """
        report = {
            "restored": {k: 0 for k in ("categories", "tags", "sites", "site_categories", "site_tags")},
            "skipped": [],
        }
        result = Result(value=report)

        for kind in ("categories", "tags", "sites"):
            rows = self._restorable_entities(kind, getattr(payload, kind), user_id, report)
            report["restored"][kind] = self._insert_rows(ENTITY_MODELS[kind], kind, rows, result)

        report["restored"]["site_categories"] = self._restore_links(
            SiteCategory, "category_id", Category, payload.site_categories, user_id, result
        )
        report["restored"]["site_tags"] = self._restore_links(
            SiteTag, "tag_id", Tag, payload.site_tags, user_id, result
        )
        logger.info(f"Restore finished: {report['restored']} ({len(report['skipped'])} skipped)")
        return result

    def _restorable_entities(self, kind: str, raw_rows: list, user_id, report: dict) -> list[dict]:
        model = ENTITY_MODELS[kind]
        rows = []
        for raw in raw_rows:
            row = strip_record(model, raw)
            if not row.get("id"):
                report["skipped"].append({"type": kind, "id": None, "reason": "missing_id"})
                continue
            if user_id and row.get("user_id") != user_id:
                report["skipped"].append({"type": kind, "id": row["id"], "reason": "not_owned"})
                continue
            rows.append(row)

        existing = self._existing_ids(model, [r["id"] for r in rows])
        keep = []
        for row in rows:
            if row["id"] in existing:
                report["skipped"].append({"type": kind, "id": row["id"], "reason": "exists"})
                continue
            clash = self._unique_clash(kind, row)
            if clash is not None:
                report["skipped"].append({"type": kind, "id": row["id"], "reason": clash[0], "existing_id": clash[1]})
                continue
            keep.append(row)
        return keep

    def _unique_clash(self, kind: str, row: dict):
        """Re-check the per-user unique key right before the insert."""
        if kind == "sites":
            other = (
                self.db.query(Site.id)
                .filter(Site.user_id == row.get("user_id"), Site.url == row.get("url"))
                .first()
            )
            return ("url_taken", other[0]) if other else None
        model = ENTITY_MODELS[kind]
        other = (
            self.db.query(model.id)
            .filter(model.user_id == row.get("user_id"), model.name == row.get("name"))
            .first()
        )
        return ("name_taken", other[0]) if other else None

    def _existing_ids(self, model, ids: list[str], user_id: Optional[str] = None) -> set[str]:
        found: set[str] = set()
        for batch in chunked(list(dict.fromkeys(ids)), self.batch_size):
            query = self.db.query(model.id).filter(model.id.in_(batch))
            if user_id:
                query = query.filter(model.user_id == user_id)
            found.update(r[0] for r in query.all())
        return found

    def _insert_rows(self, model, stage: str, rows: list[dict], result: Result) -> int:
        """Batch insert; a failing batch is retried row by row."""
        inserted = 0
        for batch in chunked(rows, self.batch_size):
            try:
                self.db.add_all([model(**row) for row in batch])
                self.db.commit()
                inserted += len(batch)
                continue
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.warning(f"Restore batch of {stage} failed, retrying per row: {e}")
            for row in batch:
                try:
                    self.db.add(model(**row))
                    self.db.commit()
                    inserted += 1
                except SQLAlchemyError as e:
                    self.db.rollback()
                    result.warnings.append(
                        RelationWarning(f"restore_{stage}", "failed", {"row": row, "error": str(e)})
                    )
        return inserted

    def _restore_links(self, join_model, fk_column: str, target_model, raw_rows: list, user_id, result: Result) -> int:
        stage = join_model.__tablename__
        rows = [strip_record(join_model, r) for r in raw_rows]
        rows = [r for r in rows if r.get("site_id") and r.get(fk_column)]
        if not rows:
            return 0
        sites = self._existing_ids(Site, [r["site_id"] for r in rows], user_id=user_id)
        targets = self._existing_ids(target_model, [r[fk_column] for r in rows], user_id=user_id)

        present: set[tuple[str, str]] = set()
        fk = getattr(join_model, fk_column)
        for batch in chunked(sorted(sites), self.batch_size):
            present.update(
                (r[0], r[1])
                for r in self.db.query(join_model.site_id, fk).filter(join_model.site_id.in_(batch)).all()
            )

        keep, seen = [], set()
        for row in rows:
            pair = (row["site_id"], row[fk_column])
            if pair in seen or pair in present:
                continue
            seen.add(pair)
            if row["site_id"] not in sites or row[fk_column] not in targets:
                result.warnings.append(RelationWarning(f"restore_{stage}", "missing_endpoint", row))
                continue
            keep.append(row)
        return self._insert_rows(join_model, stage, keep, result)
