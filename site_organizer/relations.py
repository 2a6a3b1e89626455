"""
Category/tag membership for a single site.

Writes go straight to the join tables. Each stage commits on its own, so a
failure here never undoes the site row written before it: the failure is
rolled back, logged and handed back as a RelationWarning.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config.settings import RELATION_BATCH_SIZE
from .errors import RelationWarning, Result
from .models import Category, SiteCategory, SiteTag, Tag

logger = logging.getLogger(__name__)


def chunked(items: list, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def unique_ids(ids: Optional[Iterable]) -> list[str]:
    """Drop blanks and duplicates, keep order."""
    out: list[str] = []
    seen: set[str] = set()
    for raw in ids or []:
        if raw is None:
            continue
        value = str(raw).strip()
        if value and value not in seen:
            seen.add(value)
            out.append(value)
    return out


class _LinkKind:
    def __init__(self, name: str, join_model, fk_column: str, target_model):
        self.name = name
        self.join_model = join_model
        self.fk_column = fk_column
        self.target_model = target_model

    @property
    def fk(self):
        return getattr(self.join_model, self.fk_column)

    def make(self, site_id: str, other_id: str):
        return self.join_model(site_id=site_id, **{self.fk_column: other_id})


CATEGORY_LINKS = _LinkKind("categories", SiteCategory, "category_id", Category)
TAG_LINKS = _LinkKind("tags", SiteTag, "tag_id", Tag)


class RelationSync:
    """Attach, detach and reconcile site membership through join rows."""

    def __init__(self, db: Session, batch_size: int = RELATION_BATCH_SIZE):
        self.db = db
        self.batch_size = batch_size

    # --------------------------------------------------
    # Reads
    # --------------------------------------------------

    def current_ids(self, kind: _LinkKind, site_id: str) -> list[str]:
        rows = (
            self.db.query(kind.fk)
            .filter(kind.join_model.site_id == site_id)
            .all()
        )
        return [r[0] for r in rows]

    def resolve_category_names(self, names: Iterable[str], user_id: Optional[str] = None) -> tuple[list[str], list[str]]:
        """
        Exact, case-sensitive batch lookup of category names.
        Return (matched_ids, unmatched_names).
        """
        wanted = unique_ids(names)
        if not wanted:
            return [], []
        found: dict[str, str] = {}
        for batch in chunked(wanted, self.batch_size):
            query = self.db.query(Category.id, Category.name).filter(Category.name.in_(batch))
            if user_id:
                query = query.filter(Category.user_id == user_id)
            for cat_id, name in query.all():
                found.setdefault(name, cat_id)
        matched = [found[n] for n in wanted if n in found]
        unmatched = [n for n in wanted if n not in found]
        return matched, unmatched

    # --------------------------------------------------
    # Attach
    # --------------------------------------------------

    def attach_categories(
        self,
        site_id: str,
        category_ids: Optional[Iterable[str]] = None,
        category_names: Optional[Iterable[str]] = None,
        user_id: Optional[str] = None,
    ) -> Result:
        """
        Link categories to a site. Ids are used as given; names are only
        consulted when no ids were passed. Unmatched names are dropped and
        reported, never created.
        """
        ids = unique_ids(category_ids)
        result = Result(value=[])
        if not ids and category_names:
            try:
                ids, unmatched = self.resolve_category_names(category_names, user_id=user_id)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.warning(f"Category name lookup failed for site {site_id}: {e}")
                result.warnings.append(RelationWarning("resolve_category_names", "failed", str(e)))
                return result
            if unmatched:
                logger.warning(f"Dropped unknown category names for site {site_id}: {unmatched}")
                result.warnings.append(
                    RelationWarning("resolve_category_names", "unmatched", {"names": unmatched})
                )
        inserted = self._insert_links(CATEGORY_LINKS, site_id, ids, user_id)
        result.value = inserted.value
        return result.extend(inserted)

    def attach_tags(self, site_id: str, tag_ids: Optional[Iterable[str]] = None, user_id: Optional[str] = None) -> Result:
        return self._insert_links(TAG_LINKS, site_id, unique_ids(tag_ids), user_id)

    def _insert_links(self, kind: _LinkKind, site_id: str, ids: list[str], user_id: Optional[str]) -> Result:
        """
        Insert the missing (site, id) pairs for `ids`.
        Pairs already present are skipped, so a retry never duplicates rows.
        """
        stage = f"attach_{kind.name}"
        result = Result(value=[])
        if not ids:
            return result

        try:
            known = self._existing_targets(kind, ids, user_id)
            unknown = [i for i in ids if i not in known]
            if unknown:
                result.warnings.append(RelationWarning(stage, "unknown_ids", {"ids": unknown}))

            present = set(self.current_ids(kind, site_id))
            to_add = [i for i in ids if i in known and i not in present]
            for batch in chunked(to_add, self.batch_size):
                self.db.add_all([kind.make(site_id, other_id) for other_id in batch])
                self.db.commit()
                result.value.extend(batch)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Failed to attach {kind.name} to site {site_id}: {e}")
            result.warnings.append(RelationWarning(stage, "failed", str(e)))
        return result

    def _existing_targets(self, kind: _LinkKind, ids: list[str], user_id: Optional[str]) -> set[str]:
        found: set[str] = set()
        for batch in chunked(ids, self.batch_size):
            query = self.db.query(kind.target_model.id).filter(kind.target_model.id.in_(batch))
            if user_id:
                query = query.filter(kind.target_model.user_id == user_id)
            found.update(r[0] for r in query.all())
        return found

    # --------------------------------------------------
    # Reconcile (update path)
    # --------------------------------------------------

    def reconcile_membership(
        self,
        site_id: str,
        desired_category_ids: Optional[Iterable[str]] = None,
        desired_tag_ids: Optional[Iterable[str]] = None,
        user_id: Optional[str] = None,
    ) -> Result:
        """
        Converge membership to exactly the desired id sets.
        None leaves that side untouched. Removals run before additions.
        """
        result = Result(value={})
        for kind, desired in ((CATEGORY_LINKS, desired_category_ids), (TAG_LINKS, desired_tag_ids)):
            if desired is None:
                continue
            result.extend(self._reconcile(kind, site_id, unique_ids(desired), user_id, result.value))
        return result

    def _reconcile(self, kind: _LinkKind, site_id: str, desired: list[str], user_id, summary: dict) -> Result:
        result = Result()
        try:
            current = self.current_ids(kind, site_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            result.warnings.append(RelationWarning(f"load_{kind.name}", "failed", str(e)))
            return result

        desired_set = set(desired)
        current_set = set(current)
        to_remove = [i for i in current if i not in desired_set]
        removed = self._delete_links(kind, site_id, to_remove, result)
        added = self._insert_links(kind, site_id, [i for i in desired if i not in current_set], user_id)
        result.extend(added)
        summary[kind.name] = {"added": added.value, "removed": removed}
        return result

    def _delete_links(self, kind: _LinkKind, site_id: str, ids: list[str], result: Result) -> list[str]:
        removed: list[str] = []
        for batch in chunked(ids, self.batch_size):
            try:
                (
                    self.db.query(kind.join_model)
                    .filter(kind.join_model.site_id == site_id, kind.fk.in_(batch))
                    .delete(synchronize_session="fetch")
                )
                self.db.commit()
                removed.extend(batch)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.warning(f"Failed to detach {kind.name} from site {site_id}: {e}")
                result.warnings.append(RelationWarning(f"detach_{kind.name}", "failed", str(e)))
        return removed

    def detach_all(self, site_id: str):
        """Remove every join row of a site (used before the site row itself is deleted)."""
        for kind in (CATEGORY_LINKS, TAG_LINKS):
            self.db.query(kind.join_model).filter(kind.join_model.site_id == site_id).delete(
                synchronize_session="fetch"
            )
