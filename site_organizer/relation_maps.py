"""
Pure lookup-table builders over join rows and entity records.

Nothing here touches the database: callers hand in plain (site_id, other_id)
pairs and record dicts ({"id", "name", "color", ...}) and get dicts back.
"""
from __future__ import annotations

from typing import Iterable


def build_id_map(records: Iterable[dict]) -> dict[str, dict]:
    return {r["id"]: r for r in records if r.get("id") is not None}


def build_name_map(records: Iterable[dict], fold_case: bool = False) -> dict[str, dict]:
    """
    name -> record. The first record wins when two share a name.
    fold_case=True keys by lower-cased, stripped name (import matching).
    """
    out: dict[str, dict] = {}
    for r in records:
        name = r.get("name")
        if not name:
            continue
        key = name.strip().lower() if fold_case else name
        out.setdefault(key, r)
    return out


def build_link_id_map(links: Iterable[tuple[str, str]]) -> dict[str, list[str]]:
    """site_id -> [other_id, ...] in first-seen order, duplicates dropped."""
    out: dict[str, list[str]] = {}
    seen: set[tuple[str, str]] = set()
    for site_id, other_id in links:
        if (site_id, other_id) in seen:
            continue
        seen.add((site_id, other_id))
        out.setdefault(site_id, []).append(other_id)
    return out


def group_links(links: Iterable[tuple[str, str]], records_by_id: dict[str, dict]) -> dict[str, list[dict]]:
    """
    site_id -> [{id, name, color}, ...].
    Links whose target record is unknown are skipped.
    """
    out: dict[str, list[dict]] = {}
    for site_id, ids in build_link_id_map(links).items():
        resolved = [_relation_object(records_by_id[i]) for i in ids if i in records_by_id]
        out[site_id] = resolved
    return out


def build_site_categories_map(links, categories_by_id):
    return group_links(links, categories_by_id)


def build_site_tags_map(links, tags_by_id):
    return group_links(links, tags_by_id)


def resolve_names(names: Iterable[str], name_map: dict[str, dict]) -> list[dict]:
    """
    Resolve legacy name strings through a name map.
    Unknown names come back as a bare {"name": ...} stub, never dropped.
    """
    out = []
    for name in names:
        record = name_map.get(name)
        if record is not None:
            out.append(_relation_object(record))
        else:
            out.append({"name": name})
    return out


def _relation_object(record: dict) -> dict:
    return {"id": record.get("id"), "name": record.get("name"), "color": record.get("color")}
