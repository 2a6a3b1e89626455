"""
Request bodies.

Required fields are declared Optional on purpose: the service layer checks
them and answers with the regular {success: false, error} envelope and a 400,
instead of FastAPI's 422 validation payload.
"""
from typing import Any, List, Optional

from pydantic import BaseModel


class SiteCreate(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    pricing: Optional[str] = None
    user_id: Optional[str] = None
    category_ids: Optional[List[str]] = None
    tag_ids: Optional[List[str]] = None
    categories: Optional[List[str]] = None  # legacy: category names
    description: Optional[str] = None
    use_case: Optional[str] = None
    is_favorite: Optional[bool] = None
    is_needed: Optional[bool] = None
    is_pinned: Optional[bool] = None
    import_source: Optional[str] = None


class SiteUpdate(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    pricing: Optional[str] = None
    description: Optional[str] = None
    use_case: Optional[str] = None
    is_favorite: Optional[bool] = None
    is_needed: Optional[bool] = None
    is_pinned: Optional[bool] = None
    category_ids: Optional[List[str]] = None
    tag_ids: Optional[List[str]] = None


class RelationsRetry(BaseModel):
    category_ids: Optional[List[str]] = None
    tag_ids: Optional[List[str]] = None


class TermCreate(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    color: Optional[str] = None
    user_id: Optional[str] = None
    is_needed: Optional[bool] = None


class TermUpdate(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None
    is_needed: Optional[bool] = None


class BulkDeleteRequest(BaseModel):
    type: Optional[str] = None
    ids: Optional[Any] = None
    user_id: Optional[str] = None
    view: str = "default"


class UndoRequest(BaseModel):
    user_id: Optional[str] = None
    view: str = "default"


class RestoreRequest(BaseModel):
    user_id: Optional[str] = None
    sites: List[dict] = []
    categories: List[dict] = []
    tags: List[dict] = []
    site_categories: List[dict] = []
    site_tags: List[dict] = []


class LinkCheckRequest(BaseModel):
    user_id: Optional[str] = None
    sites: Optional[List[dict]] = None
