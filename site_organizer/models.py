"""
Site / category / tag catalog.

Membership lives only in the two join tables (site_categories, site_tags);
entities hold no references to each other. Lookups between them are rebuilt
per read by site_organizer.relation_maps.

legacy_categories / legacy_tags keep the plain name strings written by the
old schema, before join tables existed. They are read as a fallback only.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)

from .database import Base

PRICING_VALUES = ("fully_free", "freemium", "free_trial", "paid")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # Naive UTC, what SQLite hands back on read
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else value


class Site(Base):
    __tablename__ = "sites"
    __table_args__ = (
        UniqueConstraint("user_id", "url", name="uq_sites_user_url"),
        CheckConstraint(
            "pricing IS NULL OR pricing IN ('fully_free', 'freemium', 'free_trial', 'paid')",
            name="ck_sites_pricing",
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String, nullable=False)
    url = Column(String, nullable=False, index=True)
    # NULL only for imported rows whose pricing text was not recognized
    pricing = Column(String(16), nullable=True)
    description = Column(Text, nullable=True)
    use_case = Column(Text, nullable=True)
    is_favorite = Column(Boolean, nullable=False, default=False)
    is_needed = Column(Boolean, nullable=True)
    is_pinned = Column(Boolean, nullable=False, default=False)
    pin_position = Column(Integer, nullable=True)
    import_source = Column(String, nullable=True, index=True)

    legacy_categories = Column(JSON, nullable=True)  # list[str]
    legacy_tags = Column(JSON, nullable=True)        # list[str]

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        """Core columns only; relation arrays are added by the list shapers."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "url": self.url,
            "pricing": self.pricing,
            "description": self.description,
            "use_case": self.use_case,
            "is_favorite": bool(self.is_favorite),
            "is_needed": self.is_needed,
            "is_pinned": bool(self.is_pinned),
            "pin_position": self.pin_position,
            "import_source": self.import_source,
            "legacy_categories": as_name_list(self.legacy_categories),
            "legacy_tags": as_name_list(self.legacy_tags),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Category(Base):
    __tablename__ = "categories"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String, nullable=False)
    color = Column(String(16), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "color": self.color,
            "created_at": _iso(self.created_at),
        }


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_tags_user_name"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String, nullable=False)
    color = Column(String(16), nullable=True)
    is_needed = Column(Boolean, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "color": self.color,
            "is_needed": self.is_needed,
            "created_at": _iso(self.created_at),
        }


class SiteCategory(Base):
    """Join record. The composite key keeps each (site, category) pair unique."""
    __tablename__ = "site_categories"

    site_id = Column(String(36), ForeignKey("sites.id"), primary_key=True)
    category_id = Column(String(36), ForeignKey("categories.id"), primary_key=True, index=True)

    def to_dict(self) -> dict:
        return {"site_id": self.site_id, "category_id": self.category_id}


class SiteTag(Base):
    """Join record. The composite key keeps each (site, tag) pair unique."""
    __tablename__ = "site_tags"

    site_id = Column(String(36), ForeignKey("sites.id"), primary_key=True)
    tag_id = Column(String(36), ForeignKey("tags.id"), primary_key=True, index=True)

    def to_dict(self) -> dict:
        return {"site_id": self.site_id, "tag_id": self.tag_id}


def as_name_list(value) -> list:
    """
    Coerce a legacy name column to a list of strings.
    Old rows hold a JSON list, a comma-joined string or nothing.
    """
    if not value:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return []
