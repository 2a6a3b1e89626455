"""
Site organizer core: sites grouped by categories and tags.

Relation attach/resolve, filtered list queries, bulk delete with undo and
multi-format import, served through a FastAPI app (site_organizer.main).
"""
