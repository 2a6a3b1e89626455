"""
Runtime knobs for the organizer core.

Every value can be overridden through the environment (see run_server.py,
which loads a local .env file before the app is imported).
"""

import os

# ==================================================
# STORAGE
# ==================================================

SQLITE_URL: str = os.getenv("SQLITE_URL", "sqlite:///./sites.db")

# Rows per IN (...) clause for batched reads, deletes and restores
RELATION_BATCH_SIZE: int = int(os.getenv("RELATION_BATCH_SIZE", "100"))

# ==================================================
# LIST QUERIES
# ==================================================

DEFAULT_PAGE_LIMIT: int = int(os.getenv("DEFAULT_PAGE_LIMIT", "100"))
MAX_PAGE_LIMIT: int = int(os.getenv("MAX_PAGE_LIMIT", "5000"))

# ==================================================
# BULK DELETE / UNDO
# ==================================================

UNDO_WINDOW_SECONDS: float = float(os.getenv("UNDO_WINDOW_SECONDS", "8"))

# ==================================================
# IMPORT
# ==================================================

IMPORT_CHUNK_SIZE: int = int(os.getenv("IMPORT_CHUNK_SIZE", "200"))
IMPORT_LOOKUP_BATCH: int = int(os.getenv("IMPORT_LOOKUP_BATCH", "50"))
DEFAULT_CATEGORY_COLOR: str = os.getenv("DEFAULT_CATEGORY_COLOR", "#6CBBFB")
DEFAULT_TAG_COLOR: str = os.getenv("DEFAULT_TAG_COLOR", "#D98BAC")

# ==================================================
# LINK CHECK
# ==================================================

LINK_CHECK_TIMEOUT: float = float(os.getenv("LINK_CHECK_TIMEOUT", "7"))
LINK_CHECK_RETRY_TIMEOUT: float = float(os.getenv("LINK_CHECK_RETRY_TIMEOUT", "15"))
LINK_CHECK_BATCH_SIZE: int = int(os.getenv("LINK_CHECK_BATCH_SIZE", "8"))
