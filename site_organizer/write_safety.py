"""
Write safety & abuse protection.

Simple mechanisms to keep bulk writes from flooding the database:
  - Per-IP rate limiting for import and bulk delete
  - Import upload size/row limits and extension allow-list

Uses in-memory state (no external deps, no background workers).
"""

import logging
import time
from collections import defaultdict
from typing import Optional

logger = logging.getLogger(__name__)

# ==================================================
# CONFIG
# ==================================================

# Rate limiting: max requests per IP per window
RATE_LIMIT_WINDOW = 60  # seconds
MAX_IMPORTS_PER_IP = 5  # POST /import per minute
MAX_BULK_DELETES_PER_IP = 30  # POST /bulk-delete per minute

# Import upload limits
MAX_IMPORT_SIZE_BYTES = 10 * 1024 * 1024  # 10 MB
MAX_IMPORT_ROWS = 5000  # per upload
ALLOWED_IMPORT_EXTENSIONS = (".json", ".csv", ".html", ".htm")

# ==================================================
# RATE LIMITER (in-memory)
# ==================================================


class RateLimiter:
    """Simple in-memory rate limiter per IP."""

    def __init__(self, max_requests: int, window_seconds: int):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: dict[str, list[float]] = defaultdict(list)

    def is_allowed(self, ip: str) -> bool:
        """Return True if request is allowed, False if rate limited."""
        now = time.time()
        ips_requests = self.requests[ip]

        # Remove old timestamps outside the window
        ips_requests[:] = [t for t in ips_requests if now - t < self.window_seconds]

        if len(ips_requests) >= self.max_requests:
            logger.warning(f"Rate limit exceeded for {ip}")
            return False

        ips_requests.append(now)
        return True

    def reset(self):
        self.requests.clear()


import_limiter = RateLimiter(MAX_IMPORTS_PER_IP, RATE_LIMIT_WINDOW)
bulk_delete_limiter = RateLimiter(MAX_BULK_DELETES_PER_IP, RATE_LIMIT_WINDOW)


# ==================================================
# VALIDATION
# ==================================================


def validate_import_file(filename: Optional[str], file_size: int) -> tuple[bool, Optional[str]]:
    """
    Validate an import upload before parsing: extension and size.
    Return (is_valid, error_message).
    """
    name = (filename or "").lower()
    if not name.endswith(ALLOWED_IMPORT_EXTENSIONS):
        error = f"Unsupported file type: {filename} (allowed: {', '.join(ALLOWED_IMPORT_EXTENSIONS)})"
        logger.warning(error)
        return False, error

    if file_size > MAX_IMPORT_SIZE_BYTES:
        error = f"Import too large: {file_size} bytes (max {MAX_IMPORT_SIZE_BYTES})"
        logger.warning(error)
        return False, error

    return True, None


def validate_import_rows(row_count: int) -> tuple[bool, Optional[str]]:
    if row_count > MAX_IMPORT_ROWS:
        error = f"Import has too many rows: {row_count} (max {MAX_IMPORT_ROWS})"
        logger.warning(error)
        return False, error
    return True, None


# ==================================================
# IP EXTRACTION
# ==================================================


def get_client_ip(request) -> str:
    """
    Extract client IP from request.
    Handles X-Forwarded-For and direct connections.
    """
    # X-Forwarded-For for proxies (CDN, load balancer, etc.)
    if request.headers.get("x-forwarded-for"):
        return request.headers["x-forwarded-for"].split(",")[0].strip()

    # Direct connection
    if request.client:
        return request.client.host

    return "unknown"
