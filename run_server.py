#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Direct app startup script. Reads .env before the app (and its config) is imported.
"""
import logging
import os
import sys

from dotenv import load_dotenv
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("run_server")

logger.info(f"USE_POSTGRES: {os.getenv('USE_POSTGRES')}")
logger.info(f"Database URL available: {bool(os.getenv('DATABASE_URL'))}")

try:
    from site_organizer.main import app  # noqa: F401
    from site_organizer.config.postgres import APP_HOST, APP_PORT
except Exception as e:
    logger.error(f"App import failed: {e}")
    sys.exit(1)

import uvicorn

uvicorn.run(
    "site_organizer.main:app",
    host=APP_HOST,
    port=int(os.getenv("PORT", APP_PORT)),
    log_level="info",
)
