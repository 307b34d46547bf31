#!/usr/bin/env python3
"""
Shared utilities for the relay server
- Logging (console + daily rotating file)
"""

import os
import sys
import logging
from logging.handlers import RotatingFileHandler
from datetime import datetime

from fastapi.responses import JSONResponse

LOGGER_NAME = "calling_parents"

# ============================================================================
#                              LOGGING
# ============================================================================

_logger = None

def setup_logging(name=LOGGER_NAME, log_dir="logs", verbose=True):
    """
    Setup logging to console and (optionally) file.
    Log file: calling_parents_YYYY-MM-DD.log inside log_dir.
    Pass log_dir=None to log to the console only.
    """
    global _logger

    if _logger is not None:
        return _logger

    _logger = logging.getLogger(name)
    _logger.setLevel(logging.DEBUG)

    # Prevent duplicate handlers
    if _logger.handlers:
        return _logger

    fmt = logging.Formatter(
        '[%(asctime)s] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Console handler (INFO and above, WARNING in background mode)
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO if verbose else logging.WARNING)
    console.setFormatter(fmt)
    _logger.addHandler(console)

    if log_dir is None:
        return _logger

    # File handler (DEBUG and above)
    try:
        os.makedirs(log_dir, exist_ok=True)
        log_file = os.path.join(log_dir, f"calling_parents_{datetime.now().strftime('%Y-%m-%d')}.log")
        file_handler = RotatingFileHandler(log_file, maxBytes=10_000_000, backupCount=3, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(fmt)
        _logger.addHandler(file_handler)
    except OSError as e:
        print(f"Warning: Could not create log file: {e}")

    return _logger

def get_logger():
    """Get the logger instance (bare named logger until setup_logging runs)"""
    if _logger is None:
        return logging.getLogger(LOGGER_NAME)
    return _logger

def log_info(msg): get_logger().info(msg)
def log_debug(msg): get_logger().debug(msg)
def log_warning(msg): get_logger().warning(msg)
def log_error(msg): get_logger().error(msg)

# ============================================================================
#                              REQUEST HELPERS
# ============================================================================

async def read_name(request):
    """Trimmed "name" from a JSON body. Returns (name, None) or (None, 400 response)."""
    try:
        body = await request.json()
    except ValueError:
        return None, JSONResponse({"error": "invalid JSON body"}, status_code=400)
    raw = body.get("name") if isinstance(body, dict) else None
    name = raw.strip() if isinstance(raw, str) else ""
    if not name:
        return None, JSONResponse({"error": "name must not be empty"}, status_code=400)
    return name, None
