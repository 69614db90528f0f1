"""
Configuration -- Android Debloater

Environment-driven settings shared by the executor, registry, package list
cache and orchestrator.  Every value is read once at import time; components
take these as constructor defaults so a caller (or a test) can override them
per instance.

Environment:
    ADB_PATH                    adb binary (default: "adb" on PATH)
    DEBLOAT_CACHE_DIR           cache + log directory
    DEBLOAT_LIST_URL            remote package list
    DEBLOAT_RELEASES_URL        release feed used by the self-update check
    DEBLOAT_COMMAND_TIMEOUT     per-command timeout, seconds
    DEBLOAT_FETCH_TIMEOUT       package list download timeout, seconds
    DEBLOAT_MAX_LIST_AGE_DAYS   package list freshness window, days
    DEBLOAT_MAX_PARALLEL        devices processed concurrently
    DEBLOAT_USER_ID             Android user the package manager acts on
    DEBLOAT_LOG_LEVEL           DEBUG / INFO / WARNING / ERROR
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Optional

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

CACHE_DIR = Path(
    os.getenv("DEBLOAT_CACHE_DIR", str(Path.home() / ".cache" / "android-debloater"))
)
LIST_FNAME = "uad_lists.json"
LIST_CACHE_FILE = CACHE_DIR / LIST_FNAME
LOG_FILE = CACHE_DIR / "debloater.log"

# ---------------------------------------------------------------------------
# Transport & remote sources
# ---------------------------------------------------------------------------

ADB_PATH = os.getenv("ADB_PATH", "adb")

LIST_SOURCE_URL = os.getenv(
    "DEBLOAT_LIST_URL",
    "https://raw.githubusercontent.com/Universal-Debloater-Alliance/"
    "universal-android-debloater-next-generation/main/resources/assets/uad_lists.json",
)

RELEASES_URL = os.getenv(
    "DEBLOAT_RELEASES_URL",
    "https://api.github.com/repos/Universal-Debloater-Alliance/"
    "universal-android-debloater-next-generation/releases/latest",
)

# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

COMMAND_TIMEOUT = _env_float("DEBLOAT_COMMAND_TIMEOUT", 30.0)
FETCH_TIMEOUT = _env_float("DEBLOAT_FETCH_TIMEOUT", 30.0)
DEVICES_TIMEOUT = 15.0
MAX_LIST_AGE_DAYS = _env_int("DEBLOAT_MAX_LIST_AGE_DAYS", 7)
MAX_PARALLEL_DEVICES = _env_int("DEBLOAT_MAX_PARALLEL", 8)
USER_ID = _env_int("DEBLOAT_USER_ID", 0)

LOG_LEVEL = os.getenv("DEBLOAT_LOG_LEVEL", "INFO").upper()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FORMAT = "[%(asctime)s] %(name)s %(levelname)s: %(message)s"
LOG_DATEFMT = "%H:%M:%S"

# Component loggers configured by setup_logging()
LOGGER_NAMES = (
    "executor",
    "registry",
    "package_list",
    "actions",
    "orchestrator",
    "update",
    "debloater",
)


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[Path] = LOG_FILE,
) -> None:
    """
    Attach a console handler and (optionally) a rotating file handler to
    every component logger.

    Safe to call more than once: loggers that already carry handlers are
    left alone.
    """
    resolved = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    file_handler: Optional[logging.Handler] = None
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=1_000_000, backupCount=3, encoding="utf-8",
            )
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s %(name)s %(levelname)s: %(message)s")
            )
        except OSError as exc:
            logging.getLogger("debloater").warning(
                "Cannot open log file %s: %s", log_file, exc,
            )

    for name in LOGGER_NAMES:
        log = logging.getLogger(name)
        log.setLevel(resolved)
        if log.handlers:
            continue
        stream = logging.StreamHandler()
        stream.setFormatter(formatter)
        log.addHandler(stream)
        if file_handler is not None:
            log.addHandler(file_handler)
