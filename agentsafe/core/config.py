"""
Process configuration for the action governor.
All values are read from the environment (and .env) once, at import time.
"""

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _csv(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


# Veto window and expiry
VETO_WINDOW_SEC = int(os.getenv("VETO_WINDOW_SEC", "3600"))
ACTION_EXPIRY_GRACE_SEC = int(os.getenv("ACTION_EXPIRY_GRACE_SEC", "0"))  # 0 = never expire

# Bounded event/alert store
MAX_EVENTS = int(os.getenv("STREAMS_MAX_EVENTS", "100"))
MAX_ALERTS = int(os.getenv("STREAMS_MAX_ALERTS", "50"))
LIQUIDATION_CRITICAL_HF = float(os.getenv("LIQUIDATION_CRITICAL_HF", "1.2"))
LIQUIDATION_WARNING_HF = float(os.getenv("LIQUIDATION_WARNING_HF", "1.5"))
PER_TX_CAP_WEI = int(os.getenv("STREAMS_PER_TX_CAP_WEI", str(10 ** 18)))
DAILY_CAP_WEI = int(os.getenv("STREAMS_DAILY_CAP_WEI", str(5 * 10 ** 18)))  # advisory only

# Budget ledger
TREASURY_USD = float(os.getenv("TREASURY_USD", "500"))
PER_ACTION_CAP_USD = float(os.getenv("PER_ACTION_CAP_USD", "50"))
DAILY_BURN_USD = float(os.getenv("DAILY_BURN_USD", "200"))
MIN_RUNWAY_DAYS = float(os.getenv("MIN_RUNWAY_DAYS", "3"))
DEFAULT_ACTION_COST_USD = float(os.getenv("DEFAULT_ACTION_COST_USD", "10"))

# Server-side cost per action kind; a payload cost_usd can only raise it
ACTION_COST_USD = {
    kind: float(os.getenv(f"{kind}_COST_USD", str(DEFAULT_ACTION_COST_USD)))
    for kind in ("VOTE", "APP_DEPLOY", "LIQUIDATION_PROTECT", "APPROVAL_REVOKE")
}

# Recent pipeline runs kept for queue lookups
MAX_CACHED_RUNS = int(os.getenv("MAX_CACHED_RUNS", "256"))

# APP_DEPLOY novelty check
NOVELTY_SIMILARITY_THRESHOLD = float(os.getenv("NOVELTY_SIMILARITY_THRESHOLD", "0.85"))
MAX_RECENT_IDEAS = int(os.getenv("MAX_RECENT_IDEAS", "50"))

# Safety pipeline policy
POLICY_BLOCK_SCORE = int(os.getenv("POLICY_BLOCK_SCORE", "50"))
CONTRACT_ALLOWLIST = _csv("CONTRACT_ALLOWLIST")
CONTRACT_DENYLIST = _csv("CONTRACT_DENYLIST")

# Action store
ACTION_STORE = os.getenv("ACTION_STORE", "memory")  # memory|sqlite
DB_PATH = os.getenv("DB_PATH", "./data/governor.db")

# Executor
EXECUTOR_MODE = os.getenv("EXECUTOR_MODE", "simulated")  # simulated|http
EXECUTOR_URL = os.getenv("EXECUTOR_URL")
EXECUTOR_TIMEOUT_SEC = float(os.getenv("EXECUTOR_TIMEOUT_SEC", "30"))

# Heartbeat (optional expiry sweep)
HEARTBEAT_ENABLED = os.getenv("HEARTBEAT_ENABLED", "false").lower() == "true"
HEARTBEAT_INTERVAL_SEC = int(os.getenv("HEARTBEAT_INTERVAL_SEC", "60"))

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory():
    """Ensure the database directory exists."""
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def get_action_store():
    """Get configured action store implementation."""
    if ACTION_STORE == "sqlite":
        from .store import SqliteActionStore
        return SqliteActionStore(DB_PATH)
    else:
        from .store import InMemoryActionStore
        return InMemoryActionStore()


def get_executor():
    """Get configured executor implementation."""
    if EXECUTOR_MODE == "http":
        from .executor import HttpExecutor
        return HttpExecutor(EXECUTOR_URL, timeout_sec=EXECUTOR_TIMEOUT_SEC)
    else:
        from .executor import SimulatedExecutor
        return SimulatedExecutor()


def is_heartbeat_enabled():
    """Check if the heartbeat sweep is enabled."""
    return HEARTBEAT_ENABLED


def get_heartbeat_interval():
    """Get heartbeat interval in seconds."""
    return HEARTBEAT_INTERVAL_SEC


def validate_heartbeat_config():
    """Validate heartbeat-related configuration."""
    issues = []
    if HEARTBEAT_INTERVAL_SEC < 1:
        issues.append("HEARTBEAT_INTERVAL_SEC must be >= 1")
    return issues


def is_expiry_enabled():
    """Check if queued actions expire after the grace period."""
    return ACTION_EXPIRY_GRACE_SEC > 0


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if VETO_WINDOW_SEC < 0:
        issues.append("VETO_WINDOW_SEC must be >= 0")

    if ACTION_EXPIRY_GRACE_SEC < 0:
        issues.append("ACTION_EXPIRY_GRACE_SEC must be >= 0")

    if MAX_EVENTS < 1 or MAX_ALERTS < 1:
        issues.append("STREAMS_MAX_EVENTS and STREAMS_MAX_ALERTS must be >= 1")

    if LIQUIDATION_CRITICAL_HF > LIQUIDATION_WARNING_HF:
        issues.append("LIQUIDATION_CRITICAL_HF must be <= LIQUIDATION_WARNING_HF")

    if PER_ACTION_CAP_USD < 0 or TREASURY_USD < 0 or DAILY_BURN_USD < 0:
        issues.append("Budget amounts must be non-negative")

    if any(cost <= 0 for cost in ACTION_COST_USD.values()):
        issues.append("Action costs must be > 0")

    if MAX_CACHED_RUNS < 1 or MAX_RECENT_IDEAS < 1:
        issues.append("MAX_CACHED_RUNS and MAX_RECENT_IDEAS must be >= 1")

    if not 0 < NOVELTY_SIMILARITY_THRESHOLD <= 1:
        issues.append("NOVELTY_SIMILARITY_THRESHOLD must be in (0, 1]")

    if ACTION_STORE not in ["memory", "sqlite"]:
        issues.append(f"Invalid ACTION_STORE: {ACTION_STORE}")

    if EXECUTOR_MODE not in ["simulated", "http"]:
        issues.append(f"Invalid EXECUTOR_MODE: {EXECUTOR_MODE}")

    if EXECUTOR_MODE == "http" and not EXECUTOR_URL:
        issues.append("EXECUTOR_MODE=http requires EXECUTOR_URL")

    if EXECUTOR_TIMEOUT_SEC <= 0:
        issues.append("EXECUTOR_TIMEOUT_SEC must be > 0")

    if HEARTBEAT_ENABLED and HEARTBEAT_INTERVAL_SEC < 1:
        issues.append("HEARTBEAT_INTERVAL_SEC must be >= 1")

    return issues
