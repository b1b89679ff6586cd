"""
Heartbeat - cooperative periodic task loop.

Used for the opt-in expiry sweep over queued actions. Nothing in the
governor depends on it: expiry is also applied lazily on every read.
"""

import threading
import time
from typing import Callable, Dict

from .config import get_heartbeat_interval, is_heartbeat_enabled, validate_heartbeat_config
from ..util.logging import logger


tasks: Dict[str, Dict] = {}  # task_name -> {func, interval, last_run}
running = False
shutdown_event = None
_thread = None


def register_task(name: str, interval_sec: int, func: Callable):
    """
    Register a task to be executed periodically.

    Args:
        name: Unique task identifier
        interval_sec: How often to run this task in seconds
        func: Function to call (should be fast and not block)
    """
    if not callable(func):
        raise ValueError(f"Task function must be callable: {func}")

    if interval_sec < 1:
        raise ValueError(f"Interval must be >= 1 second: {interval_sec}")

    tasks[name] = {
        "func": func,
        "interval": interval_sec,
        "last_run": None
    }

    logger.log_operation("heartbeat.register", "success", {"task": name, "interval_sec": interval_sec})


def unregister_task(name: str):
    """Remove a task from the registry."""
    if name in tasks:
        del tasks[name]
        logger.log_operation("heartbeat.unregister", "success", {"task": name})


def list_tasks():
    return list(tasks.keys())


def register_expiry_sweep(governor, interval_sec: int = None):
    """Register the periodic expiry of stale queued actions. Skipped when expiry is off."""
    if not governor.expiry_enabled:
        logger.info("Expiry disabled (ACTION_EXPIRY_GRACE_SEC=0); sweep not registered")
        return False

    def sweep():
        expired = governor.expire_stale()
        return {"expired": len(expired)}

    register_task("expiry_sweep", interval_sec or get_heartbeat_interval(), sweep)
    return True


def start():
    """
    Run the heartbeat loop in the calling thread until stopped.

    Checks task intervals on each cycle and runs tasks when due.
    Uses time.monotonic() for timing.
    """
    global running, shutdown_event

    if not is_heartbeat_enabled():
        logger.info("Heartbeat disabled (HEARTBEAT_ENABLED=false). Skipping start.")
        return

    if running:
        raise RuntimeError("Heartbeat already running")

    issues = validate_heartbeat_config()
    if issues:
        raise ValueError(f"Heartbeat configuration invalid: {issues}")

    running = True
    shutdown_event = threading.Event()

    logger.log_operation("heartbeat.start", "success", {"tasks": list(tasks.keys())})

    try:
        while running and not shutdown_event.is_set():
            for name, task_info in list(tasks.items()):
                if should_run_task(name, task_info):
                    try:
                        run_task(name, task_info)
                    except RuntimeError as e:
                        # Error isolation - log and keep looping
                        logger.error(f"Heartbeat task '{name}' failed: {e}")

            shutdown_event.wait(0.1)
    finally:
        running = False
        logger.log_operation("heartbeat.stop", "success")


def start_background() -> threading.Thread:
    """Start the loop on a daemon thread (used by the API on startup)."""
    global _thread

    _thread = threading.Thread(target=start, name="heartbeat", daemon=True)
    _thread.start()
    return _thread


def stop():
    """Stop the heartbeat loop gracefully."""
    global running, _thread

    if not running:
        return

    running = False
    if shutdown_event:
        shutdown_event.set()

    if _thread is not None and _thread is not threading.current_thread():
        _thread.join(timeout=2.0)
    _thread = None


def should_run_task(name: str, task_info: Dict) -> bool:
    """Check if a task should run this cycle."""
    if task_info["last_run"] is None:
        return True  # Run immediately if never run

    elapsed = time.monotonic() - task_info["last_run"]
    return elapsed >= task_info["interval"]


def run_task(name: str, task_info: Dict):
    """Execute a task and record timing."""
    start_time = time.monotonic()

    try:
        result = task_info["func"]()
    except Exception as e:
        end_time = time.monotonic()
        task_info["last_run"] = end_time
        logger.log_heartbeat_task(name, start_time, end_time, "failed", {"error": str(e)})
        raise RuntimeError(f"Task '{name}' failed after {end_time - start_time:.2f}s: {e}")

    end_time = time.monotonic()
    task_info["last_run"] = end_time
    logger.log_heartbeat_task(name, start_time, end_time, "success", result if isinstance(result, dict) else None)


def reset_task(name: str):
    """Reset a task's last_run time to force immediate execution."""
    if name in tasks:
        tasks[name]["last_run"] = None


def get_status():
    """Return current heartbeat status for monitoring."""
    if not is_heartbeat_enabled():
        return {"status": "disabled", "reason": "HEARTBEAT_ENABLED=false"}

    return {
        "status": "running" if running else "stopped",
        "tasks": {
            name: {
                "interval_sec": info["interval"],
                "last_run": info["last_run"],
                "next_run": info["last_run"] + info["interval"] if info["last_run"] else None
            }
            for name, info in tasks.items()
        },
    }
