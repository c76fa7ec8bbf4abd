"""
Cooperative periodic task scheduler.
Runs the webhook queue flush when batching is enabled.
"""

import threading
import time
from typing import Callable, Dict, List, Optional

from ..util.logging import logger


tasks: Dict[str, Dict] = {}  # task_name -> {func, interval, last_run}
running = False
shutdown_event: Optional[threading.Event] = None
_thread: Optional[threading.Thread] = None


def register_task(name: str, interval_sec: float, func: Callable):
    """
    Register a task to be executed periodically.

    Args:
        name: Unique task identifier
        interval_sec: How often to run this task in seconds
        func: Function to call (should be fast and not block)
    """
    if not callable(func):
        raise ValueError(f"Task function must be callable: {func}")

    if interval_sec <= 0:
        raise ValueError(f"Interval must be > 0 seconds: {interval_sec}")

    tasks[name] = {
        "func": func,
        "interval": interval_sec,
        "last_run": None
    }

    logger.info(f"Registered heartbeat task '{name}' (every {interval_sec}s)")


def unregister_task(name: str):
    """Remove a task from the registry."""
    if name in tasks:
        del tasks[name]
        logger.info(f"Unregistered heartbeat task '{name}'")


def list_tasks() -> List[str]:
    """Return list of registered task names."""
    return list(tasks.keys())


def should_run_task(name: str, task_info: Dict, now: Optional[float] = None) -> bool:
    """Check if a task should run this cycle."""
    if task_info["last_run"] is None:
        return True  # Run immediately if never run

    now = time.monotonic() if now is None else now
    return now - task_info["last_run"] >= task_info["interval"]


def run_task(name: str, task_info: Dict):
    """Execute a task and record timing."""
    start_time = time.monotonic()
    try:
        task_info["func"]()
    except Exception as e:
        end_time = time.monotonic()
        task_info["last_run"] = end_time
        logger.log_heartbeat_task(name, start_time, end_time, "failed", {"error": str(e)[:100]})
        raise RuntimeError(f"Task '{name}' failed after {end_time - start_time:.2f}s: {e}") from e

    end_time = time.monotonic()
    task_info["last_run"] = end_time
    logger.log_heartbeat_task(name, start_time, end_time)


def run_pending() -> List[str]:
    """Run one scheduling cycle; returns the names of tasks that ran."""
    ran = []
    for name, task_info in list(tasks.items()):
        if should_run_task(name, task_info):
            ran.append(name)
            try:
                run_task(name, task_info)
            except RuntimeError as e:
                # Error isolation - one failing task does not stop the loop
                logger.error(str(e))
    return ran


def _loop(tick_sec: float):
    global running
    try:
        while running and not shutdown_event.is_set():
            run_pending()
            shutdown_event.wait(tick_sec)
    finally:
        running = False
        logger.info("Heartbeat loop stopped")


def start(tick_sec: float = 0.5) -> threading.Thread:
    """Start the heartbeat loop in a daemon thread."""
    global running, shutdown_event, _thread

    if running:
        raise RuntimeError("Heartbeat already running")

    running = True
    shutdown_event = threading.Event()
    _thread = threading.Thread(target=_loop, args=(tick_sec,), name="sheetsync-heartbeat", daemon=True)
    _thread.start()

    logger.info(f"Starting heartbeat loop with tasks: {list_tasks()}")
    return _thread


def stop(timeout: float = 2.0):
    """Stop the heartbeat loop gracefully."""
    global running, _thread

    if not running:
        return

    running = False
    if shutdown_event:
        shutdown_event.set()
    if _thread is not None:
        _thread.join(timeout)
        _thread = None


def get_status() -> Dict:
    """Return current heartbeat status for monitoring."""
    return {
        "status": "running" if running else "stopped",
        "tasks": {
            name: {
                "interval_sec": info["interval"],
                "last_run": info["last_run"],
                "next_run": info["last_run"] + info["interval"] if info["last_run"] else None
            }
            for name, info in tasks.items()
        }
    }
