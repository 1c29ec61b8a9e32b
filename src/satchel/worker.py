"""Background worker that builds queued gallery archives."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from threading import Event, Thread
from typing import Any, Callable, Optional

from satchel.archive.orchestrator import ArchiveOrchestrator, build_worker_id
from satchel.database import SessionLocal
from satchel.services import build_orchestrator
from satchel.settings import settings

logger = logging.getLogger(__name__)

_DEFAULT_POLL_SECONDS = 5.0
_DEFAULT_IDLE_HEARTBEAT_SECONDS = 30.0

_worker_thread: Optional[Thread] = None
_worker_stop_event: Optional[Event] = None


@dataclass
class BatchResult:
    released: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    renotified: int = 0

    def as_dict(self) -> dict:
        return {
            "released": self.released,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "renotified": self.renotified,
        }


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value or "").strip().lower()
    return text in {"1", "true", "yes", "y", "on"}


def _default_orchestrator() -> ArchiveOrchestrator:
    return build_orchestrator()


def _sweep_once(orchestrator: ArchiveOrchestrator, session_factory: Callable) -> int:
    db = session_factory()
    try:
        return orchestrator.sweep(db)
    except Exception:
        db.rollback()
        logger.exception("Archive deadline sweep failed")
        return 0
    finally:
        db.close()


def _retry_notifications_once(orchestrator: ArchiveOrchestrator, session_factory: Callable) -> int:
    db = session_factory()
    try:
        return orchestrator.retry_notifications(db)
    except Exception:
        db.rollback()
        logger.exception("Archive notification retry failed")
        return 0
    finally:
        db.close()


def _process_one(orchestrator: ArchiveOrchestrator, session_factory: Callable, worker_id: str):
    db = session_factory()
    try:
        return orchestrator.process_next(db, worker_id=worker_id)
    finally:
        db.close()


def run_worker_once(
    *,
    max_jobs: int = 5,
    orchestrator: Optional[ArchiveOrchestrator] = None,
    session_factory: Callable = SessionLocal,
    worker_id: Optional[str] = None,
) -> BatchResult:
    """Sweep overdue jobs, build up to ``max_jobs`` queued archives, then retry failed notifications."""
    orchestrator = orchestrator or _default_orchestrator()
    worker_id = worker_id or build_worker_id()
    result = BatchResult(released=_sweep_once(orchestrator, session_factory))
    for _ in range(max(0, int(max_jobs))):
        outcome = _process_one(orchestrator, session_factory, worker_id)
        if outcome is None:
            break
        result.processed += 1
        if outcome.success:
            result.succeeded += 1
        else:
            result.failed += 1
    result.renotified = _retry_notifications_once(orchestrator, session_factory)
    logger.info(
        "Archive batch finished: released=%s processed=%s succeeded=%s failed=%s renotified=%s",
        result.released,
        result.processed,
        result.succeeded,
        result.failed,
        result.renotified,
    )
    return result


def run_loop(
    *,
    stop_event: Optional[Event] = None,
    once: bool = False,
    poll_seconds: float = _DEFAULT_POLL_SECONDS,
    sweep_interval_seconds: Optional[float] = None,
    orchestrator: Optional[ArchiveOrchestrator] = None,
    session_factory: Callable = SessionLocal,
) -> None:
    stop = stop_event or Event()
    orchestrator = orchestrator or _default_orchestrator()
    worker_id = str(os.getenv("SATCHEL_WORKER_ID") or build_worker_id())
    sweep_interval = float(
        sweep_interval_seconds if sweep_interval_seconds is not None else settings.archive_sweep_interval_seconds
    )
    last_sweep_at = 0.0
    last_idle_heartbeat_at = 0.0

    logger.info("Archive worker started: worker_id=%s", worker_id)

    while not stop.is_set():
        now_monotonic = time.monotonic()
        if now_monotonic - last_sweep_at >= sweep_interval:
            last_sweep_at = now_monotonic
            _sweep_once(orchestrator, session_factory)
            _retry_notifications_once(orchestrator, session_factory)

        try:
            outcome = _process_one(orchestrator, session_factory, worker_id)
        except Exception:
            logger.exception("Archive worker claim loop failed")
            if once:
                break
            stop.wait(max(1.0, poll_seconds))
            continue

        if outcome is None:
            now_ts = time.monotonic()
            if now_ts - last_idle_heartbeat_at >= _DEFAULT_IDLE_HEARTBEAT_SECONDS:
                last_idle_heartbeat_at = now_ts
                logger.debug("Archive worker idle: no queued jobs")
            if once:
                break
            stop.wait(max(0.1, poll_seconds))
            continue

        if once:
            break

    logger.info("Archive worker stopping: worker_id=%s", worker_id)


def start_background_worker_thread() -> None:
    global _worker_thread, _worker_stop_event
    if _worker_thread and _worker_thread.is_alive():
        return
    _worker_stop_event = Event()
    _worker_thread = Thread(
        target=run_loop,
        kwargs={
            "stop_event": _worker_stop_event,
            "once": False,
            "poll_seconds": float(os.getenv("SATCHEL_WORKER_POLL_SECONDS") or _DEFAULT_POLL_SECONDS),
        },
        name="satchel-archive-worker",
        daemon=True,
    )
    _worker_thread.start()
    logger.info("Started background archive worker thread")


def stop_background_worker_thread(timeout_seconds: float = 10.0) -> None:
    global _worker_thread, _worker_stop_event
    if _worker_stop_event:
        _worker_stop_event.set()
    if _worker_thread and _worker_thread.is_alive():
        _worker_thread.join(timeout=timeout_seconds)
    _worker_thread = None
    _worker_stop_event = None
    logger.info("Stopped background archive worker thread")


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, str(os.getenv("SATCHEL_WORKER_LOG_LEVEL") or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_loop(
        once=_to_bool(os.getenv("SATCHEL_WORKER_ONCE")),
        poll_seconds=float(os.getenv("SATCHEL_WORKER_POLL_SECONDS") or _DEFAULT_POLL_SECONDS),
    )


if __name__ == "__main__":
    main()
