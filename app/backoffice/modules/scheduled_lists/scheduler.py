from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from app.backoffice.audit import record_event
from app.backoffice.modules.scheduled_lists.models import ListRefreshRun, OrderList
from app.backoffice.modules.scheduled_lists.refresh import ItemSource, RefreshStats, refresh_all, refresh_list

logger = logging.getLogger(__name__)


class ListRefreshScheduler:
    """
    Background sweep of all active lists, one sweep per interval.

    Built explicitly with its collaborators (session factory + item source) and
    driven through start()/stop(); run_once() performs a single sweep on the
    calling thread, which is what tests and the manual endpoint use.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        source: ItemSource,
        *,
        interval_seconds: float = 3600,
        run_immediately: bool = False,
    ) -> None:
        self.session_factory = session_factory
        self.source = source
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._run_lock = threading.Lock()
        self.last_run_at: datetime | None = None
        self.last_result: dict[str, Any] | None = None
        self.next_run_at: datetime | None = None
        self.runs_completed = 0

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> bool:
        if self.running:
            logger.debug("REFRESH: scheduler already running; skipping start")
            return False
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="ListRefreshScheduler", daemon=True)
        self._thread.start()
        logger.info("REFRESH: scheduler started (interval=%ss)", self.interval_seconds)
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread and thread.is_alive():
            thread.join(timeout=timeout)
        self._thread = None
        self.next_run_at = None
        logger.info("REFRESH: scheduler stopped")

    def _loop(self) -> None:
        first = True
        while not self._stop.is_set():
            if not (first and self.run_immediately):
                self.next_run_at = datetime.utcnow() + timedelta(seconds=self.interval_seconds)
                if self._stop.wait(self.interval_seconds):
                    break
            first = False
            try:
                self.run_once(trigger="scheduled")
            except Exception as exc:  # pragma: no cover - keep the loop alive
                logger.error("REFRESH: scheduled sweep failed: %s", exc, exc_info=True)

    def run_once(self, *, trigger: str = "manual", list_id: str | None = None) -> dict[str, Any] | None:
        """
        One sweep (or one list when `list_id` is given). Returns the run summary,
        or None if another sweep is already in progress.
        """
        if not self._run_lock.acquire(blocking=False):
            logger.info("REFRESH: sweep already in progress; %s trigger skipped", trigger)
            return None
        try:
            return self._run(trigger, list_id)
        finally:
            self._run_lock.release()

    def _run(self, trigger: str, list_id: str | None) -> dict[str, Any]:
        started = time.monotonic()
        s = self.session_factory()
        try:
            if list_id is not None:
                order_list = s.get(OrderList, list_id)
                stats = refresh_list(s, self.source, order_list) if order_list else RefreshStats()
                if order_list is None:
                    stats.failures.append({"list_id": list_id, "item_id": None, "error": "List not found"})
            else:
                stats = refresh_all(s, self.source)

            duration = time.monotonic() - started
            run = ListRefreshRun(
                ran_at=datetime.utcnow(),
                trigger=trigger,
                total_lists=stats.total_lists,
                total_items=stats.total_items,
                refreshed_count=stats.refreshed,
                failed_count=stats.failed,
                duration_seconds=round(duration, 3),
                message=f"list={list_id}" if list_id else None,
            )
            s.add(run)
            record_event(
                s,
                actor=None,
                action="lists.refresh",
                entity_type="ListRefreshRun",
                entity_id=list_id,
                metadata={"trigger": trigger, **{k: v for k, v in stats.to_dict().items() if k != "failures"}},
            )
            s.commit()
            result = {"run_id": run.id, "trigger": trigger, "duration_seconds": run.duration_seconds, **stats.to_dict()}
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

        self.last_run_at = datetime.utcnow()
        self.last_result = result
        self.runs_completed += 1
        return result

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "runs_completed": self.runs_completed,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "last_result": self.last_result,
        }
