from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .reconciler import StatusReconciler
from .sweeper import OverdueSweeper

LOGGER = logging.getLogger("circdesk.scheduler")


class SweepScheduler:
    """Runs the sweeper and the reconciler as two APScheduler interval jobs.

    Both jobs fire once on ``start()`` and then every ``*_interval`` seconds
    until ``stop()``. A run that is still going when its next tick arrives is
    not doubled up.
    """

    def __init__(
        self,
        sweeper: OverdueSweeper,
        reconciler: StatusReconciler,
        sweep_interval: float = 3600.0,
        reconcile_interval: float = 3600.0,
    ) -> None:
        self.sweeper = sweeper
        self.reconciler = reconciler
        self.sweep_interval = sweep_interval
        self.reconcile_interval = reconcile_interval
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        first_run = datetime.now(timezone.utc)
        scheduler = BackgroundScheduler(daemon=True, timezone=timezone.utc)
        scheduler.add_job(
            self._run_sweep,
            "interval",
            seconds=self.sweep_interval,
            id="overdue_sweep",
            next_run_time=first_run,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            self._run_reconcile,
            "interval",
            seconds=self.reconcile_interval,
            id="status_reconcile",
            next_run_time=first_run,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        LOGGER.info(
            "scheduler started (sweep every %ss, reconcile every %ss)",
            self.sweep_interval,
            self.reconcile_interval,
        )

    def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=True)
        self._scheduler = None
        LOGGER.info("scheduler stopped")

    def run_once(self) -> None:
        self._run_sweep()
        self._run_reconcile()

    def _run_sweep(self) -> None:
        try:
            self.sweeper.run()
        except Exception:
            LOGGER.exception("Error running overdue sweep")

    def _run_reconcile(self) -> None:
        try:
            self.reconciler.run()
        except Exception:
            LOGGER.exception("Error syncing material statuses")
