"""One-shot delayed jobs (fire-and-forget) on a background APScheduler"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

logger = logging.getLogger(__name__)


class DelayedJobScheduler:
    """Runs a callable once after a delay; jobs are best-effort and never block callers"""

    def __init__(self, max_workers: int = 4):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': ThreadPoolExecutor(max_workers)
        }
        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 30
        }
        self.scheduler = BackgroundScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )
        self._start_lock = threading.Lock()

    def _ensure_started(self):
        with self._start_lock:
            if not self.scheduler.running:
                self.scheduler.start()
                logger.info("⏰ DELAYED_JOBS: Background scheduler started")

    def schedule(
        self,
        job_id: str,
        delay_seconds: float,
        func: Callable[..., Any],
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Schedule ``func(**kwargs)`` once; an existing job with the same id is replaced"""
        self._ensure_started()
        run_date = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        self.scheduler.add_job(
            self._run_safely,
            trigger=DateTrigger(run_date=run_date),
            args=[job_id, func, kwargs or {}],
            id=job_id,
            name=job_id,
            replace_existing=True,
        )
        logger.debug(f"⏰ DELAYED_JOB_SCHEDULED: {job_id} in {delay_seconds}s")

    @staticmethod
    def _run_safely(job_id: str, func: Callable[..., Any], kwargs: Dict[str, Any]) -> None:
        try:
            func(**kwargs)
        except Exception as e:
            logger.error(f"❌ DELAYED_JOB_FAILED: {job_id}: {e}", exc_info=True)

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("⏰ DELAYED_JOBS: Background scheduler stopped")
