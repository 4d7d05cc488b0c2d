"""Background scheduler for queue auto-processing and periodic reconciliation"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from leadsync.config import settings
from leadsync.models.base import SessionLocal
from leadsync.services.queue_processor import QueueProcessor, get_auto_process_enabled
from leadsync.services.reconciler import ReconcileMode, Reconciler
from leadsync.services.remote_client import build_remote_client

logger = logging.getLogger(__name__)

AUTO_PROCESS_JOB_ID = "auto_process_queue"
RECONCILE_JOB_ID = "reconcile_recent"
IMMEDIATE_PUSH_JOB_ID = "immediate_push"


class SyncScheduler:
    """Scheduler for periodic queue draining and reconciliation"""

    def __init__(self, session_factory=SessionLocal, client_factory=build_remote_client):
        self.scheduler = BackgroundScheduler()
        self.session_factory = session_factory
        self.client_factory = client_factory

    def start(self):
        """Start the scheduler"""
        self.scheduler.start()
        logger.info("Sync scheduler started")
        self.schedule_jobs()

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Sync scheduler stopped")

    def schedule_jobs(self):
        """(Re)create the interval jobs from settings"""
        self.scheduler.add_job(
            func=self._auto_process_tick,
            trigger=IntervalTrigger(seconds=settings.auto_process_interval_seconds),
            id=AUTO_PROCESS_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(
            f"Scheduled queue auto-processing tick every {settings.auto_process_interval_seconds}s"
        )

        if settings.reconcile_interval_minutes > 0:
            self.scheduler.add_job(
                func=self._reconcile_job,
                trigger=IntervalTrigger(minutes=settings.reconcile_interval_minutes),
                id=RECONCILE_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info(
                f"Scheduled recent reconciliation every {settings.reconcile_interval_minutes} minutes"
            )
        elif self.scheduler.get_job(RECONCILE_JOB_ID) is not None:
            self.scheduler.remove_job(RECONCILE_JOB_ID)

    def request_immediate_push(self):
        """Run one queue batch as soon as possible (low-latency variant)."""
        if not self.scheduler.running:
            return
        self.scheduler.add_job(
            func=self._process_queue_job,
            id=IMMEDIATE_PUSH_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def _auto_process_tick(self):
        """Job function: drain the queue if auto-processing is on and work is pending"""
        db = self.session_factory()
        try:
            # Read the persisted flag each tick so toggles apply across restarts and instances.
            if not get_auto_process_enabled(db):
                logger.debug("Auto-processing disabled; skipping tick")
                return
            pending = QueueProcessor(db).pending_count()
            if pending == 0:
                logger.debug("Sync queue empty; skipping tick")
                return
        finally:
            db.close()
        self._process_queue_job()

    def _process_queue_job(self):
        """Job function to process one queue batch"""
        db = self.session_factory()
        try:
            with self.client_factory() as remote:
                result = QueueProcessor(db, remote).process_queue()
            logger.info(f"Scheduled queue run completed: {result.to_dict()}")
        except Exception as e:
            logger.error(f"Scheduled queue run failed: {e}")
        finally:
            db.close()

    def _reconcile_job(self):
        """Job function to run a recent-mode reconciliation"""
        db = self.session_factory()
        try:
            with self.client_factory() as remote:
                result = Reconciler(db, remote).reconcile(ReconcileMode.RECENT)
            logger.info(f"Scheduled reconciliation completed: {result.to_dict()}")
        except Exception as e:
            logger.error(f"Scheduled reconciliation failed: {e}")
        finally:
            db.close()


# Global scheduler instance
scheduler = SyncScheduler()
