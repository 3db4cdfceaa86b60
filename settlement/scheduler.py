# settlement/scheduler.py
import logging
import threading
import time

import schedule

from settlement.coordinator import RunStatus, TriggerMode

logger = logging.getLogger(__name__)


class SettlementScheduler:
    """
    Fires the daily settlement once a day and owns the retry policy.

    Only FATAL runs are retried: they leave no run marker behind, so trying
    again cannot double-credit. Every other status is final for the day.
    """

    def __init__(self, coordinator, at_time="00:00", retry_attempts=3, retry_delay=30,
                 sleep=time.sleep, scheduler=None):
        self.coordinator = coordinator
        self.at_time = at_time
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.scheduler = scheduler or schedule.Scheduler()
        self.job = None
        self._stop_event = threading.Event()
        self._thread = None

    def run_with_retry(self, mode=TriggerMode.SCHEDULED):
        summary = None
        for attempt in range(1, self.retry_attempts + 1):
            logger.info(f"Executing daily settlement (attempt {attempt}/{self.retry_attempts})")
            summary = self.coordinator.run_daily_settlement(mode)

            if summary.status != RunStatus.FATAL:
                return summary

            logger.error(f"Daily settlement failed (attempt {attempt}/{self.retry_attempts}): {summary.error}")
            if attempt < self.retry_attempts:
                logger.info(f"Retrying daily settlement in {self.retry_delay}s...")
                self.sleep(self.retry_delay)

        logger.error(f"Daily settlement failed after {self.retry_attempts} attempts")
        return summary

    def register(self):
        if self.job is None:
            self.job = self.scheduler.every().day.at(self.at_time).do(self.run_with_retry)
            logger.info(f"Daily settlement scheduled at {self.at_time}")
        return self.job

    def run_pending(self):
        self.scheduler.run_pending()

    def run_forever(self, poll_interval=60):
        """Blocking loop for a dedicated scheduler process."""
        self.register()
        while not self._stop_event.wait(poll_interval):
            self.run_pending()

    def start(self, poll_interval=60):
        """Run the scheduler on a daemon thread so it doesn't block the web process."""
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self.register()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run_forever,
            kwargs={"poll_interval": poll_interval},
            name="settlement-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("Settlement scheduler started (running in background)")
        return self._thread

    def stop(self):
        self._stop_event.set()
        # Only an in-flight run is cancelled; an idle cancel would carry over to the next run
        if self.coordinator.is_running:
            self.coordinator.cancel()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Settlement scheduler stopped")

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    @property
    def next_run(self):
        return self.job.next_run if self.job is not None else None

    def status(self):
        """Scheduler and run state for admin tooling."""
        next_run = self.next_run
        return {
            "schedulerRunning": self.is_running,
            "scheduledAt": self.at_time,
            "nextRun": next_run.isoformat() if next_run else None,
            "settlementRunning": self.coordinator.is_running,
            "retryAttempts": self.retry_attempts,
            "retryDelaySeconds": self.retry_delay,
        }
