"""
Cron scheduler for the FRF pipeline.

A daemon thread sleeps until the next fire time of the configured cron
expression and then runs the pipeline. Overlap protection lives in the
pipeline itself: a run that fires while a manual run is in progress comes
back skipped.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from croniter import croniter

from config.settings import settings

logger = logging.getLogger(__name__)


def validate_cron_expression(expression: str) -> bool:
    """Check whether a cron expression is valid."""
    if not expression or not isinstance(expression, str):
        return False
    return croniter.is_valid(expression)


def next_fire_time(expression: str, now: Optional[datetime] = None) -> datetime:
    """Next time the expression fires after now (UTC)."""
    base = now or datetime.now(timezone.utc)
    return croniter(expression, base).get_next(datetime)


class InvalidCronExpression(ValueError):
    """The configured cron expression can't be scheduled."""


class FRFScheduler:
    """
    Background thread that runs the FRF pipeline on a cron schedule.
    """

    def __init__(
        self,
        run_pipeline: Optional[Callable[[], object]] = None,
        cron_expression: Optional[str] = None,
    ):
        """
        Args:
            run_pipeline: Callable that runs one pass (defaults to run_frf_pipeline)
            cron_expression: Schedule (defaults to settings.frf_cron_interval)
        """
        if run_pipeline is None:
            from pkb.services.frf_pipeline import run_frf_pipeline
            run_pipeline = run_frf_pipeline
        self.run_pipeline = run_pipeline
        self.cron_expression = cron_expression or settings.frf_cron_interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_started(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """
        Start the scheduler thread.

        Raises:
            InvalidCronExpression: If the cron expression is invalid
        """
        if self.is_started:
            logger.warning("FRF scheduler already started")
            return

        if not validate_cron_expression(self.cron_expression):
            logger.error(f"Invalid FRF cron interval: {self.cron_expression!r}")
            raise InvalidCronExpression(f"Invalid cron expression: {self.cron_expression!r}")

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name="FRFScheduler",
        )
        self._thread.start()
        logger.info(f"FRF scheduler started ({self.cron_expression})")

    def stop(self):
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._thread = None
        logger.info("FRF scheduler stopped")

    def join(self, timeout: Optional[float] = None):
        """Block until the scheduler thread exits (or timeout)."""
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _run(self):
        """Main scheduler loop."""
        while not self._stop_event.is_set():
            next_time = next_fire_time(self.cron_expression)
            wait_seconds = max(0.0, (next_time - datetime.now(timezone.utc)).total_seconds())
            logger.debug(f"Next FRF run at {next_time.isoformat()}")

            if self._stop_event.wait(wait_seconds):
                return
            self.fire()

    def fire(self):
        """Run the pipeline once, logging (never raising) on failure."""
        try:
            result = self.run_pipeline()
            if getattr(result, "skipped", False):
                logger.info("FRF scheduled run skipped: previous run still in progress")
        except Exception as e:
            logger.error(f"FRF scheduled run failed: {e}")
