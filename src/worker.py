# src/worker.py

import logging
import signal
import threading
import time

from src.infrastructure import config
from src.application.job_handlers import JobHandlers
from src.application.retry_queue import RetryQueue
from src.domain.state_machine import JobType
from src.infrastructure.db.session import engine, wait_for_db
from src.infrastructure.db.models import Base

logger = logging.getLogger(__name__)

IDLE_BACKOFF_FACTOR = 1.5


class JobWorker:
    """
    Polls the jobs table. The idle wait grows by 1.5x per empty poll up to
    max_idle_interval and resets as soon as a job is processed.
    """

    def __init__(
        self,
        queue: RetryQueue,
        polling_interval: float = config.WORKER_POLLING_INTERVAL,
        max_idle_interval: float = config.WORKER_MAX_IDLE_INTERVAL,
        batch_size: int = config.WORKER_BATCH_SIZE,
        schedule_interval: float = config.WORKER_SCHEDULE_INTERVAL,
        clock=time.monotonic,
    ):
        self.queue = queue
        self.polling_interval = polling_interval
        self.max_idle_interval = max_idle_interval
        self.batch_size = batch_size
        self.schedule_interval = schedule_interval
        self.clock = clock
        self.current_interval = polling_interval
        self._last_scheduled: float | None = None
        self._stop = threading.Event()

    def request_shutdown(self, signum=None, frame=None) -> None:
        if signum is not None:
            logger.info("Received signal %s, finishing current job before exit", signum)
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def schedule_periodic_jobs(self, force: bool = False) -> list[str]:
        now = self.clock()
        if (
            not force
            and self._last_scheduled is not None
            and now - self._last_scheduled < self.schedule_interval
        ):
            return []

        self._last_scheduled = now
        enqueued = []
        for job_type, data in (
            (JobType.ORPHANED_ORDER_CLEANUP, {"older_than_hours": config.ORPHANED_ORDER_MAX_AGE_HOURS}),
            (JobType.CLEANUP_OLD_JOBS, {"older_than_days": config.OLD_JOB_RETENTION_DAYS}),
        ):
            job_id = self.queue.enqueue_once(job_type, data)
            if job_id:
                enqueued.append(job_id)
        return enqueued

    def run_once(self) -> int:
        """One poll: reclaim stale leases, schedule housekeeping, process a batch."""
        self.queue.reclaim_stale()
        self.schedule_periodic_jobs()

        processed = 0
        while processed < self.batch_size and not self.stopping:
            if self.queue.process_next() is None:
                break
            processed += 1

        if processed:
            self.current_interval = self.polling_interval
        else:
            self.current_interval = min(
                self.current_interval * IDLE_BACKOFF_FACTOR,
                self.max_idle_interval,
            )
        return processed

    def run(self) -> None:
        logger.info(
            "Starting job worker (poll %.1fs, max idle %.1fs, batch %s)",
            self.polling_interval,
            self.max_idle_interval,
            self.batch_size,
        )
        while not self.stopping:
            try:
                processed = self.run_once()
            except Exception:
                logger.exception("Worker poll failed")
                processed = 0
            if processed:
                logger.info("Processed %s jobs", processed)
                continue
            self._stop.wait(self.current_interval)
        logger.info("Job worker stopped")


def build_worker() -> JobWorker:
    handlers = JobHandlers()
    queue = RetryQueue(
        handlers=handlers.registry(),
        exhaustion_hooks=handlers.exhaustion_hooks(),
    )
    return JobWorker(queue)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    wait_for_db()
    Base.metadata.create_all(bind=engine)

    worker = build_worker()
    signal.signal(signal.SIGINT, worker.request_shutdown)
    signal.signal(signal.SIGTERM, worker.request_shutdown)
    worker.run()


if __name__ == "__main__":
    main()
