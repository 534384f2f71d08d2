from __future__ import annotations

import argparse
import logging
import signal
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Any, Dict, Optional

from landing.config import configure_logging, load_settings
from landing.errors import LandingError, QueueError, ValidationError
from landing.pipeline import GenerationPipeline, GenerationRequest
from landing.services import build_rate_limiter, build_services
from landing.taskqueue import LEASE_EXPIRED, Job

log = logging.getLogger(__name__)


class Worker:
    """Pulls jobs off the task queue and runs them through the pipeline.

    At most ``concurrency`` jobs run at once; when a rate limiter is given, a job
    is only started once the limiter admits it. Failures go back to the queue,
    which decides whether to retry.
    """

    def __init__(
        self,
        queue,
        pipeline: GenerationPipeline,
        concurrency: int = 2,
        rate_limiter: Any = None,
        poll_timeout: float = 1.0,
        name: str = "landing-generation",
    ) -> None:
        self.queue = queue
        self.pipeline = pipeline
        self.concurrency = max(1, int(concurrency))
        self.rate_limiter = rate_limiter
        self.poll_timeout = poll_timeout
        self.name = name
        self._stop = threading.Event()

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _admit(self) -> bool:
        """Block until the rate limiter lets one more job start; False if stopped meanwhile."""
        if self.rate_limiter is None:
            return True
        while not self._stop.is_set():
            allowed, _, reset_ts = self.rate_limiter.check_and_increment("worker", self.name)
            if allowed:
                return True
            wait_seconds = max(0.1, reset_ts - time.time())
            log.info("worker.rate_limit: limit reached, waiting %.1fs", wait_seconds)
            self._stop.wait(wait_seconds)
        return False

    def _fail_unstarted(self, job: Job, message: str) -> bool:
        """Fail a job the pipeline never ran; a job parked for good fails its session too."""
        retried = self.queue.fail(job, message)
        if not retried:
            self.pipeline.record_failure(job.id, message)
        return retried

    def _reap(self) -> int:
        """Retry or park jobs whose worker vanished mid-run; returns how many were parked."""
        try:
            parked = self.queue.reap_expired()
        except QueueError as exc:
            log.warning("worker.reap: %s", exc.message)
            return 0
        for job in parked:
            log.warning("worker.reap: job=%s parked after %d attempt(s)", job.id, job.attempts_made)
            self.pipeline.record_failure(job.id, job.error or LEASE_EXPIRED)
        return len(parked)

    def handle(self, job: Job) -> bool:
        """Run one job; True on success."""
        try:
            request = GenerationRequest.from_payload(job.id, job.data, self.pipeline.default_model)
        except ValidationError as exc:
            log.warning("worker.job: job=%s rejected: %s", job.id, exc.message)
            # A bad payload stays bad; skip the remaining attempts
            job.attempts_made = job.max_attempts
            self._fail_unstarted(job, exc.message)
            return False

        log.info("worker.job: job=%s attempt=%d/%d", job.id, job.attempts_made, job.max_attempts)
        try:
            self.pipeline.run(request)
        except Exception as exc:
            # the pipeline has already recorded the failure on the session
            message = exc.message if isinstance(exc, LandingError) else (str(exc) or exc.__class__.__name__)
            retried = self.queue.fail(job, message)
            log.warning("worker.job: job=%s failed retry=%s error=%s", job.id, retried, message)
            return False
        self.queue.complete(job)
        log.info("worker.job: job=%s completed", job.id)
        return True

    def drain(self, max_jobs: Optional[int] = None) -> int:
        """Process every job that is ready right now, inline; returns how many ran."""
        processed = 0
        self._reap()
        while max_jobs is None or processed < max_jobs:
            job = self.queue.dequeue(timeout=0)
            if job is None:
                break
            self.handle(job)
            processed += 1
        return processed

    def _next_job(self, timeout: float) -> Optional[Job]:
        try:
            return self.queue.dequeue(timeout=timeout)
        except QueueError as exc:
            log.warning("worker.dequeue: %s; retrying in %.1fs", exc.message, self.poll_timeout)
            self._stop.wait(self.poll_timeout)
            return None

    def run_forever(self) -> None:
        log.info("worker.start: queue=%s concurrency=%d", self.name, self.concurrency)
        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            futures: Dict[Any, Job] = {}
            while not self._stop.is_set():
                self._reap()
                while len(futures) < self.concurrency and not self._stop.is_set():
                    job = self._next_job(0 if futures else self.poll_timeout)
                    if job is None:
                        break
                    if not self._admit():
                        # Stopped while throttled; the queue reschedules it as a failed attempt
                        self._fail_unstarted(job, "worker stopped before start")
                        break
                    futures[executor.submit(self.handle, job)] = job
                if futures:
                    done, _ = wait(list(futures), timeout=self.poll_timeout, return_when=FIRST_COMPLETED)
                    for future in done:
                        self._collect(future, futures.pop(future))
            if futures:
                log.info("worker.stop: waiting for %d in-flight job(s)", len(futures))
                for future in wait(list(futures)).done:
                    self._collect(future, futures.pop(future))
        log.info("worker.stop: done")

    @staticmethod
    def _collect(future, job: Job) -> None:
        exc = future.exception()
        if exc is not None:
            # the job stays active until its lease runs out and the reaper retries it
            log.error("worker.job: job=%s handler crashed", job.id, exc_info=exc)


def build_worker(services) -> Worker:
    settings = services.settings
    limiter = None
    if settings.worker_rate_max > 0:
        limiter = build_rate_limiter(settings, settings.worker_rate_max, settings.worker_rate_window_seconds)
    return Worker(
        services.queue,
        services.pipeline,
        concurrency=settings.worker_concurrency,
        rate_limiter=limiter,
        name=settings.queue_name,
    )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="landing-worker", description="Run the landing generation worker.")
    parser.add_argument("--once", action="store_true", help="process the jobs that are ready, then exit")
    args = parser.parse_args(argv)

    configure_logging()
    settings = load_settings()
    if not settings.queue_configured:
        log.error("worker.start: REDIS_URL is not set; nothing to consume")
        return 2

    with build_services(settings) as services:
        worker = build_worker(services)
        if args.once:
            count = worker.drain()
            log.info("worker.once: processed %d job(s)", count)
            return 0

        def _graceful(signum, _frame):
            log.info("worker.signal: received %s, shutting down", signal.Signals(signum).name)
            worker.stop()

        signal.signal(signal.SIGINT, _graceful)
        signal.signal(signal.SIGTERM, _graceful)
        worker.run_forever()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
