"""Background job scheduling."""

import logging
import threading
import itertools
from typing import Callable, Dict, List, Optional

from .models import now_ms

logger = logging.getLogger(__name__)


class Job:
    """Handle for a periodic job registered with a scheduler."""

    def __init__(self, scheduler: "BaseScheduler", name: str, interval_ms: int, fn: Callable[[], None]):
        self.scheduler = scheduler
        self.name = name
        self.interval_ms = interval_ms
        self.fn = fn
        self.cancelled = False

    def cancel(self):
        self.scheduler.cancel(self)

    def run(self):
        """Run the job once; errors are logged so the ticker keeps going."""
        try:
            self.fn()
        except Exception as e:
            logger.error(f"Error in scheduled job {self.name}: {e}")


class BaseScheduler:
    """Common interface: register periodic jobs, cancel them, shut down."""

    def now_ms(self) -> int:
        return now_ms()

    def every(self, interval_ms: int, fn: Callable[[], None], name: str = "job") -> Job:
        raise NotImplementedError

    def submit(self, fn: Callable[[], None], name: str = "task"):
        """Run fn once in the background."""
        raise NotImplementedError

    def cancel(self, job: Job):
        raise NotImplementedError

    def shutdown(self):
        raise NotImplementedError


class ThreadScheduler(BaseScheduler):
    """
    Runs each job on its own daemon thread.

    Each thread waits on a per-job Event with the job interval as timeout,
    so cancellation wakes it immediately and shutdown is deterministic.
    """

    def __init__(self):
        self._jobs: Dict[Job, threading.Thread] = {}
        self._stop_events: Dict[Job, threading.Event] = {}
        self._tasks: List[threading.Thread] = []
        self._lock = threading.Lock()

    def every(self, interval_ms: int, fn: Callable[[], None], name: str = "job") -> Job:
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval_ms}")
        job = Job(self, name, interval_ms, fn)
        stop_event = threading.Event()

        def loop():
            logger.debug(f"Scheduler thread for {name} started")
            while not stop_event.wait(interval_ms / 1000.0):
                job.run()
            logger.debug(f"Scheduler thread for {name} stopped")

        thread = threading.Thread(target=loop, name=f"locator-{name}", daemon=True)
        with self._lock:
            self._jobs[job] = thread
            self._stop_events[job] = stop_event
        thread.start()
        return job

    def submit(self, fn: Callable[[], None], name: str = "task"):
        task = Job(self, name, 0, fn)
        thread = threading.Thread(target=task.run, name=f"locator-{name}", daemon=True)
        with self._lock:
            self._tasks = [t for t in self._tasks if t.is_alive()]
            self._tasks.append(thread)
        thread.start()

    def cancel(self, job: Job):
        with self._lock:
            thread = self._jobs.pop(job, None)
            stop_event = self._stop_events.pop(job, None)
        job.cancelled = True
        if stop_event:
            stop_event.set()
        if thread and thread is not threading.current_thread():
            thread.join(timeout=5.0)

    def shutdown(self):
        with self._lock:
            jobs = list(self._jobs)
            tasks, self._tasks = self._tasks, []
        for job in jobs:
            self.cancel(job)
        for thread in tasks:
            if thread is not threading.current_thread():
                thread.join(timeout=5.0)


class ManualScheduler(BaseScheduler):
    """
    Virtual-time scheduler and clock.

    Time only moves when advance() is called; due jobs run in order of
    their next deadline. Submitted one-shot tasks are queued and run by
    run_pending() or at the start of the next advance(). Components that
    take a clock can use now_ms().
    """

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self._now = start_ms
        self._jobs: List[Job] = []
        self._next_run: Dict[Job, int] = {}
        self._seq = itertools.count()
        self._pending: List[Job] = []

    def now_ms(self) -> int:
        return self._now

    def every(self, interval_ms: int, fn: Callable[[], None], name: str = "job") -> Job:
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval_ms}")
        job = Job(self, name, interval_ms, fn)
        self._jobs.append(job)
        self._next_run[job] = self._now + interval_ms
        return job

    def submit(self, fn: Callable[[], None], name: str = "task"):
        self._pending.append(Job(self, name, 0, fn))

    def run_pending(self) -> int:
        """Run queued one-shot tasks. Returns how many ran."""
        runs = 0
        while self._pending:
            self._pending.pop(0).run()
            runs += 1
        return runs

    def cancel(self, job: Job):
        job.cancelled = True
        if job in self._next_run:
            del self._next_run[job]
            self._jobs.remove(job)

    def shutdown(self):
        for job in list(self._jobs):
            self.cancel(job)
        self._pending.clear()

    def sleep(self, seconds: float):
        """Drop-in for time.sleep that advances virtual time instead."""
        self.advance(int(seconds * 1000))

    def advance(self, ms: int) -> int:
        """
        Move virtual time forward, running every job that falls due.

        Returns:
            Number of job and task executions performed
        """
        target = self._now + ms
        runs = self.run_pending()
        while True:
            due = self._next_due(target)
            if due is None:
                break
            job, when = due
            self._now = when
            self._next_run[job] = when + job.interval_ms
            job.run()
            runs += 1
        self._now = target
        return runs

    def _next_due(self, target: int) -> Optional[tuple]:
        candidates = [(when, next(self._seq), job) for job, when in self._next_run.items() if when <= target]
        if not candidates:
            return None
        when, _, job = min(candidates, key=lambda item: (item[0], item[1]))
        return job, when

    @property
    def jobs(self) -> List[Job]:
        return list(self._jobs)
