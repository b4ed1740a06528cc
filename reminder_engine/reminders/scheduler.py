"""
Scheduler driver for the reminder engine.

Each registered job runs on its own thread with its own schedule (fixed
interval or cron expression). The whole driver is suspended while the
messaging gateway is not connected: `follow()` turns connection-state
transitions from a `ConnectionStateChannel` into start/stop calls.
"""
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from croniter import croniter

from reminder_engine.core.config import settings
from reminder_engine.utils.timezone import get_zoneinfo, utcnow
from .gateway import ConnectionState, DeliveryGateway
from .metrics import gateway_connected, scheduler_job_failures_total, scheduler_job_runs_total

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    ConnectionState.NOT_CONNECTED: {ConnectionState.RECONNECTING, ConnectionState.CONNECTED},
    ConnectionState.RECONNECTING: {ConnectionState.CONNECTED, ConnectionState.NOT_CONNECTED},
    ConnectionState.CONNECTED: {ConnectionState.RECONNECTING, ConnectionState.NOT_CONNECTED},
}


class ConnectionStateChannel:
    """Gateway connection state machine that publishes every transition.

    Subscribers receive new states on their own queue. `close()` puts a
    None sentinel on every queue.
    """

    def __init__(self, initial: ConnectionState = ConnectionState.NOT_CONNECTED):
        self._state = initial
        self._lock = threading.Lock()
        self._subscribers: List["queue.Queue[Optional[ConnectionState]]"] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    def subscribe(self) -> "queue.Queue[Optional[ConnectionState]]":
        q: "queue.Queue[Optional[ConnectionState]]" = queue.Queue()
        with self._lock:
            self._subscribers.append(q)
        return q

    def transition(self, new_state: ConnectionState) -> bool:
        """Move to `new_state`. Returns False when already there; raises ValueError on a disallowed move."""
        with self._lock:
            if new_state is self._state:
                return False
            if new_state not in ALLOWED_TRANSITIONS[self._state]:
                raise ValueError(f"illegal connection transition {self._state.value} -> {new_state.value}")
            logger.info(f"🔌 [Gateway] Connection state {self._state.value} -> {new_state.value}")
            self._state = new_state
            for q in self._subscribers:
                q.put(new_state)
        return True

    def close(self) -> None:
        with self._lock:
            for q in self._subscribers:
                q.put(None)


@dataclass
class ScheduledJob:
    name: str
    func: Callable[[], object]
    next_after: Callable[[datetime], datetime]
    run_immediately: bool = False
    running: threading.Lock = field(default_factory=threading.Lock)


def interval_schedule(seconds: float) -> Callable[[datetime], datetime]:
    def next_after(moment: datetime) -> datetime:
        return moment + timedelta(seconds=seconds)
    return next_after


def cron_schedule(expression: str, tz=None) -> Callable[[datetime], datetime]:
    """Next firing for a cron expression evaluated in the local timezone."""
    if not croniter.is_valid(expression):
        raise ValueError(f"invalid cron expression: {expression!r}")
    tz = tz or get_zoneinfo()

    def next_after(moment: datetime) -> datetime:
        local = moment.astimezone(tz)
        return croniter(expression, local).get_next(datetime)
    return next_after


class SchedulerDriver:
    def __init__(self, join_timeout: float = 30.0):
        self.join_timeout = join_timeout
        self._jobs: Dict[str, ScheduledJob] = {}
        self._lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._threads: List[threading.Thread] = []
        self._follower: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._stop_event is not None

    def add_interval_job(self, name: str, func: Callable[[], object], seconds: float, run_immediately: bool = True) -> None:
        if seconds <= 0:
            raise ValueError("interval must be positive")
        self._register(ScheduledJob(name, func, interval_schedule(seconds), run_immediately))

    def add_cron_job(self, name: str, func: Callable[[], object], expression: str, tz=None) -> None:
        self._register(ScheduledJob(name, func, cron_schedule(expression, tz)))

    def _register(self, job: ScheduledJob) -> None:
        with self._lock:
            if self._stop_event is not None:
                raise RuntimeError("cannot register jobs while the scheduler is running")
            self._jobs[job.name] = job
        logger.info(f"🗓️  [Scheduler] Registered job {job.name}")

    def start(self) -> bool:
        """Start every registered job. Returns False if already running."""
        with self._lock:
            if self._stop_event is not None:
                return False
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._threads = []
            for job in self._jobs.values():
                t = threading.Thread(
                    target=self._run_job,
                    args=(job, stop_event),
                    name=f"scheduler-{job.name}",
                    daemon=True,
                )
                self._threads.append(t)
                t.start()
        logger.info(f"▶️  [Scheduler] Started {len(self._jobs)} jobs")
        return True

    def stop(self) -> bool:
        """Suspend all jobs. Returns False if not running.

        Once this returns no job fires again until the next start(). A job
        that is already executing is allowed to finish.
        """
        with self._lock:
            if self._stop_event is None:
                return False
            self._stop_event.set()
            self._stop_event = None
            threads, self._threads = self._threads, []

        current = threading.current_thread()
        for t in threads:
            if t is not current:
                t.join(self.join_timeout)
        logger.info("⏹️  [Scheduler] Stopped")
        return True

    def _should_fire(self, stop_event: threading.Event) -> bool:
        # Checked under the driver lock so a firing cannot start after stop() set the event
        with self._lock:
            return not stop_event.is_set()

    def _run_job(self, job: ScheduledJob, stop_event: threading.Event) -> None:
        now = utcnow()
        next_at = now if job.run_immediately else job.next_after(now)
        while True:
            delay = max(0.0, (next_at - utcnow()).total_seconds())
            if stop_event.wait(delay):
                return
            if not self._should_fire(stop_event):
                return
            self._execute(job)
            next_at = job.next_after(max(next_at, utcnow()))

    def _execute(self, job: ScheduledJob) -> None:
        if not job.running.acquire(blocking=False):
            logger.warning(f"⚠️  [Scheduler] Job {job.name} still running from a previous start; skipping tick")
            return
        started = time.monotonic()
        try:
            scheduler_job_runs_total.labels(job=job.name).inc()
            job.func()
        except Exception:
            scheduler_job_failures_total.labels(job=job.name).inc()
            logger.exception(f"❌ [Scheduler] Job {job.name} failed")
        else:
            logger.debug(f"✅ [Scheduler] Job {job.name} finished in {time.monotonic() - started:.2f}s")
        finally:
            job.running.release()

    def apply_state(self, state: ConnectionState) -> None:
        if state is ConnectionState.CONNECTED:
            self.start()
        else:
            self.stop()

    def follow(self, channel: ConnectionStateChannel) -> threading.Thread:
        """Start or stop the driver on every transition published by `channel`."""
        updates = channel.subscribe()
        self.apply_state(channel.state)

        def consume() -> None:
            while True:
                state = updates.get()
                if state is None:
                    return
                self.apply_state(state)

        self._follower = threading.Thread(target=consume, name="scheduler-follow", daemon=True)
        self._follower.start()
        return self._follower


class GatewayWatcher:
    """Polls the gateway connection state and feeds it into a channel"""

    def __init__(self, gateway: DeliveryGateway, channel: ConnectionStateChannel, poll_seconds: Optional[float] = None):
        self.gateway = gateway
        self.channel = channel
        self.poll_seconds = poll_seconds or settings.GATEWAY_POLL_SECONDS
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll_once(self) -> ConnectionState:
        state = self.gateway.connection_state()
        gateway_connected.set(1 if state is ConnectionState.CONNECTED else 0)
        self.channel.transition(state)
        return state

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("❌ [Gateway] Connection poll failed")
            self._stop_event.wait(self.poll_seconds)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="gateway-watcher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(self.poll_seconds)
            self._thread = None


def build_default_driver(
    dispatcher,
    digest: Callable[[], object],
    quota_reset: Callable[[], object],
    premium_tips: Optional[Callable[[], object]] = None,
) -> SchedulerDriver:
    """Driver with the dispatch, daily digest, quota-reset and Premium tips jobs from settings"""
    driver = SchedulerDriver()
    driver.add_interval_job("dispatch", dispatcher.run_due_reminders, settings.SCAN_INTERVAL_SECONDS)
    driver.add_cron_job("daily_digest", digest, settings.DAILY_DIGEST_CRON, dispatcher.tz)
    driver.add_cron_job("quota_reset", quota_reset, settings.QUOTA_RESET_CRON, dispatcher.tz)
    if premium_tips is not None:
        driver.add_cron_job("premium_tips", premium_tips, settings.PREMIUM_TIPS_CRON, dispatcher.tz)
    return driver
