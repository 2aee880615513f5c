# journey_runner.py

import asyncio
import itertools
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence, Set, Tuple

import aiohttp
from pydantic import BaseModel, Field

from journey_errors import (
    ConfigurationError,
    ElementNotFoundError,
    ElementTimeoutError,
    JourneyAbortedError,
    NavigationError,
    NavigationTimeoutError,
    SessionCreationError,
)
from runner_config import LoadTestConfig, TargetAddress
from session_driver import SessionDriver, SessionDriverFactory
from user_data import UserData, UserDataGenerator, choose_answer, human_delay_ms

# --- Logging Setup ---
logger = logging.getLogger("JourneyRunner")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime  # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
logger.propagate = False  # Prevent duplicate logs if root logger is configured

__all__ = [
    "logger", "configure_logging", "Phase", "build_phase_plan", "planned_arrivals",
    "MetricsSink", "ErrorKind", "classify_error", "SessionPool", "JourneyStateMachine",
    "ArrivalScheduler", "run_load_test",
]

# ---------------------------
# Metric names
# ---------------------------
METRIC_LANDING = "journey.step.landing"
METRIC_QUESTION_SUBMIT = "journey.step.question{n}.submit"
METRIC_QUESTION_SUBMIT_ALL = "journey.step.question.submit.all"
METRIC_INFOFORM_SUBMIT = "journey.step.infoform.submit"
METRIC_END = "journey.step.end"
METRIC_TOTAL_TIME = "journey.total_time"
COUNTER_COMPLETED = "journey.completed"
COUNTER_FAILED = "journey.failed"
COUNTER_ERRORS = "journey.errors.{kind}"

FORM_SELECTOR = "form"
SUBMIT_SELECTOR = 'button[type="submit"]'
ANSWER_SELECTOR = 'input[type="radio"][value="{choice}"]'
INFO_FIELDS = ("name", "email", "phone")


def configure_logging(debug: bool):
    """Configures the logger level based on the debug flag."""
    log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)
    for handler in logger.handlers:
        handler.setLevel(log_level)
    logger.debug(f"Journey runner logging level set to {logging.getLevelName(log_level)}")


# ---------------------------
# Arrival phases
# ---------------------------
class Phase(BaseModel):
    duration_units: int = Field(..., ge=1, description="Length of the phase in time units (seconds by default)")
    arrival_mode: Literal['count', 'rate'] = Field(..., description="'count': start `value` VUs in total; 'rate': `value` VUs per unit")
    value: int = Field(..., ge=0, description="Arrival count or rate; rate 0 holds the run open without arrivals")
    name: Optional[str] = Field(None, description="Human-readable name for logging")

    @property
    def arrivals(self) -> int:
        if self.arrival_mode == 'count':
            return self.value
        return self.value * self.duration_units


def build_phase_plan(total_vus: int, total_duration_units: int) -> List[Phase]:
    """
    Default two-phase plan: spawn every VU in the first unit, then hold the run
    open with no new arrivals for the remaining duration (at least one unit).
    """
    if total_vus < 1:
        raise ConfigurationError(f"VUS must be a positive integer, got {total_vus}")
    duration = max(int(total_duration_units), 1)
    return [
        Phase(duration_units=1, arrival_mode='count', value=total_vus, name="Initialize Users"),
        Phase(duration_units=max(duration - 1, 1), arrival_mode='rate', value=0, name="Sustained Load"),
    ]


def planned_arrivals(phases: Sequence[Phase]) -> int:
    return sum(phase.arrivals for phase in phases)


# ---------------------------
# Metrics Sink
# ---------------------------
class MetricKind(str, Enum):
    HISTOGRAM = "histogram"
    COUNTER = "counter"


@dataclass(frozen=True)
class MetricEvent:
    kind: MetricKind
    name: str
    value: float
    emitted_at: float
    vu_id: Optional[str] = None


@dataclass
class MetricsSnapshot:
    histograms: Dict[str, List[float]]
    counters: Dict[str, int]
    events: List[MetricEvent]

    def counter(self, name: str) -> int:
        return self.counters.get(name, 0)

    def samples(self, name: str) -> List[float]:
        return self.histograms.get(name, [])

    def events_for(self, vu_id: str) -> List[MetricEvent]:
        return [event for event in self.events if event.vu_id == vu_id]


def _percentile(sorted_samples: List[float], fraction: float) -> float:
    idx = int(len(sorted_samples) * fraction)
    return sorted_samples[min(idx, len(sorted_samples) - 1)]


def summarize_samples(samples: Sequence[float]) -> Dict[str, float]:
    """count/min/max/mean/median/p90/p95/p99 for one histogram."""
    if not samples:
        return {"count": 0, "min": 0.0, "max": 0.0, "mean": 0.0, "median": 0.0, "p90": 0.0, "p95": 0.0, "p99": 0.0}
    ordered = sorted(samples)
    count = len(ordered)
    mid = count // 2
    median = ordered[mid] if count % 2 else (ordered[mid - 1] + ordered[mid]) / 2.0
    return {
        "count": count,
        "min": ordered[0],
        "max": ordered[-1],
        "mean": sum(ordered) / count,
        "median": median,
        "p90": _percentile(ordered, 0.90),
        "p95": _percentile(ordered, 0.95),
        "p99": _percentile(ordered, 0.99),
    }


class MetricsSink:
    """
    Append-only aggregate of histogram samples and counters.
    Safe for concurrent emission from many VU tasks using asyncio.Lock.
    """
    def __init__(self):
        self.lock = asyncio.Lock()
        self._histograms: Dict[str, List[float]] = {}
        self._counters: Dict[str, int] = {}
        self._events: List[MetricEvent] = []

    async def emit(self, kind: MetricKind, name: str, value: float = 1, vu_id: Optional[str] = None):
        """Record one histogram sample (ms) or counter increment (default 1)."""
        kind = MetricKind(kind)
        if kind is MetricKind.COUNTER:
            value = int(value)
        elif value < 0:
            logger.warning(f"Attempted to record negative duration {value:.3f}ms for '{name}'. Ignoring.")
            return
        event = MetricEvent(kind=kind, name=name, value=value, emitted_at=time.time(), vu_id=vu_id)
        async with self.lock:
            if kind is MetricKind.HISTOGRAM:
                self._histograms.setdefault(name, []).append(float(value))
            else:
                self._counters[name] = self._counters.get(name, 0) + value
            self._events.append(event)

    async def snapshot(self) -> MetricsSnapshot:
        """Copy of everything emitted so far."""
        async with self.lock:
            return MetricsSnapshot(
                histograms={name: list(samples) for name, samples in self._histograms.items()},
                counters=dict(self._counters),
                events=list(self._events),
            )

    async def report(self) -> Dict[str, Any]:
        """Counters plus a distribution summary per histogram."""
        snap = await self.snapshot()
        return {
            "counters": dict(sorted(snap.counters.items())),
            "histograms": {name: summarize_samples(samples) for name, samples in sorted(snap.histograms.items())},
        }


# ---------------------------
# Error classification
# ---------------------------
class ErrorKind(str, Enum):
    TIMEOUT = "Timeout"
    NAVIGATION_ERROR = "NavigationError"
    ELEMENT_NOT_FOUND = "ElementNotFound"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class ErrorRecord:
    vu_id: str
    kind: ErrorKind
    message: str
    step_at_failure: str
    elapsed_ms: float = 0.0


def classify_error(failure: BaseException) -> ErrorKind:
    """Map a failure to a stable ErrorKind. Pure; used only for naming and reporting."""
    if isinstance(failure, JourneyAbortedError):
        return failure.record.kind
    if isinstance(failure, (NavigationTimeoutError, ElementTimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    # Driver libraries (e.g. playwright) ship their own TimeoutError classes
    if type(failure).__name__ == "TimeoutError":
        return ErrorKind.TIMEOUT
    if isinstance(failure, ElementNotFoundError):
        return ErrorKind.ELEMENT_NOT_FOUND
    if isinstance(failure, (NavigationError, aiohttp.ClientError)):
        return ErrorKind.NAVIGATION_ERROR
    return ErrorKind.UNKNOWN


# ---------------------------
# Session Pool
# ---------------------------
@dataclass
class Session:
    id: str
    driver: SessionDriver
    created_at: float = field(default_factory=time.time)


class SessionPool:
    """Owns one isolated driver session per virtual user, from acquire to release."""
    def __init__(self, driver_factory: SessionDriverFactory):
        self.driver_factory = driver_factory
        self.lock = asyncio.Lock()  # Guards _sessions and _reserved
        self._sessions: Dict[str, Session] = {}
        self._reserved: Set[str] = set()  # ids whose driver is still being created
        self.acquired_total = 0
        self.released_total = 0

    @property
    def live_count(self) -> int:
        return len(self._sessions)

    def live_ids(self) -> List[str]:
        return list(self._sessions.keys())

    async def acquire(self, vu_id: str) -> Session:
        """Create a new isolated session for `vu_id`. Raises SessionCreationError."""
        async with self.lock:
            if vu_id in self._sessions or vu_id in self._reserved:
                raise SessionCreationError(f"Session for VU {vu_id} already exists", vu_id=vu_id)
            self._reserved.add(vu_id)

        driver: Optional[SessionDriver] = None
        registered = False
        try:
            try:
                driver = await self.driver_factory.create_driver(vu_id)
            except SessionCreationError:
                raise
            except Exception as e:
                raise SessionCreationError(f"Failed to create session for VU {vu_id}: {e}", vu_id=vu_id) from e

            session = Session(id=vu_id, driver=driver)
            async with self.lock:
                self._sessions[vu_id] = session
                registered = True
                self.acquired_total += 1
                live = len(self._sessions)
        except BaseException:
            # Cancelled (or failed) between creation and registration: release() cannot see this driver.
            if driver is not None and not registered:
                await self._close_driver(vu_id, driver)
            raise
        finally:
            self._reserved.discard(vu_id)

        logger.debug(f"VU {vu_id}: Session created. Live sessions: {live}")
        return session

    @staticmethod
    async def _close_driver(vu_id: str, driver: SessionDriver) -> bool:
        try:
            await driver.close()
            return True
        except Exception as e:
            logger.error(f"VU {vu_id}: Error closing session driver: {e}")
            return False

    async def release(self, vu_id: str):
        """Tear down and forget the session for `vu_id`. Unknown ids are a no-op. Never raises."""
        async with self.lock:
            session = self._sessions.pop(vu_id, None)
            if session is not None:
                self.released_total += 1
            live = len(self._sessions)

        if session is None:
            logger.debug(f"VU {vu_id}: No session to release (never acquired or already released).")
            return

        if await self._close_driver(vu_id, session.driver):
            logger.debug(f"VU {vu_id}: Session closed. Live sessions: {live}")

    async def close_all(self):
        """Release every remaining session (used after forced cancellation)."""
        remaining = self.live_ids()
        if remaining:
            logger.warning(f"Releasing {len(remaining)} leftover sessions: {remaining}")
        for vu_id in remaining:
            await self.release(vu_id)


# ---------------------------
# Journey State Machine
# ---------------------------
class JourneyState(str, Enum):
    START = "Start"
    LANDING = "Landing"
    QUESTION = "Question"
    INFO_FORM = "InfoForm"
    END = "End"
    COMPLETED = "Completed"
    FAILED = "Failed"


_STATE_ORDER = {state: rank for rank, state in enumerate(JourneyState)}


class JourneyProgress:
    """Forward-only position of one VU in the journey."""
    def __init__(self, vu_id: str):
        self.vu_id = vu_id
        self.state = JourneyState.START
        self.question = 0
        self.failure_kind: Optional[ErrorKind] = None
        self.history: List[str] = [self.label]

    @property
    def label(self) -> str:
        if self.state is JourneyState.QUESTION:
            return f"Question({self.question})"
        if self.state is JourneyState.FAILED:
            return f"Failed({self.failure_kind.value})"
        return self.state.value

    def advance(self, state: JourneyState, question: int = 0):
        if self.state in (JourneyState.COMPLETED, JourneyState.FAILED):
            raise RuntimeError(f"VU {self.vu_id}: journey already finished in state {self.label}")
        if (_STATE_ORDER[state], question) <= (_STATE_ORDER[self.state], self.question):
            raise RuntimeError(f"VU {self.vu_id}: illegal transition {self.label} -> {state.value}")
        self.state = state
        self.question = question
        self.history.append(self.label)

    def fail(self, kind: ErrorKind) -> str:
        """Mark as failed; returns the label of the step that failed."""
        failed_at = self.label
        self.failure_kind = kind
        self.state = JourneyState.FAILED
        self.history.append(self.label)
        return failed_at


@dataclass
class JourneyOutcome:
    vu_id: str
    completed: bool
    final_state: str
    elapsed_ms: float
    error: Optional[ErrorRecord] = None
    states: List[str] = field(default_factory=list)


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000.0


class JourneyStateMachine:
    """
    Executes the fixed journey (landing, N questions, info form, end page) on one
    session, emitting per-step timings. Aborts at the first failing step.
    """
    def __init__(
        self,
        target: TargetAddress,
        metrics: MetricsSink,
        *,
        timeout_ms: int = 10000,
        question_count: int = 6,
        think_time_ms: Tuple[int, int] = (300, 800),
        submit_delay_ms: Tuple[int, int] = (200, 500),
        rng: Optional[random.Random] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        self.target = target
        self.metrics = metrics
        self.timeout_ms = timeout_ms
        self.question_count = question_count
        self.think_time_ms = think_time_ms
        self.submit_delay_ms = submit_delay_ms
        self.rng = rng or random.Random()
        self.sleep = sleep  # None -> asyncio.sleep

    async def _pause(self, delay_range: Tuple[int, int]):
        delay_ms = human_delay_ms(self.rng, *delay_range)
        sleeper = self.sleep or asyncio.sleep
        await sleeper(delay_ms / 1000.0)

    async def run(self, vu: "VirtualUser", session: Session, user_data: UserData) -> JourneyOutcome:
        """Run the whole journey. Raises JourneyAbortedError on the first failing step."""
        driver = session.driver
        progress = JourneyProgress(vu.id)
        journey_start = time.monotonic()
        logger.info(f"VU {vu.id}: Starting journey for slug: {self.target.slug}")

        try:
            await self._landing(vu, driver, progress)
            for question_num in range(1, self.question_count + 1):
                await self._question(vu, driver, progress, question_num)
            await self._info_form(vu, driver, progress, user_data)
            await self._end_page(vu, driver, progress)
        except Exception as e:
            elapsed = _elapsed_ms(journey_start)
            kind = classify_error(e)
            failed_at = progress.fail(kind)
            record = ErrorRecord(
                vu_id=vu.id,
                kind=kind,
                message=str(e) or type(e).__name__,
                step_at_failure=failed_at,
                elapsed_ms=elapsed,
            )
            logger.error(f"VU {vu.id}: ✗ Journey failed at {failed_at} after {elapsed:.0f}ms: [{kind.value}] {record.message}")
            await self.metrics.emit(MetricKind.COUNTER, COUNTER_FAILED, 1, vu_id=vu.id)
            await self.metrics.emit(MetricKind.COUNTER, COUNTER_ERRORS.format(kind=kind.value), 1, vu_id=vu.id)
            raise JourneyAbortedError(record) from e

        total = _elapsed_ms(journey_start)
        progress.advance(JourneyState.COMPLETED)
        await self.metrics.emit(MetricKind.HISTOGRAM, METRIC_TOTAL_TIME, total, vu_id=vu.id)
        await self.metrics.emit(MetricKind.COUNTER, COUNTER_COMPLETED, 1, vu_id=vu.id)
        logger.info(f"VU {vu.id}: ✓ Journey completed successfully in {total:.0f}ms")
        return JourneyOutcome(
            vu_id=vu.id, completed=True, final_state=progress.label, elapsed_ms=total, states=list(progress.history)
        )

    # --- Steps ---
    async def _landing(self, vu, driver: SessionDriver, progress: JourneyProgress):
        progress.advance(JourneyState.LANDING)
        logger.debug(f"VU {vu.id}: Step 1: Visiting home page")
        step_start = time.monotonic()
        await driver.navigate(self.target.path(), self.timeout_ms)
        await driver.wait_for_url_pattern(self.target.url_pattern("question/1"), self.timeout_ms)
        await self.metrics.emit(MetricKind.HISTOGRAM, METRIC_LANDING, _elapsed_ms(step_start), vu_id=vu.id)
        logger.debug(f"VU {vu.id}: Redirected to question 1")

    async def _question(self, vu, driver: SessionDriver, progress: JourneyProgress, question_num: int):
        progress.advance(JourneyState.QUESTION, question_num)
        step_start = time.monotonic()
        await driver.wait_for_selector(FORM_SELECTOR, self.timeout_ms)

        await self._pause(self.think_time_ms)  # reading the question
        choice = choose_answer(self.rng)
        logger.debug(f"VU {vu.id}: Question {question_num}: selecting choice '{choice}'")
        await driver.click(ANSWER_SELECTOR.format(choice=choice))
        await self._pause(self.submit_delay_ms)

        submit_start = time.monotonic()
        await driver.click_and_wait_for_navigation(SUBMIT_SELECTOR, self.timeout_ms)
        submit_ms = _elapsed_ms(submit_start)
        await self.metrics.emit(MetricKind.HISTOGRAM, METRIC_QUESTION_SUBMIT.format(n=question_num), submit_ms, vu_id=vu.id)
        await self.metrics.emit(MetricKind.HISTOGRAM, METRIC_QUESTION_SUBMIT_ALL, submit_ms, vu_id=vu.id)
        logger.debug(f"VU {vu.id}: Question {question_num} completed in {_elapsed_ms(step_start):.0f}ms")

    async def _info_form(self, vu, driver: SessionDriver, progress: JourneyProgress, user_data: UserData):
        progress.advance(JourneyState.INFO_FORM)
        step_start = time.monotonic()
        await driver.wait_for_url_pattern(self.target.url_pattern("submit-info"), self.timeout_ms)
        await driver.wait_for_selector(FORM_SELECTOR, self.timeout_ms)

        for field_name in INFO_FIELDS:
            await driver.fill_field(field_name, getattr(user_data, field_name))
        logger.debug(f"VU {vu.id}: Submitting info: {user_data.email}")
        await self._pause(self.submit_delay_ms)

        submit_start = time.monotonic()
        await driver.click_and_wait_for_navigation(SUBMIT_SELECTOR, self.timeout_ms)
        await self.metrics.emit(MetricKind.HISTOGRAM, METRIC_INFOFORM_SUBMIT, _elapsed_ms(submit_start), vu_id=vu.id)
        logger.debug(f"VU {vu.id}: Info form completed in {_elapsed_ms(step_start):.0f}ms")

    async def _end_page(self, vu, driver: SessionDriver, progress: JourneyProgress):
        progress.advance(JourneyState.END)
        step_start = time.monotonic()
        await driver.wait_for_url_pattern(self.target.url_pattern("end"), self.timeout_ms)
        await driver.wait_for_load_state("networkidle", self.timeout_ms)
        await self.metrics.emit(MetricKind.HISTOGRAM, METRIC_END, _elapsed_ms(step_start), vu_id=vu.id)


# ---------------------------
# Arrival Scheduler
# ---------------------------
@dataclass(frozen=True)
class VirtualUser:
    id: str
    spawn_time: float  # seconds since run start
    assigned_phase: int  # 1-based phase index
    phase_name: Optional[str] = None


@dataclass
class VirtualUserOutcome:
    vu_id: str
    completed: bool
    final_state: str
    elapsed_ms: float
    error: Optional[ErrorRecord] = None
    cancelled: bool = False


@dataclass
class RunResult:
    vus_spawned: int
    outcomes: List[VirtualUserOutcome]
    metrics: MetricsSnapshot
    schedule_seconds: float
    run_seconds: float
    deadline_reached: bool = False

    @property
    def completed_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.completed)

    @property
    def failed_count(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.completed and not outcome.cancelled)

    @property
    def error_records(self) -> List[ErrorRecord]:
        return [outcome.error for outcome in self.outcomes if outcome.error is not None]


class ArrivalScheduler:
    """
    Starts one asyncio task per virtual user according to an ordered phase plan.

    Phases only gate *when* tasks start. The run ends once the phase schedule has
    elapsed (hold phases keep it open when hold_open is set) AND every spawned
    task has terminated; a journey that outlives the schedule extends the run.
    An optional deadline cancels whatever is still running; sessions are still
    released by each task's cleanup.
    """
    def __init__(
        self,
        phases: Sequence[Phase],
        pool: SessionPool,
        journey: JourneyStateMachine,
        metrics: MetricsSink,
        *,
        user_data_factory: Callable[[str], UserData],
        unit_seconds: float = 1.0,
        expected_vus: Optional[int] = None,
        hold_open: bool = True,
        deadline_s: Optional[float] = None,
        id_prefix: str = "vu",
    ):
        if not phases:
            raise ConfigurationError("At least one arrival phase is required")
        planned = planned_arrivals(phases)
        if expected_vus is not None and planned != expected_vus:
            raise ConfigurationError(f"Phase plan starts {planned} virtual users, expected {expected_vus}")

        self.phases = list(phases)
        self.pool = pool
        self.journey = journey
        self.metrics = metrics
        self.user_data_factory = user_data_factory
        self.unit_seconds = unit_seconds
        self.hold_open = hold_open
        self.deadline_s = deadline_s
        self.id_prefix = id_prefix

        self._id_counter = itertools.count(1)
        self.lock = asyncio.Lock()  # Guards _active_vus
        self._active_vus = 0
        self._run_start = 0.0
        self.vu_tasks: List[asyncio.Task] = []
        self.virtual_users: List[VirtualUser] = []
        self.outcomes: List[VirtualUserOutcome] = []

    def next_vu_id(self) -> str:
        """Collision-free for the lifetime of the scheduler, however fast VUs are spawned."""
        return f"{self.id_prefix}-{next(self._id_counter)}"

    def get_active_vu_count(self) -> int:
        return self._active_vus

    async def run(self) -> RunResult:
        self._run_start = time.monotonic()
        total = planned_arrivals(self.phases)
        logger.info(f"Starting run: {len(self.phases)} phases, {total} virtual users, unit={self.unit_seconds}s")
        for index, phase in enumerate(self.phases, start=1):
            logger.info(f"Phase {index} ({phase.name or 'unnamed'}): {phase.arrival_mode}={phase.value} for {phase.duration_units} units")

        deadline_reached = False
        schedule_seconds = 0.0
        try:
            if self.deadline_s is None:
                schedule_seconds = await self._run_to_completion()
            else:
                try:
                    schedule_seconds = await asyncio.wait_for(self._run_to_completion(), timeout=self.deadline_s)
                except asyncio.TimeoutError:
                    deadline_reached = True
                    schedule_seconds = time.monotonic() - self._run_start
                    logger.warning(f"Run deadline of {self.deadline_s}s reached. Cancelling outstanding virtual users.")
                    await self._cancel_outstanding()
        except asyncio.CancelledError:
            logger.info("Run cancelled. Cancelling outstanding virtual users.")
            await self._cancel_outstanding()
            raise

        run_seconds = time.monotonic() - self._run_start
        snapshot = await self.metrics.snapshot()
        result = RunResult(
            vus_spawned=len(self.virtual_users),
            outcomes=list(self.outcomes),
            metrics=snapshot,
            schedule_seconds=schedule_seconds,
            run_seconds=run_seconds,
            deadline_reached=deadline_reached,
        )
        logger.info(
            f"Run finished in {run_seconds:.2f}s: spawned={result.vus_spawned}, completed={result.completed_count}, "
            f"failed={result.failed_count}, live sessions={self.pool.live_count}"
        )
        return result

    async def _run_to_completion(self) -> float:
        await self._run_phases()
        schedule_seconds = time.monotonic() - self._run_start
        pending = [task for task in self.vu_tasks if not task.done()]
        if pending:
            logger.info(f"Phase schedule complete after {schedule_seconds:.2f}s; waiting for {len(pending)} virtual users to finish.")
        await asyncio.gather(*self.vu_tasks, return_exceptions=True)
        return schedule_seconds

    async def _run_phases(self):
        for index, phase in enumerate(self.phases, start=1):
            phase_seconds = phase.duration_units * self.unit_seconds
            arrivals = phase.arrivals
            if arrivals == 0:
                if self.hold_open:
                    logger.info(f"Phase {index}: no new arrivals, holding for {phase_seconds:.2f}s")
                    await asyncio.sleep(phase_seconds)
                continue

            # Spread arrivals evenly; the first starts at the beginning of the phase.
            interval = phase_seconds / arrivals
            phase_start = time.monotonic()
            for n in range(arrivals):
                self._spawn(index, phase)
                if n < arrivals - 1:
                    await asyncio.sleep(interval)
            logger.info(f"Phase {index}: spawned {arrivals} virtual users")
            remaining = phase_seconds - (time.monotonic() - phase_start)
            if remaining > 0:
                await asyncio.sleep(remaining)

    def _spawn(self, phase_index: int, phase: Phase) -> VirtualUser:
        vu = VirtualUser(
            id=self.next_vu_id(),
            spawn_time=time.monotonic() - self._run_start,
            assigned_phase=phase_index,
            phase_name=phase.name,
        )
        self.virtual_users.append(vu)
        self.vu_tasks.append(asyncio.create_task(self._run_virtual_user(vu), name=f"vu-task-{vu.id}"))
        logger.debug(f"VU {vu.id}: Spawned in phase {phase_index} at +{vu.spawn_time:.3f}s")
        return vu

    async def _run_virtual_user(self, vu: VirtualUser) -> VirtualUserOutcome:
        """Acquire a session, run the journey, always release. Never raises journey errors."""
        task_start = time.monotonic()
        outcome: Optional[VirtualUserOutcome] = None
        async with self.lock:
            self._active_vus += 1
        try:
            user_data = self.user_data_factory(vu.id)
            session = await self.pool.acquire(vu.id)
            result = await self.journey.run(vu, session, user_data)
            outcome = VirtualUserOutcome(
                vu_id=vu.id, completed=True, final_state=result.final_state, elapsed_ms=result.elapsed_ms
            )
        except JourneyAbortedError as e:
            record = e.record
            outcome = VirtualUserOutcome(
                vu_id=vu.id, completed=False, final_state=f"Failed({record.kind.value})",
                elapsed_ms=record.elapsed_ms, error=record,
            )
        except asyncio.CancelledError:
            elapsed = _elapsed_ms(task_start)
            logger.warning(f"VU {vu.id}: Task cancelled after {elapsed:.0f}ms.")
            outcome = VirtualUserOutcome(
                vu_id=vu.id, completed=False, final_state="Cancelled", elapsed_ms=elapsed, cancelled=True
            )
            raise
        except Exception as e:
            # Failures before the journey started (session creation, user data)
            elapsed = _elapsed_ms(task_start)
            kind = classify_error(e)
            record = ErrorRecord(vu_id=vu.id, kind=kind, message=str(e) or type(e).__name__,
                                 step_at_failure=JourneyState.START.value, elapsed_ms=elapsed)
            logger.error(f"VU {vu.id}: ✗ Could not start journey after {elapsed:.0f}ms: {type(e).__name__}: {e}")
            await self.metrics.emit(MetricKind.COUNTER, COUNTER_FAILED, 1, vu_id=vu.id)
            await self.metrics.emit(MetricKind.COUNTER, COUNTER_ERRORS.format(kind=kind.value), 1, vu_id=vu.id)
            outcome = VirtualUserOutcome(
                vu_id=vu.id, completed=False, final_state=f"Failed({kind.value})", elapsed_ms=elapsed, error=record
            )
        finally:
            await self.pool.release(vu.id)
            async with self.lock:
                self._active_vus -= 1
            if outcome is not None:
                self.outcomes.append(outcome)
        return outcome

    async def _cancel_outstanding(self):
        outstanding = [task for task in self.vu_tasks if not task.done()]
        for task in outstanding:
            task.cancel()
        if outstanding:
            logger.info(f"Requested cancellation for {len(outstanding)} virtual user tasks.")
            await asyncio.gather(*outstanding, return_exceptions=True)


# ---------------------------
# Entry point
# ---------------------------
async def run_load_test(
    config: LoadTestConfig,
    driver_factory: SessionDriverFactory,
    *,
    unit_seconds: float = 1.0,
    sleep: Optional[Callable[[float], Any]] = None,
) -> RunResult:
    """Build the default two-phase run from `config` and execute it with `driver_factory`."""
    configure_logging(config.debug)
    target = config.target
    phases = build_phase_plan(config.vus, config.duration)
    logger.info(f"Using DURATION={config.duration}, VUS={config.vus} (concurrent) against {target.base_url}/{target.slug}/")

    metrics = MetricsSink()
    pool = SessionPool(driver_factory)
    journey = JourneyStateMachine(
        target,
        metrics,
        timeout_ms=config.step_timeout_ms,
        question_count=config.question_count,
        think_time_ms=(config.think_time_min_ms, config.think_time_max_ms),
        submit_delay_ms=(config.submit_delay_min_ms, config.submit_delay_max_ms),
        rng=random.Random(config.seed),
        sleep=sleep,
    )
    scheduler = ArrivalScheduler(
        phases,
        pool,
        journey,
        metrics,
        user_data_factory=UserDataGenerator(seed=config.seed),
        unit_seconds=unit_seconds,
        expected_vus=config.vus,
        deadline_s=config.deadline_s,
    )

    await driver_factory.start()
    try:
        return await scheduler.run()
    finally:
        await pool.close_all()
        await driver_factory.shutdown()
