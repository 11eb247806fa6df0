#!/usr/bin/env python3
"""
periodic.py

Fixed-interval job runner. Each job invocation runs in its own supervised
child process, killed when its timeout expires, so a failing or hanging job
never blocks the next tick.
"""

from __future__ import annotations

import argparse
import functools
import importlib
import itertools
import logging
import math
import multiprocessing
import re
import sys
import threading
import time
from dataclasses import dataclass, field
from multiprocessing.connection import Connection
from multiprocessing.process import BaseProcess
from pathlib import Path
from queue import Empty, Queue
from typing import AbstractSet, Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Protocol, Sequence, Set, Union

import yaml


DEFAULT_CONFIG = "periodic.yaml"
DEFAULT_NAME = "periodic"
DEFAULT_POLL_SECONDS = 5
DEFAULT_STOP_TIMEOUT_SECONDS = 5.0
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

INFINITY = math.inf
JOB_IDENTITY = "job"
JOB_START_METHOD = "fork"

OUTCOME_NORMAL = "normal"
OUTCOME_FAILURE = "failure"
OUTCOME_TIMEOUT = "timeout"

STATE_ACTIVE = "active"
STATE_IDLE = "idle"

EVENT_START = "start"
EVENT_TICK = "tick"
EVENT_RUN_NOW = "run_now"
EVENT_TERMINATED = "terminated"
EVENT_QUERY = "query"
EVENT_STOP = "stop"

DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h|d)$")
INFINITY_TOKENS = {"infinity", "inf"}
DURATION_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}
TARGET_RE = re.compile(r"^[A-Za-z_][\w.]*:[A-Za-z_][\w.]*$")

RESERVED_LOG_KEYS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

Duration = float
Job = Callable[[], Any]


class PeriodicError(Exception):
    """Base error for periodic."""


class ConfigError(PeriodicError):
    """Config validation error."""


logger = logging.getLogger("periodic")


class MetadataFormatter(logging.Formatter):
    """Appends log_meta extras to the message as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = sorted(
            (key, value) for key, value in vars(record).items() if key not in RESERVED_LOG_KEYS
        )
        if not extras:
            return base
        return base + " " + " ".join(f"{key}={value}" for key, value in extras)


def setup_logging(level: int = logging.INFO, log_file: Optional[Path] = None) -> logging.Logger:
    if logger.handlers:
        return logger
    logger.setLevel(level)
    formatter = MetadataFormatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    if log_file is not None:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


LogSink = Callable[[str], None]


def _discard(message: str) -> None:
    return None


def make_log_sink(level: Optional[int], meta: Mapping[str, Any]) -> LogSink:
    if level is None:
        return _discard
    extra = dict(meta)

    def emit(message: str) -> None:
        logger.log(level, message, extra=extra)

    return emit


# Durations and option validation


def is_infinite(duration: Optional[Duration]) -> bool:
    return duration == INFINITY


def check_duration(value: Any, field_path: str) -> Duration:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Error: {field_path} must be a positive number of seconds or infinity.")
    if math.isnan(value) or value <= 0:
        raise ConfigError(f"Error: {field_path} must be > 0, got {value}.")
    return float(value)


def parse_duration(value: Any, field_path: str) -> Duration:
    if isinstance(value, str):
        text = value.strip().lower()
        if text in INFINITY_TOKENS:
            return INFINITY
        match = DURATION_RE.match(text)
        if not match:
            raise ConfigError(
                f'Error: {field_path} must be seconds, <number><ms|s|m|h|d> or infinity, got "{value}".'
            )
        return check_duration(float(match.group(1)) * DURATION_UNIT_SECONDS[match.group(2)], field_path)
    return check_duration(value, field_path)


def format_duration(duration: Duration) -> str:
    if is_infinite(duration):
        return "infinity"
    if duration < 1:
        return f"{duration * 1000:g}ms"
    return f"{duration:g}s"


def check_log_level(value: Any, field_path: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be a logging level name or number.")
    if isinstance(value, str):
        level = logging.getLevelName(value.strip().upper())
        if not isinstance(level, int):
            raise ConfigError(f'Error: {field_path} is not a known logging level, got "{value}".')
        return level
    if isinstance(value, int) and value >= 0:
        return value
    raise ConfigError(f"Error: {field_path} must be a logging level name or number.")


def check_log_meta(value: Any, field_path: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    meta: Dict[str, Any] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not key:
            raise ConfigError(f"Error: {field_path} keys must be non-empty strings.")
        if key in RESERVED_LOG_KEYS:
            raise ConfigError(f'Error: {field_path}.{key} clashes with a reserved log record attribute.')
        meta[key] = item
    return meta


@dataclass(frozen=True)
class PeriodicConfig:
    every: Duration
    run: Job
    initial_delay: Optional[Duration] = None
    overlap: bool = True
    timeout: Duration = INFINITY
    log_level: Optional[int] = None
    log_meta: Mapping[str, Any] = field(default_factory=dict)
    name: str = DEFAULT_NAME

    def __post_init__(self) -> None:
        object.__setattr__(self, "every", check_duration(self.every, "every"))
        if self.initial_delay is not None:
            object.__setattr__(self, "initial_delay", check_duration(self.initial_delay, "initial_delay"))
        object.__setattr__(self, "timeout", check_duration(self.timeout, "timeout"))
        if not callable(self.run):
            raise ConfigError("Error: run must be a zero-argument callable.")
        if not isinstance(self.overlap, bool):
            raise ConfigError("Error: overlap must be true or false.")
        object.__setattr__(self, "log_level", check_log_level(self.log_level, "log_level"))
        object.__setattr__(self, "log_meta", check_log_meta(self.log_meta, "log_meta"))
        if not isinstance(self.name, str) or not self.name.strip():
            raise ConfigError("Error: name must be a non-empty string.")

    @property
    def first_delay(self) -> Duration:
        return self.every if self.initial_delay is None else self.initial_delay


# Job invocation


def invoke_job(job: Job) -> None:
    job()


def resolve_target(target: str) -> Callable[..., Any]:
    if not isinstance(target, str) or not TARGET_RE.match(target.strip()):
        raise ConfigError(f'Error: target must look like "package.module:function", got "{target}".')
    module_name, _, attr_path = target.strip().partition(":")
    try:
        obj: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f'Error: cannot import module "{module_name}": {exc}') from exc
    for attr in attr_path.split("."):
        try:
            obj = getattr(obj, attr)
        except AttributeError as exc:
            raise ConfigError(f'Error: "{target}" does not resolve to an attribute.') from exc
    if not callable(obj):
        raise ConfigError(f'Error: "{target}" is not callable.')
    return obj


def bind_job(
    target: Union[str, Callable[..., Any]],
    args: Sequence[Any] = (),
    kwargs: Optional[Mapping[str, Any]] = None,
) -> Job:
    func = resolve_target(target) if isinstance(target, str) else target
    if not callable(func):
        raise ConfigError("Error: run target must be callable.")
    return functools.partial(func, *args, **dict(kwargs or {}))


# Overlap policy


def may_start(active_jobs: AbstractSet[str], overlap: bool) -> bool:
    return overlap or not active_jobs


# Supervision


@dataclass(frozen=True)
class Termination:
    identity: str
    outcome: str
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == OUTCOME_NORMAL

    def describe(self) -> str:
        if self.outcome == OUTCOME_FAILURE:
            return str(self.reason)
        return self.outcome


TerminationCallback = Callable[[Termination], None]


class JobSupervisor(Protocol):
    def start_isolated(
        self,
        identity: str,
        timeout: Duration,
        thunk: Callable[[], None],
        on_terminated: TerminationCallback,
    ) -> bool: ...

    def is_running(self, identity: str) -> bool: ...

    def shutdown(self) -> None: ...


SupervisorFactory = Callable[[str], JobSupervisor]


@dataclass
class _Child:
    identity: str
    on_terminated: TerminationCallback
    process: BaseProcess
    results: Connection


def _run_in_child(thunk: Callable[[], None], results: Connection) -> None:
    try:
        thunk()
    except BaseException as exc:
        results.send((OUTCOME_FAILURE, repr(exc)))
    else:
        results.send((OUTCOME_NORMAL, None))
    finally:
        results.close()


class ProcessSupervisor:
    """Runs each job in a forked child process, killed when its timeout expires.

    A waiter thread per child reads the outcome from a pipe. The identity is
    released only after the child process has been reaped, so a job is never
    still running when its termination is delivered.
    """

    def __init__(self, name: str = DEFAULT_NAME, start_method: str = JOB_START_METHOD) -> None:
        self.name = name
        self._context = multiprocessing.get_context(start_method)
        self._lock = threading.Lock()
        self._children: Dict[str, _Child] = {}
        self._closed = False

    def start_isolated(
        self,
        identity: str,
        timeout: Duration,
        thunk: Callable[[], None],
        on_terminated: TerminationCallback,
    ) -> bool:
        receiver, sender = self._context.Pipe(duplex=False)
        process = self._context.Process(
            target=_run_in_child,
            args=(thunk, sender),
            daemon=True,
            name=f"{self.name}:{identity}",
        )
        child = _Child(identity=identity, on_terminated=on_terminated, process=process, results=receiver)
        with self._lock:
            if self._closed or identity in self._children:
                receiver.close()
                sender.close()
                return False
            self._children[identity] = child
            try:
                process.start()
            except BaseException:
                del self._children[identity]
                receiver.close()
                raise
            finally:
                sender.close()
        waiter = threading.Thread(
            target=self._wait_child,
            args=(child, timeout),
            daemon=True,
            name=f"{self.name}:{identity}:waiter",
        )
        waiter.start()
        return True

    def is_running(self, identity: str) -> bool:
        with self._lock:
            return identity in self._children

    def running(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._children)

    def shutdown(self) -> None:
        """Kill every running child. No terminations are delivered for them."""
        with self._lock:
            self._closed = True
            children = list(self._children.values())
            self._children.clear()
        for child in children:
            child.process.kill()
            child.process.join()

    def _wait_child(self, child: _Child, timeout: Duration) -> None:
        try:
            if child.results.poll(None if is_infinite(timeout) else timeout):
                termination = self._collect(child)
            else:
                child.process.kill()
                child.process.join()
                termination = Termination(child.identity, OUTCOME_TIMEOUT)
        finally:
            child.results.close()
        self._finish(child, termination)

    def _collect(self, child: _Child) -> Termination:
        try:
            outcome, reason = child.results.recv()
        except EOFError:
            child.process.join()
            return Termination(
                child.identity,
                OUTCOME_FAILURE,
                f"job process exited with code {child.process.exitcode}",
            )
        child.process.join()
        return Termination(child.identity, outcome, reason)

    def _finish(self, child: _Child, termination: Termination) -> None:
        with self._lock:
            if self._children.get(child.identity) is not child:
                return
            del self._children[child.identity]
        child.on_terminated(termination)


# Ticking


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


ScheduleAfter = Callable[[Duration, Callable[[], None]], TimerHandle]


def start_timer(delay: Duration, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


class TickScheduler:
    def __init__(self, deliver: Callable[[], None], schedule_after: Optional[ScheduleAfter] = None) -> None:
        self._deliver = deliver
        self._schedule_after = schedule_after or start_timer
        self.handle: Optional[TimerHandle] = None

    @property
    def armed(self) -> bool:
        return self.handle is not None

    def schedule_next(self, delay: Duration) -> None:
        if is_infinite(delay):
            self.handle = None
            return
        self.handle = self._schedule_after(delay, self._deliver)

    def cancel(self) -> None:
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None


# Scheduler


@dataclass(frozen=True)
class ControlEvent:
    kind: str
    termination: Optional[Termination] = None
    reply: Optional["Queue[SchedulerSnapshot]"] = None


@dataclass(frozen=True)
class SchedulerSnapshot:
    name: str
    state: str
    active_jobs: FrozenSet[str]
    timer_armed: bool


class Periodic:
    """Runs ``config.run`` every ``config.every`` seconds.

    All state changes happen on one control thread that consumes events in
    arrival order: ticks from the timer, ``run_now()`` requests, and job
    terminations reported by the supervisor.
    """

    def __init__(
        self,
        config: PeriodicConfig,
        supervisor: Optional[JobSupervisor] = None,
        schedule_after: Optional[ScheduleAfter] = None,
        supervisor_factory: Optional[SupervisorFactory] = None,
    ) -> None:
        self.config = config
        self._supervisor_factory: SupervisorFactory = supervisor_factory or ProcessSupervisor
        self._schedule_after = schedule_after
        self._events: "Queue[ControlEvent]" = Queue()
        self._supervisor: JobSupervisor = supervisor or self._supervisor_factory(config.name)
        self._ticker = TickScheduler(self._post_tick, schedule_after)
        self._log = make_log_sink(config.log_level, config.log_meta)
        self._active_jobs: Set[str] = set()
        self._job_numbers = itertools.count(1)
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "Periodic":
        return self.start()

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    @property
    def name(self) -> str:
        return self.config.name

    def start(self) -> "Periodic":
        if self._thread is not None:
            raise PeriodicError(f'Scheduler "{self.name}" was already started.')
        self._thread = threading.Thread(target=self._control_loop, daemon=True, name=f"{self.name}:control")
        self._events.put(ControlEvent(EVENT_START))
        self._thread.start()
        return self

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_now(self) -> None:
        if not self.is_alive():
            raise PeriodicError(f'Scheduler "{self.name}" is not running.')
        self._events.put(ControlEvent(EVENT_RUN_NOW))

    def snapshot(self, timeout: float = DEFAULT_STOP_TIMEOUT_SECONDS) -> SchedulerSnapshot:
        if not self.is_alive():
            return self._snapshot()
        reply: "Queue[SchedulerSnapshot]" = Queue(maxsize=1)
        self._events.put(ControlEvent(EVENT_QUERY, reply=reply))
        try:
            return reply.get(timeout=timeout)
        except Empty as exc:
            if not self.is_alive():
                return self._snapshot()
            raise PeriodicError(f'Scheduler "{self.name}" did not answer within {timeout}s.') from exc

    def stop(self, timeout: float = DEFAULT_STOP_TIMEOUT_SECONDS) -> None:
        if self._thread is None:
            return
        if self._thread.is_alive():
            self._events.put(ControlEvent(EVENT_STOP))
            self._thread.join(timeout=timeout)

    def replacement(self) -> "Periodic":
        """Build a fresh, unstarted scheduler with the same config, timer and supervisor factories."""
        return Periodic(
            self.config,
            schedule_after=self._schedule_after,
            supervisor_factory=self._supervisor_factory,
        )

    def _post_tick(self) -> None:
        self._events.put(ControlEvent(EVENT_TICK))

    def _post_termination(self, termination: Termination) -> None:
        self._events.put(ControlEvent(EVENT_TERMINATED, termination=termination))

    def _control_loop(self) -> None:
        while True:
            event = self._events.get()
            if event.kind == EVENT_STOP:
                self._teardown()
                return
            try:
                self._handle(event)
            except Exception:
                logger.exception('Scheduler "%s" crashed while handling a %s event.', self.name, event.kind)
                self._teardown()
                return

    def _handle(self, event: ControlEvent) -> None:
        if event.kind == EVENT_START:
            self._ticker.schedule_next(self.config.first_delay)
        elif event.kind == EVENT_TICK:
            self._maybe_start_job()
            self._ticker.schedule_next(self.config.every)
        elif event.kind == EVENT_RUN_NOW:
            self._maybe_start_job()
        elif event.kind == EVENT_TERMINATED and event.termination is not None:
            self._job_terminated(event.termination)
        elif event.kind == EVENT_QUERY and event.reply is not None:
            event.reply.put(self._snapshot())
        else:
            raise PeriodicError(f"Unsupported control event: {event.kind}")

    def _maybe_start_job(self) -> None:
        if not may_start(self._active_jobs, self.config.overlap):
            self._log("previous job still running, not starting another instance")
            return
        self._start_job()

    def _start_job(self) -> None:
        identity = f"{JOB_IDENTITY}-{next(self._job_numbers)}" if self.config.overlap else JOB_IDENTITY
        job = self.config.run
        started = self._supervisor.start_isolated(
            identity,
            self.config.timeout,
            lambda: invoke_job(job),
            self._post_termination,
        )
        if not started:
            self._log("job start rejected by the supervisor")
            return
        self._active_jobs.add(identity)
        self._log("starting the job")

    def _job_terminated(self, termination: Termination) -> None:
        if termination.identity not in self._active_jobs:
            raise PeriodicError(f'Termination reported for unknown job "{termination.identity}".')
        self._active_jobs.remove(termination.identity)
        if termination.succeeded:
            self._log("job finished")
        else:
            self._log(f"job failed with the reason `{termination.describe()}`")

    def _snapshot(self) -> SchedulerSnapshot:
        return SchedulerSnapshot(
            name=self.name,
            state=STATE_ACTIVE if self._ticker.armed else STATE_IDLE,
            active_jobs=frozenset(self._active_jobs),
            timer_armed=self._ticker.armed,
        )

    def _teardown(self) -> None:
        self._ticker.cancel()
        self._supervisor.shutdown()


def start_periodic(**options: Any) -> Periodic:
    return Periodic(PeriodicConfig(**options)).start()


# Config file


@dataclass(frozen=True)
class JobSpec:
    name: str
    enabled: bool
    config: PeriodicConfig


JOB_KEYS = {"name", "enabled", "every", "initial_delay", "run", "overlap", "timeout", "log_level", "log_meta"}
DEFAULT_KEYS = {"initial_delay", "overlap", "timeout", "log_level", "log_meta"}


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_run(raw: Any, field_path: str) -> Job:
    if isinstance(raw, str):
        try:
            return bind_job(raw)
        except ConfigError as exc:
            raise ConfigError(f"{exc} (at {field_path})") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f'Error: {field_path} must be a "module:function" string or a mapping.')
    unknown = set(raw.keys()) - {"target", "args", "kwargs"}
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    target = ensure_str(raw.get("target"), f"{field_path}.target")
    args = raw.get("args") or []
    if not isinstance(args, list):
        raise ConfigError(f"Error: {field_path}.args must be a list.")
    kwargs = raw.get("kwargs") or {}
    if not isinstance(kwargs, dict) or not all(isinstance(key, str) for key in kwargs):
        raise ConfigError(f"Error: {field_path}.kwargs must be a mapping with string keys.")
    try:
        return bind_job(target, args, kwargs)
    except ConfigError as exc:
        raise ConfigError(f"{exc} (at {field_path}.target)") from exc


def _optional_duration(value: Any, field_path: str, default: Optional[Duration]) -> Optional[Duration]:
    if value is None:
        return default
    return parse_duration(value, field_path)


def parse_config(config_path: Path) -> List[JobSpec]:
    payload = _load_config_payload(config_path)

    unknown_top = set(payload.keys()) - {"version", "defaults", "jobs"}
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    defaults = payload.get("defaults", {}) or {}
    if not isinstance(defaults, dict):
        raise ConfigError("Error: defaults must be a mapping.")
    unknown_defaults = set(defaults.keys()) - DEFAULT_KEYS
    if unknown_defaults:
        raise ConfigError(f"Error: Unknown keys in defaults: {sorted(unknown_defaults)}.")

    default_initial_delay = _optional_duration(defaults.get("initial_delay"), "defaults.initial_delay", None)
    default_overlap = ensure_bool(defaults.get("overlap"), "defaults.overlap", True)
    default_timeout = _optional_duration(defaults.get("timeout"), "defaults.timeout", INFINITY)
    default_log_level = check_log_level(defaults.get("log_level"), "defaults.log_level")
    default_log_meta = check_log_meta(defaults.get("log_meta"), "defaults.log_meta")

    jobs_raw = payload.get("jobs")
    if not isinstance(jobs_raw, list) or not jobs_raw:
        raise ConfigError("Error: jobs must be a non-empty list.")

    seen_names: Set[str] = set()
    jobs: List[JobSpec] = []

    for idx, job_raw in enumerate(jobs_raw):
        path = f"jobs[{idx}]"
        if not isinstance(job_raw, dict):
            raise ConfigError(f"Error: {path} must be a mapping.")

        unknown_job = set(job_raw.keys()) - JOB_KEYS
        if unknown_job:
            raise ConfigError(f"Error: Unknown keys in {path}: {sorted(unknown_job)}.")

        name = ensure_str(job_raw.get("name"), f"{path}.name")
        if name in seen_names:
            raise ConfigError(f'Error: Duplicate job name "{name}".')
        seen_names.add(name)

        if "every" not in job_raw:
            raise ConfigError(f"Error: {path}.every is required.")
        every = parse_duration(job_raw.get("every"), f"{path}.every")
        if "run" not in job_raw:
            raise ConfigError(f"Error: {path}.run is required.")
        run = parse_run(job_raw.get("run"), f"{path}.run")

        log_meta = dict(default_log_meta)
        log_meta.update(check_log_meta(job_raw.get("log_meta"), f"{path}.log_meta"))
        log_level = default_log_level
        if "log_level" in job_raw:
            log_level = check_log_level(job_raw["log_level"], f"{path}.log_level")

        config = PeriodicConfig(
            every=every,
            run=run,
            initial_delay=_optional_duration(job_raw.get("initial_delay"), f"{path}.initial_delay", default_initial_delay),
            overlap=ensure_bool(job_raw.get("overlap"), f"{path}.overlap", default_overlap),
            timeout=_optional_duration(job_raw.get("timeout"), f"{path}.timeout", default_timeout),
            log_level=log_level,
            log_meta=log_meta,
            name=name,
        )
        jobs.append(
            JobSpec(
                name=name,
                enabled=ensure_bool(job_raw.get("enabled"), f"{path}.enabled", True),
                config=config,
            )
        )

    return jobs


def filter_jobs(jobs: List[JobSpec], job_name: Optional[str], include_disabled: bool = False) -> List[JobSpec]:
    selected = jobs
    if job_name:
        selected = [job for job in selected if job.name == job_name]
        if not selected:
            raise PeriodicError(f'Unknown job "{job_name}".')
    if include_disabled:
        return selected
    selected = [job for job in selected if job.enabled]
    if not selected:
        raise PeriodicError("No enabled jobs selected.")
    return selected


def describe_job(job: JobSpec) -> str:
    config = job.config
    parts = [
        f"every={format_duration(config.every)}",
        f"initial_delay={format_duration(config.first_delay)}",
        f"overlap={'yes' if config.overlap else 'no'}",
        f"timeout={format_duration(config.timeout)}",
    ]
    if config.log_level is not None:
        parts.append(f"log_level={logging.getLevelName(config.log_level).lower()}")
    return f"- {job.name} (enabled={job.enabled}): " + " ".join(parts)


# Commands


def run_once(config: PeriodicConfig, supervisor: Optional[JobSupervisor] = None) -> Termination:
    supervisor = supervisor or ProcessSupervisor(config.name)
    done: "Queue[Termination]" = Queue(maxsize=1)
    job = config.run
    if not supervisor.start_isolated(JOB_IDENTITY, config.timeout, lambda: invoke_job(job), done.put):
        raise PeriodicError(f'Job "{config.name}" is already running.')
    return done.get()


def start_schedulers(
    jobs: List[JobSpec],
    schedule_after: Optional[ScheduleAfter] = None,
    supervisor_factory: Optional[SupervisorFactory] = None,
) -> Dict[str, Periodic]:
    schedulers: Dict[str, Periodic] = {}
    for job in jobs:
        if not job.enabled:
            continue
        scheduler = Periodic(job.config, schedule_after=schedule_after, supervisor_factory=supervisor_factory)
        schedulers[job.name] = scheduler.start()
    return schedulers


def restart_dead_schedulers(schedulers: Dict[str, Periodic]) -> List[str]:
    restarted: List[str] = []
    for name, scheduler in list(schedulers.items()):
        if scheduler.is_alive():
            continue
        logger.error("Scheduler %s stopped unexpectedly; restarting it.", name)
        schedulers[name] = scheduler.replacement().start()
        restarted.append(name)
    return restarted


def stop_schedulers(schedulers: Dict[str, Periodic]) -> None:
    for scheduler in schedulers.values():
        scheduler.stop()


def command_validate(config_path: Path) -> int:
    jobs = parse_config(config_path)
    enabled_count = sum(1 for job in jobs if job.enabled)
    print(f"Config valid: {config_path}")
    print(f"Total jobs: {len(jobs)}")
    print(f"Enabled jobs: {enabled_count}")
    for job in jobs:
        print(describe_job(job))
    return 0


def command_run(config_path: Path, job_name: Optional[str]) -> int:
    jobs = filter_jobs(parse_config(config_path), job_name)
    exit_code = 0
    for job in jobs:
        logger.info("Running %s once (timeout=%s)", job.name, format_duration(job.config.timeout))
        started = time.monotonic()
        termination = run_once(job.config)
        duration = time.monotonic() - started
        if termination.succeeded:
            logger.info("Job %s finished in %.2fs", job.name, duration)
        else:
            logger.error("Job %s failed after %.2fs with the reason `%s`", job.name, duration, termination.describe())
            exit_code = 1
    return exit_code


def command_daemon(config_path: Path, job_name: Optional[str], poll_seconds: int) -> int:
    jobs = filter_jobs(parse_config(config_path), job_name)
    logger.info("Starting daemon with %s enabled job(s), poll_seconds=%s", len(jobs), poll_seconds)
    schedulers = start_schedulers(jobs)
    try:
        while True:
            time.sleep(poll_seconds)
            restart_dead_schedulers(schedulers)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    finally:
        stop_schedulers(schedulers)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="periodic fixed-interval job runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to periodic YAML config (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--log-level", default="info", help="Console/file log level (default: info)")
    parser.add_argument("--log-file", help="Also write logs to this file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", help="Validate config and print a job summary")

    run_parser = subparsers.add_parser("run", help="Run jobs once in the foreground")
    run_parser.add_argument("--job", help="Run one job by name")

    daemon_parser = subparsers.add_parser("daemon", help="Run jobs on their intervals until interrupted")
    daemon_parser.add_argument("--job", help="Schedule one job by name")
    daemon_parser.add_argument(
        "--poll-seconds",
        type=int,
        default=DEFAULT_POLL_SECONDS,
        help=f"How often dead schedulers are checked for (default: {DEFAULT_POLL_SECONDS})",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config).resolve()

    try:
        level = check_log_level(args.log_level, "--log-level")
        setup_logging(level if level is not None else logging.INFO, Path(args.log_file) if args.log_file else None)
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "run":
            return command_run(config_path, job_name=args.job)
        if args.command == "daemon":
            if args.poll_seconds <= 0:
                raise PeriodicError("--poll-seconds must be >= 1")
            return command_daemon(config_path, job_name=args.job, poll_seconds=args.poll_seconds)
        raise PeriodicError(f"Unsupported command: {args.command}")
    except PeriodicError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
