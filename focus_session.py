#!/usr/bin/env python3
# focus_session: timer-driven work sessions over an AI-refined task plan
#
# Hotkeys
#   space  start / pause the timer
#   n      skip to the next phase
#   +      add 5 minutes to the current phase
#   r      reset the timer to idle
#   j/k    move task selection
#   x      toggle completion of the selected task
#   s      save progress
#   e      end session (save, exit on success)
#   q      quit (best-effort save of anything unsaved)
#
# Config highlights
# - pomodoro: {work_minutes: 25, short_break_minutes: 5, long_break_minutes: 15}
# - reorder_policy: drop      # or "strict": ignore reorders that would drop tasks
# - ephemeral_prefixes: ["task-", "temp-"]
# - copilot: {url: https://.../functions/v1/refine-plan}
#
# Notes
# - Tasks created client-side (imported plans, Co-pilot additions) carry
#   ephemeral ids until the first save persists them and swaps in store ids.
# - Saves never run concurrently with reconciliation; the timer tick is held
#   while a save is in flight.
#
# Environment
# - FOCUS_API_TOKEN (Co-pilot refine-plan endpoint)

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import datetime as dt
import enum
import functools
import json
import math
import os
import signal
import sqlite3
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import requests
import yaml
from prompt_toolkit import Application
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.styles import Style
from prompt_toolkit.widgets import Frame
import logging
from logging.handlers import RotatingFileHandler


logger = logging.getLogger('focus_session')


# -----------------------------
# Errors
# -----------------------------
class FocusSessionError(Exception):
    """Base class for everything the session core raises."""


class ModificationError(FocusSessionError):
    pass


class DuplicateIdError(ModificationError):
    def __init__(self, task_id: str):
        super().__init__(f"Task id already present in plan: {task_id}")
        self.task_id = task_id


class PersistenceError(FocusSessionError):
    pass


class RefinementError(FocusSessionError):
    pass


class TimerError(FocusSessionError):
    pass


class ConfigError(FocusSessionError, ValueError):
    pass


# -----------------------------
# Config
# -----------------------------
DEFAULT_DB_PATH = os.path.expanduser("~/.focus_session.db")
DEFAULT_LOG_PATH = os.path.expanduser("~/.focus_session.log")
DEFAULT_EPHEMERAL_PREFIXES: Tuple[str, ...] = ("task-", "temp-")
REORDER_POLICIES = ("drop", "strict")


@dataclass
class TimerSettings:
    work_minutes: int = 25
    short_break_minutes: int = 5
    long_break_minutes: int = 15
    long_break_every: int = 4
    sound_notifications: bool = True


@dataclass
class Config:
    db: str = DEFAULT_DB_PATH
    project_id: Optional[str] = None
    pomodoro: TimerSettings = field(default_factory=TimerSettings)
    copilot_url: Optional[str] = None
    copilot_timeout: int = 60
    reorder_policy: str = "drop"
    ephemeral_prefixes: Tuple[str, ...] = DEFAULT_EPHEMERAL_PREFIXES
    log_level: str = "ERROR"

    @property
    def strict_reorder(self) -> bool:
        return self.reorder_policy == "strict"


def _positive_int(raw: dict, key: str, default: int) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"Config: '{key}' must be an integer, got {value!r}")
    try:
        num = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Config: '{key}' must be an integer, got {value!r}")
    if num <= 0:
        raise ConfigError(f"Config: '{key}' must be positive, got {num}")
    return num


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config: '{key}' must be a mapping")
    return value


def load_config(path: Optional[str]) -> Config:
    """Read the YAML config; ``None`` means run on defaults."""
    if path is None:
        return Config()
    if not os.path.isfile(path):
        raise ConfigError(f"Config file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config: top level must be a mapping")
    pom = _section(raw, "pomodoro")
    settings = TimerSettings(
        work_minutes=_positive_int(pom, "work_minutes", 25),
        short_break_minutes=_positive_int(pom, "short_break_minutes", 5),
        long_break_minutes=_positive_int(pom, "long_break_minutes", 15),
        long_break_every=_positive_int(pom, "long_break_every", 4),
        sound_notifications=bool(pom.get("sound_notifications", True)),
    )
    copilot = _section(raw, "copilot")
    policy = str(raw.get("reorder_policy") or "drop").strip().lower()
    if policy not in REORDER_POLICIES:
        raise ConfigError(f"Config: 'reorder_policy' must be one of {', '.join(REORDER_POLICIES)}, got {policy!r}")
    prefixes = raw.get("ephemeral_prefixes") or list(DEFAULT_EPHEMERAL_PREFIXES)
    if isinstance(prefixes, str):
        prefixes = [prefixes]
    prefixes = tuple(str(p) for p in prefixes if str(p))
    if not prefixes:
        raise ConfigError("Config: 'ephemeral_prefixes' must name at least one prefix")
    project_id = raw.get("project_id")
    return Config(
        db=os.path.expanduser(str(raw.get("db") or DEFAULT_DB_PATH)),
        project_id=str(project_id) if project_id else None,
        pomodoro=settings,
        copilot_url=copilot.get("url") or None,
        copilot_timeout=_positive_int(copilot, "timeout", 60),
        reorder_policy=policy,
        ephemeral_prefixes=prefixes,
        log_level=str(raw.get("log_level") or "ERROR"),
    )


def load_dotenv_token() -> Optional[str]:
    """Load FOCUS_API_TOKEN or TOKEN from a .env file (current dir or script dir) if present."""
    candidates = [os.getcwd(), os.path.dirname(os.path.abspath(__file__))]
    for base in candidates:
        path = os.path.join(base, ".env")
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith('#') or '=' not in line:
                        continue
                    k, v = line.split('=', 1)
                    k = k.strip()
                    v = v.strip().strip('"').strip("'")
                    if k in ("FOCUS_API_TOKEN", "TOKEN") and v:
                        os.environ.setdefault("FOCUS_API_TOKEN", v)
                        return v
        except OSError:
            continue
    return None


def setup_logging(log_level: str = "ERROR", log_path: Optional[str] = None) -> logging.Logger:
    """Route the package logger to a rotating file; the handler level follows ``log_level``."""
    log_path = log_path or DEFAULT_LOG_PATH
    # Always reset handlers so CLI --log-level reliably controls file output.
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = getattr(logging, str(log_level).upper(), None)
    if not isinstance(lvl, int):
        lvl = logging.ERROR
    fh.setLevel(lvl)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)
    return logger


# -----------------------------
# Tasks and modifications
# -----------------------------
MAX_ESTIMATE_MINUTES = 7 * 24 * 60
EDITABLE_FIELDS = ("title", "action", "details", "estimated_minutes", "completed")
_FIELD_ALIASES = {
    "estimated_minutes_per_sub_task": "estimated_minutes",
    "estimatedMinutes": "estimated_minutes",
    "isCompleted": "completed",
    "is_completed": "completed",
}


@dataclass(frozen=True)
class Task:
    id: str
    title: str = ""
    action: str = ""
    details: str = ""
    estimated_minutes: Optional[int] = None  # None => no estimate
    completed: bool = False


@dataclass
class Update:
    task_id: str
    changes: Dict[str, object] = field(default_factory=dict)


@dataclass
class Add:
    new_task: Task
    after_task_id: Optional[str] = None


@dataclass
class Delete:
    task_id: str


@dataclass
class Reorder:
    new_order: List[str] = field(default_factory=list)


Modification = Union[Update, Add, Delete, Reorder]


def mint_ephemeral_id(prefix: str = "temp-") -> str:
    return f"{prefix}{uuid.uuid4().hex[:12]}"


def coerce_estimate(value: object) -> Optional[int]:
    """Whole positive minutes, or None for "no estimate".

    Raises ValueError on junk, non-finite numbers and estimates above
    MAX_ESTIMATE_MINUTES.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid estimate: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        raise ValueError(f"Invalid estimate: {value!r}")
    if not math.isfinite(number):
        raise ValueError(f"Invalid estimate: {value!r}")
    minutes = int(round(number))
    if minutes > MAX_ESTIMATE_MINUTES:
        raise ValueError(f"Estimate too large: {minutes} minutes (max {MAX_ESTIMATE_MINUTES})")
    return minutes if minutes > 0 else None


def normalize_changes(changes: Dict[str, object]) -> Dict[str, object]:
    """Map wire aliases onto Task fields, keeping only editable ones."""
    out: Dict[str, object] = {}
    for key, value in (changes or {}).items():
        name = _FIELD_ALIASES.get(key, key)
        if name not in EDITABLE_FIELDS:
            continue
        if name == "estimated_minutes":
            try:
                out[name] = coerce_estimate(value)
            except ValueError as exc:
                raise ModificationError(str(exc)) from exc
        elif name == "completed":
            out[name] = bool(value)
        else:
            out[name] = "" if value is None else str(value)
    return out


def task_from_dict(raw: Dict[str, object]) -> Task:
    task_id = raw.get("id")
    fields = normalize_changes(raw)
    return Task(id=str(task_id) if task_id else mint_ephemeral_id(), **fields)


def task_to_dict(task: Task) -> Dict[str, object]:
    return {
        "id": task.id,
        "title": task.title,
        "action": task.action,
        "details": task.details,
        "estimated_minutes_per_sub_task": task.estimated_minutes,
        "isCompleted": task.completed,
    }


def modification_from_dict(raw: Dict[str, object]) -> Modification:
    """Parse one Co-pilot modification object."""
    if not isinstance(raw, dict):
        raise ModificationError(f"Modification must be an object, got {raw!r}")
    op = str(raw.get("operation") or "").strip().lower()
    if op == "update":
        task_id = raw.get("taskId") or raw.get("task_id")
        changes = raw.get("changes")
        if not task_id or not isinstance(changes, dict):
            raise ModificationError("update needs 'taskId' and a 'changes' object")
        return Update(str(task_id), normalize_changes(changes))
    if op == "add":
        new_task = raw.get("newTask") or raw.get("new_task")
        if not isinstance(new_task, dict):
            raise ModificationError("add needs a 'newTask' object")
        after = raw.get("afterTaskId") or raw.get("after_task_id")
        return Add(task_from_dict(new_task), str(after) if after else None)
    if op == "delete":
        task_id = raw.get("taskId") or raw.get("task_id")
        if not task_id:
            raise ModificationError("delete needs 'taskId'")
        return Delete(str(task_id))
    if op == "reorder":
        order = raw.get("newOrder") or raw.get("new_order")
        if not isinstance(order, list):
            raise ModificationError("reorder needs a 'newOrder' list")
        return Reorder([str(x) for x in order])
    raise ModificationError(f"Invalid modification operation: {raw.get('operation')!r}")


def modification_to_dict(mod: Modification) -> Dict[str, object]:
    if isinstance(mod, Update):
        return {"operation": "update", "taskId": mod.task_id, "changes": dict(mod.changes)}
    if isinstance(mod, Add):
        out: Dict[str, object] = {"operation": "add", "newTask": task_to_dict(mod.new_task)}
        if mod.after_task_id:
            out["afterTaskId"] = mod.after_task_id
        return out
    if isinstance(mod, Delete):
        return {"operation": "delete", "taskId": mod.task_id}
    if isinstance(mod, Reorder):
        return {"operation": "reorder", "newOrder": list(mod.new_order)}
    raise ModificationError(f"Unsupported modification: {mod!r}")


def _apply_update(tasks: List[Task], op: Update) -> List[Task]:
    for idx, task in enumerate(tasks):
        if task.id == op.task_id:
            updated = dataclasses.replace(task, **normalize_changes(op.changes))
            return tasks[:idx] + [updated] + tasks[idx + 1:]
    # already deleted or never existed
    return tasks


def _apply_add(tasks: List[Task], op: Add) -> List[Task]:
    new_task = dataclasses.replace(op.new_task, id=op.new_task.id or mint_ephemeral_id(), completed=False)
    if any(t.id == new_task.id for t in tasks):
        raise DuplicateIdError(new_task.id)
    insert_at = 0
    if op.after_task_id:
        for idx, task in enumerate(tasks):
            if task.id == op.after_task_id:
                insert_at = idx + 1
                break
    return tasks[:insert_at] + [new_task] + tasks[insert_at:]


def _apply_delete(tasks: List[Task], op: Delete) -> List[Task]:
    return [t for t in tasks if t.id != op.task_id]


def _apply_reorder(tasks: List[Task], op: Reorder, strict: bool) -> List[Task]:
    by_id = {t.id: t for t in tasks}
    if strict and set(op.new_order) != set(by_id):
        logger.warning(
            "Ignoring reorder that does not name every task exactly (missing=%s, unknown=%s)",
            sorted(set(by_id) - set(op.new_order)), sorted(set(op.new_order) - set(by_id)),
        )
        return tasks
    ordered: List[Task] = []
    seen: Set[str] = set()
    for task_id in op.new_order:
        if task_id in seen or task_id not in by_id:
            continue
        seen.add(task_id)
        ordered.append(by_id[task_id])
    dropped = [t.id for t in tasks if t.id not in seen]
    if dropped:
        logger.warning("Reorder dropped %d task(s) not named in the new order: %s", len(dropped), dropped)
    return ordered


def apply_modifications(tasks: Sequence[Task], ops: Iterable[Modification], *, strict_reorder: bool = False) -> List[Task]:
    """Apply ``ops`` in order, each against the previous result, returning a new list.

    The input is never mutated, so a DuplicateIdError discards the whole batch.
    Update/Delete of an unknown id is a no-op. Add without a resolvable
    ``after_task_id`` goes to the head. Reorder keeps only the named tasks
    unless ``strict_reorder`` is set, in which case an incomplete reorder is
    skipped.
    """
    result = list(tasks)
    for op in ops:
        if isinstance(op, Update):
            result = _apply_update(result, op)
        elif isinstance(op, Add):
            result = _apply_add(result, op)
        elif isinstance(op, Delete):
            result = _apply_delete(result, op)
        elif isinstance(op, Reorder):
            result = _apply_reorder(result, op, strict_reorder)
        else:
            raise ModificationError(f"Unsupported modification: {op!r}")
    return result


# -----------------------------
# Id reconciliation
# -----------------------------
PersistFn = Callable[[List[Task]], Tuple[List[Task], Dict[str, str]]]


def is_ephemeral_id(task_id: Optional[str], prefixes: Sequence[str] = DEFAULT_EPHEMERAL_PREFIXES) -> bool:
    return bool(task_id) and str(task_id).startswith(tuple(prefixes))


def remap_task_ids(tasks: Sequence[Task], id_map: Dict[str, str]) -> List[Task]:
    if not id_map:
        return list(tasks)
    return [dataclasses.replace(t, id=id_map[t.id]) if t.id in id_map else t for t in tasks]


def remap_modifications(ops: Sequence[Modification], id_map: Dict[str, str]) -> List[Modification]:
    """Point pending references at durable ids."""
    if not id_map:
        return list(ops)

    def _m(task_id: Optional[str]) -> Optional[str]:
        return id_map.get(task_id, task_id) if task_id else task_id

    out: List[Modification] = []
    for op in ops:
        if isinstance(op, Update):
            out.append(Update(_m(op.task_id), dict(op.changes)))
        elif isinstance(op, Add):
            out.append(Add(dataclasses.replace(op.new_task, id=_m(op.new_task.id)), _m(op.after_task_id)))
        elif isinstance(op, Delete):
            out.append(Delete(_m(op.task_id)))
        elif isinstance(op, Reorder):
            out.append(Reorder([_m(t) for t in op.new_order]))
        else:
            out.append(op)
    return out


def _validate_id_map(tasks: List[Task], ephemeral: List[Task], id_map: Dict[str, str],
                     prefixes: Sequence[str]) -> Dict[str, str]:
    missing = [t.id for t in ephemeral if not id_map.get(t.id)]
    if missing:
        raise PersistenceError(f"Store returned no durable id for: {', '.join(missing)}")
    resolved = {t.id: str(id_map[t.id]) for t in ephemeral}
    still_ephemeral = [v for v in resolved.values() if is_ephemeral_id(v, prefixes)]
    if still_ephemeral:
        raise PersistenceError(f"Store returned ephemeral-looking ids: {', '.join(still_ephemeral)}")
    if len(set(resolved.values())) != len(resolved):
        raise PersistenceError("Store mapped several tasks onto one durable id")
    durable = {t.id for t in tasks if not is_ephemeral_id(t.id, prefixes)}
    clash = sorted(durable & set(resolved.values()))
    if clash:
        raise PersistenceError(f"Durable ids collide with existing tasks: {', '.join(clash)}")
    return resolved


def reconcile_ids(tasks: Sequence[Task], persist: PersistFn, *,
                  prefixes: Sequence[str] = DEFAULT_EPHEMERAL_PREFIXES) -> Tuple[List[Task], Dict[str, str]]:
    """Persist ephemeral tasks as one batch and swap their ids for durable ones.

    All-or-nothing: on any failure a PersistenceError is raised and nothing is
    rewritten, so retrying is just calling this again. A fully durable list
    returns unchanged without calling ``persist``.
    """
    tasks = list(tasks)
    ephemeral = [t for t in tasks if is_ephemeral_id(t.id, prefixes)]
    if not ephemeral:
        return tasks, {}
    try:
        created, id_map = persist(ephemeral)
    except PersistenceError:
        raise
    except Exception as exc:
        raise PersistenceError(f"Failed to create {len(ephemeral)} new task(s): {exc}") from exc
    resolved = _validate_id_map(tasks, ephemeral, dict(id_map or {}), prefixes)
    logger.info("Reconciled %d ephemeral task id(s) (%d record(s) created)", len(resolved), len(created or []))
    return remap_task_ids(tasks, resolved), resolved


# -----------------------------
# Timer
# -----------------------------
class TimerPhase(enum.Enum):
    IDLE = "idle"
    WORK = "work"
    SHORT_BREAK = "short_break"
    LONG_BREAK = "long_break"


PHASE_LABELS = {
    TimerPhase.IDLE: "Ready to Start",
    TimerPhase.WORK: "Work Time",
    TimerPhase.SHORT_BREAK: "Short Break",
    TimerPhase.LONG_BREAK: "Long Break",
}
TICK_INTERVAL_MS = 1000
WORK_TONE_HZ = 1000
BREAK_TONE_HZ = 600


@dataclass(frozen=True)
class PhaseCompleted:
    ended: TimerPhase
    next_phase: TimerPhase
    elapsed_seconds: int
    focused_minutes: int
    cycles_completed: int
    tone_hz: Optional[int] = None

    @property
    def work_ended(self) -> bool:
        return self.ended is TimerPhase.WORK


class _AsyncioTick:
    def __init__(self, loop: asyncio.AbstractEventLoop, callback: Callable[[], None], interval: float):
        self._loop = loop
        self._callback = callback
        self._interval = interval
        self.cancelled = False
        self._handle: Optional[asyncio.TimerHandle] = loop.call_later(interval, self._fire)

    def _fire(self) -> None:
        if self.cancelled:
            return
        self._handle = self._loop.call_later(self._interval, self._fire)
        self._callback()

    def cancel(self) -> None:
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class AsyncioScheduler:
    """Recurring callbacks on the running asyncio loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def on_tick(self, callback: Callable[[], None], interval_ms: int) -> _AsyncioTick:
        loop = self._loop or asyncio.get_running_loop()
        return _AsyncioTick(loop, callback, interval_ms / 1000.0)


class _VirtualTick:
    def __init__(self, clock: "VirtualClock", callback: Callable[[], None], interval: float):
        self.callback = callback
        self.interval = interval
        self.due = clock.now() + interval
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualClock:
    """Scheduler and monotonic clock driven by hand, for running the timer without real time."""

    def __init__(self, start: float = 0.0):
        self._now = float(start)
        self._ticks: List[_VirtualTick] = []

    def now(self) -> float:
        return self._now

    def on_tick(self, callback: Callable[[], None], interval_ms: int) -> _VirtualTick:
        tick = _VirtualTick(self, callback, interval_ms / 1000.0)
        self._ticks.append(tick)
        return tick

    @property
    def active_ticks(self) -> int:
        return sum(1 for t in self._ticks if not t.cancelled)

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while True:
            self._ticks = [t for t in self._ticks if not t.cancelled]
            if not self._ticks:
                break
            nxt = min(self._ticks, key=lambda t: t.due)
            if nxt.due > target:
                break
            self._now = nxt.due
            nxt.due += nxt.interval
            nxt.callback()
        self._now = target


class TimerStateMachine:
    """Work/break cycle driven by a 1-second tick.

    Paused is a flag, not a phase. Completing a Work phase (tick reaching
    zero or ``skip``) reports the running wall-clock time of that phase, so
    ``extend`` and pauses are accounted for.
    """

    def __init__(self, settings: Optional[TimerSettings] = None, scheduler=None,
                 clock: Optional[Callable[[], float]] = None):
        self.settings = settings or TimerSettings()
        self.scheduler = scheduler or AsyncioScheduler()
        self._clock = clock or time.monotonic
        self.phase = TimerPhase.IDLE
        self.time_left = 0
        self.total_time = 0
        self.cycles_completed = 0
        self.running = False
        self._tick_handle = None
        self._suspend_depth = 0
        self._phase_elapsed = 0.0
        self._run_started: Optional[float] = None
        self._listeners: List[Callable[[PhaseCompleted], None]] = []

    def subscribe(self, callback: Callable[[PhaseCompleted], None]) -> None:
        self._listeners.append(callback)

    def phase_seconds(self, phase: TimerPhase) -> int:
        s = self.settings
        if phase is TimerPhase.WORK:
            return s.work_minutes * 60
        if phase is TimerPhase.SHORT_BREAK:
            return s.short_break_minutes * 60
        if phase is TimerPhase.LONG_BREAK:
            return s.long_break_minutes * 60
        return 0

    # --- tick plumbing ---
    def _schedule_tick(self) -> None:
        if self._tick_handle is None and not self._suspend_depth:
            self._tick_handle = self.scheduler.on_tick(self.tick, TICK_INTERVAL_MS)

    def _cancel_tick(self) -> None:
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None

    @contextlib.contextmanager
    def suspended(self):
        """Hold tick delivery (e.g. while a save rewrites the task list)."""
        self._suspend_depth += 1
        self._cancel_tick()
        try:
            yield self
        finally:
            self._suspend_depth -= 1
            if self.running:
                self._schedule_tick()

    # --- transitions ---
    def _enter(self, phase: TimerPhase) -> None:
        self.phase = phase
        self.time_left = self.total_time = self.phase_seconds(phase)
        self._phase_elapsed = 0.0
        self._run_started = self._clock() if self.running else None

    def elapsed_seconds(self) -> float:
        running_for = (self._clock() - self._run_started) if self._run_started is not None else 0.0
        return self._phase_elapsed + running_for

    def start(self) -> None:
        if self.phase is TimerPhase.IDLE:
            self._enter(TimerPhase.WORK)
        if self.running:
            return
        self.running = True
        self._run_started = self._clock()
        self._schedule_tick()
        logger.info("Timer running (%s, %ds left)", self.phase.value, self.time_left)

    def pause(self) -> None:
        if not self.running:
            return
        self._phase_elapsed = self.elapsed_seconds()
        self._run_started = None
        self.running = False
        self._cancel_tick()

    def tick(self) -> None:
        if not self.running or self.time_left <= 0:
            return
        self.time_left -= 1
        if self.time_left <= 0:
            self.time_left = 0
            self._complete_phase()

    def skip(self) -> None:
        if self.phase is TimerPhase.IDLE:
            self.advance()
            return
        self._complete_phase()

    def advance(self) -> None:
        if self.phase is TimerPhase.WORK:
            self.cycles_completed += 1
            if self.cycles_completed % self.settings.long_break_every == 0:
                nxt = TimerPhase.LONG_BREAK
            else:
                nxt = TimerPhase.SHORT_BREAK
        else:
            nxt = TimerPhase.WORK
        self._enter(nxt)

    def _complete_phase(self) -> None:
        elapsed = int(self.elapsed_seconds())
        self.pause()
        ended = self.phase
        self.advance()
        tone = None
        if self.settings.sound_notifications:
            tone = WORK_TONE_HZ if ended is TimerPhase.WORK else BREAK_TONE_HZ
        event = PhaseCompleted(
            ended=ended,
            next_phase=self.phase,
            elapsed_seconds=elapsed,
            focused_minutes=elapsed // 60 if ended is TimerPhase.WORK else 0,
            cycles_completed=self.cycles_completed,
            tone_hz=tone,
        )
        logger.info("%s finished after %ds; next %s", PHASE_LABELS[ended], elapsed, self.phase.value)
        for cb in list(self._listeners):
            try:
                cb(event)
            except Exception:
                logger.exception("Phase completion listener failed")

    def reset(self) -> None:
        self._cancel_tick()
        self.running = False
        self.phase = TimerPhase.IDLE
        self.cycles_completed = 0
        self.time_left = self.total_time = 0
        self._phase_elapsed = 0.0
        self._run_started = None

    def extend(self, minutes: int = 5) -> None:
        if self.phase is TimerPhase.IDLE:
            raise TimerError("Nothing to extend while the timer is idle")
        if minutes <= 0:
            raise TimerError(f"Extension must be positive, got {minutes}")
        extra = int(minutes * 60)
        self.time_left += extra
        self.total_time += extra

    def close(self) -> None:
        self.pause()
        self._cancel_tick()

    def progress(self) -> float:
        if self.total_time <= 0:
            return 0.0
        return (self.total_time - self.time_left) / self.total_time

    def next_phase_preview(self) -> Tuple[TimerPhase, int]:
        if self.phase is TimerPhase.WORK:
            if (self.cycles_completed + 1) % self.settings.long_break_every == 0:
                nxt = TimerPhase.LONG_BREAK
            else:
                nxt = TimerPhase.SHORT_BREAK
        else:
            nxt = TimerPhase.WORK
        return nxt, self.phase_seconds(nxt)


# -----------------------------
# DB
# -----------------------------
_UNSET = object()
PROJECT_STATUSES = ("planning", "in_progress", "completed")


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).astimezone().isoformat(timespec="seconds")


def _sanitize_estimate(value: object) -> Optional[int]:
    try:
        return coerce_estimate(value)
    except ValueError:
        logger.warning("Invalid estimated minutes %r; storing no estimate", value)
        return None


class TaskStore:
    """SQLite backing store for projects, their sub-tasks and work sessions."""

    CREATE_SQL = (
        """
        CREATE TABLE IF NOT EXISTS projects (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'planning',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS sub_tasks (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            title TEXT NOT NULL DEFAULT '',
            action TEXT NOT NULL DEFAULT '',
            details TEXT NOT NULL DEFAULT '',
            estimated_minutes INTEGER CHECK (estimated_minutes IS NULL OR estimated_minutes > 0),
            is_completed INTEGER NOT NULL DEFAULT 0,
            order_index INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS work_sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_key TEXT NOT NULL UNIQUE,
            project_id TEXT NOT NULL,
            pomodoros_completed INTEGER NOT NULL DEFAULT 0 CHECK (pomodoros_completed >= 0),
            total_focused_minutes INTEGER NOT NULL DEFAULT 0 CHECK (total_focused_minutes >= 0),
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            notes TEXT
        )
        """,
    )
    # Columns added after the first release; older DBs get them via ALTER TABLE.
    LATE_COLUMNS = {
        "sub_tasks": {
            "action": "TEXT NOT NULL DEFAULT ''",
            "details": "TEXT NOT NULL DEFAULT ''",
            "estimated_minutes": "INTEGER",
        },
        "work_sessions": {
            "notes": "TEXT",
        },
    }

    def __init__(self, path: str):
        self.conn = sqlite3.connect(str(path), check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._lock = threading.RLock()
        self._migrate_if_needed()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _cols(self, table: str) -> List[str]:
        cur = self.conn.cursor()
        cur.execute(f"PRAGMA table_info({table})")
        return [r[1] for r in cur.fetchall()]

    def _migrate_if_needed(self) -> None:
        cur = self.conn.cursor()
        for sql in self.CREATE_SQL:
            cur.execute(sql)
        for table, columns in self.LATE_COLUMNS.items():
            present = self._cols(table)
            for name, decl in columns.items():
                if name not in present:
                    cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_sub_tasks_project ON sub_tasks(project_id, order_index)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_ws_project ON work_sessions(project_id, start_time)")
        self.conn.commit()

    @contextlib.contextmanager
    def _write(self, what: str):
        with self._lock:
            cur = self.conn.cursor()
            try:
                yield cur
                self.conn.commit()
            except sqlite3.Error as exc:
                self.conn.rollback()
                logger.error("%s: %s", what, exc)
                raise PersistenceError(f"{what}: {exc}") from exc
            except BaseException:
                self.conn.rollback()
                raise

    # --- projects ---
    def create_project(self, title: str, project_id: Optional[str] = None) -> str:
        project_id = project_id or str(uuid.uuid4())
        now = _now_iso()
        with self._write("Failed to create project") as cur:
            cur.execute(
                "INSERT INTO projects(id, title, status, created_at, updated_at) VALUES (?,?,?,?,?)",
                (project_id, title or "", "planning", now, now),
            )
        return project_id

    def ensure_project(self, project_id: str, title: str = "") -> None:
        now = _now_iso()
        with self._write("Failed to ensure project") as cur:
            cur.execute(
                "INSERT OR IGNORE INTO projects(id, title, status, created_at, updated_at) VALUES (?,?,?,?,?)",
                (project_id, title or "", "planning", now, now),
            )

    def get_project(self, project_id: str) -> Optional[Dict[str, object]]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT id, title, status, created_at, updated_at FROM projects WHERE id=?", (project_id,))
            row = cur.fetchone()
        if not row:
            return None
        return dict(zip(("id", "title", "status", "created_at", "updated_at"), row))

    def update_project(self, project_id: str, *, title: object = _UNSET, status: object = _UNSET) -> None:
        if title is _UNSET and status is _UNSET:
            return
        fields: List[str] = []
        params: List[object] = []
        if title is not _UNSET:
            fields.append("title=?")
            params.append(str(title or ""))
        if status is not _UNSET:
            if status not in PROJECT_STATUSES:
                raise PersistenceError(f"Unknown project status: {status!r}")
            fields.append("status=?")
            params.append(status)
        fields.append("updated_at=?")
        params.append(_now_iso())
        params.append(project_id)
        with self._write("Failed to update project") as cur:
            cur.execute(f"UPDATE projects SET {', '.join(fields)} WHERE id=?", params)

    # --- sub-tasks ---
    def load_tasks(self, project_id: str) -> List[Task]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                """
                SELECT id, title, action, details, estimated_minutes, is_completed
                FROM sub_tasks WHERE project_id=?
                ORDER BY order_index, created_at, id
                """,
                (project_id,),
            )
            rows = cur.fetchall()
        return [
            Task(id=tid, title=title or "", action=action or "", details=details or "",
                 estimated_minutes=est, completed=bool(done))
            for tid, title, action, details, est, done in rows
        ]

    def create_tasks(self, project_id: str, tasks: Sequence[Task]) -> Tuple[List[Task], Dict[str, str]]:
        """Insert ``tasks`` after the project's current last task; returns (created, temp->durable id map)."""
        if not tasks:
            return [], {}
        created: List[Task] = []
        id_map: Dict[str, str] = {}
        now = _now_iso()
        with self._write("Failed to insert new sub-tasks") as cur:
            cur.execute("SELECT COALESCE(MAX(order_index), -1) FROM sub_tasks WHERE project_id=?", (project_id,))
            start = cur.fetchone()[0] + 1
            for offset, task in enumerate(tasks):
                new_id = str(uuid.uuid4())
                est = _sanitize_estimate(task.estimated_minutes)
                cur.execute(
                    """
                    INSERT INTO sub_tasks(id, project_id, title, action, details, estimated_minutes,
                                          is_completed, order_index, created_at, updated_at)
                    VALUES (?,?,?,?,?,?,?,?,?,?)
                    """,
                    (new_id, project_id, task.title, task.action, task.details, est,
                     int(task.completed), start + offset, now, now),
                )
                created.append(dataclasses.replace(task, id=new_id, estimated_minutes=est))
                id_map[task.id] = new_id
        logger.info("Created %d sub-task(s) for project %s", len(created), project_id)
        return created, id_map

    def _update_rows(self, cur: sqlite3.Cursor, project_id: str, tasks: Sequence[Task]) -> int:
        now = _now_iso()
        missing: List[str] = []
        for position, task in enumerate(tasks):
            cur.execute(
                """
                UPDATE sub_tasks SET title=?, action=?, details=?, estimated_minutes=?,
                                     is_completed=?, order_index=?, updated_at=?
                WHERE id=? AND project_id=?
                """,
                (task.title, task.action, task.details, _sanitize_estimate(task.estimated_minutes),
                 int(task.completed), position, now, task.id, project_id),
            )
            if cur.rowcount == 0:
                missing.append(task.id)
        if missing:
            logger.warning("Sub-tasks not found in project %s: %s", project_id, missing)
        return len(tasks) - len(missing)

    def update_tasks(self, project_id: str, tasks: Sequence[Task]) -> int:
        """Write field values and list positions; returns how many rows matched."""
        with self._write("Failed to update sub-tasks") as cur:
            return self._update_rows(cur, project_id, tasks)

    def delete_task(self, task_id: str) -> None:
        with self._write("Failed to delete sub-task") as cur:
            cur.execute("DELETE FROM sub_tasks WHERE id=?", (task_id,))

    # --- sessions ---
    def record_session(self, project_id: str, tasks: Sequence[Task], metrics: "SessionMetrics",
                       notes: Optional[str] = None) -> None:
        """Persist task state and upsert the session row keyed by ``metrics.session_key``."""
        end_time = _now_iso()
        with self._write("Failed to save work session") as cur:
            self._update_rows(cur, project_id, tasks)
            cur.execute(
                """
                INSERT INTO work_sessions(session_key, project_id, pomodoros_completed,
                                          total_focused_minutes, start_time, end_time, notes)
                VALUES (?,?,?,?,?,?,?)
                ON CONFLICT(session_key) DO UPDATE SET
                    pomodoros_completed=excluded.pomodoros_completed,
                    total_focused_minutes=excluded.total_focused_minutes,
                    end_time=excluded.end_time,
                    notes=COALESCE(excluded.notes, work_sessions.notes)
                """,
                (metrics.session_key, project_id, int(metrics.cycles_completed),
                 int(metrics.focused_minutes), metrics.session_start.isoformat(timespec="seconds"),
                 end_time, notes),
            )
        logger.info(
            "Saved session %s: %d pomodoro(s), %d min, %d task(s)",
            metrics.session_key, metrics.cycles_completed, metrics.focused_minutes, len(tasks),
        )
        self.check_project_completion(project_id)

    def check_project_completion(self, project_id: str) -> Optional[str]:
        """Mark the project completed when every sub-task is done; secondary, never raises."""
        try:
            with self._lock:
                cur = self.conn.cursor()
                cur.execute("SELECT is_completed FROM sub_tasks WHERE project_id=?", (project_id,))
                flags = [bool(r[0]) for r in cur.fetchall()]
            if not flags:
                return None
            status = "completed" if all(flags) else "in_progress"
            self.update_project(project_id, status=status)
            return status
        except (sqlite3.Error, PersistenceError):
            logger.warning("Project completion check failed for %s", project_id, exc_info=True)
            return None

    def get_project_sessions(self, project_id: str) -> List[Dict[str, object]]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                """
                SELECT id, session_key, pomodoros_completed, total_focused_minutes, start_time, end_time, notes
                FROM work_sessions WHERE project_id=?
                ORDER BY start_time DESC, id DESC
                """,
                (project_id,),
            )
            rows = cur.fetchall()
        keys = ("id", "session_key", "pomodoros_completed", "total_focused_minutes", "start_time", "end_time", "notes")
        return [dict(zip(keys, r)) for r in rows]

    def project_statistics(self, project_id: str) -> Dict[str, object]:
        sessions = self.get_project_sessions(project_id)
        total_sessions = len(sessions)
        total_pomodoros = sum(int(s["pomodoros_completed"]) for s in sessions)
        total_minutes = sum(int(s["total_focused_minutes"]) for s in sessions)
        return {
            "total_sessions": total_sessions,
            "total_pomodoros": total_pomodoros,
            "total_focused_minutes": total_minutes,
            "average_session_length": round(total_minutes / total_sessions) if total_sessions else 0,
            "last_session_date": sessions[0]["start_time"] if sessions else None,
        }


# -----------------------------
# Co-pilot (plan refinement)
# -----------------------------
RETRY_STATUSES = (429, 502, 503, 504)


@dataclass
class RefinementResult:
    modifications: List[Modification]
    new_title: Optional[str] = None
    explanation: Optional[str] = None


def _session(token: str) -> requests.Session:
    s = requests.Session()
    s.headers["Authorization"] = f"Bearer {token}"
    s.headers["Content-Type"] = "application/json"
    return s


def _parse_retry_after_seconds(resp: Optional[requests.Response]) -> Optional[int]:
    if resp is None or resp.headers is None:
        return None
    ra = resp.headers.get('Retry-After')
    if ra:
        try:
            return max(0, int(float(ra)))
        except ValueError:
            pass
    return None


def tasks_from_plan(items: Iterable[Dict[str, object]]) -> List[Task]:
    """Turn a generate-plan payload into ephemeral ``task-N`` tasks."""
    out: List[Task] = []
    for index, item in enumerate(items or []):
        if not isinstance(item, dict):
            continue
        fallback = str(item.get("sub_task_description") or "")
        out.append(Task(
            id=f"task-{index + 1}",
            title=str(item.get("title") or f"Task {index + 1}"),
            action=str(item.get("action") or fallback),
            details=str(item.get("details") or fallback),
            estimated_minutes=_sanitize_estimate(item.get("estimated_minutes_per_sub_task")),
        ))
    return out


def parse_refinement(data: object) -> RefinementResult:
    if not isinstance(data, dict):
        raise RefinementError("Invalid response structure from Co-pilot")
    if data.get("success") is False:
        raise RefinementError(str(data.get("error") or "Co-pilot refinement failed"))
    mods_raw = data.get("modifications")
    if not isinstance(mods_raw, list):
        raise RefinementError("Invalid response structure - missing modifications array")
    try:
        mods = [modification_from_dict(m) for m in mods_raw]
    except ModificationError as exc:
        raise RefinementError(str(exc)) from exc
    new_title = data.get("newProjectTitle") or data.get("newTitle")
    return RefinementResult(
        modifications=mods,
        new_title=str(new_title) if new_title else None,
        explanation=str(data["explanation"]) if data.get("explanation") else None,
    )


class PlanRefiner:
    """Client for the refine-plan endpoint: command + current plan in, modification batch out."""

    def __init__(self, url: str, token: str, *, timeout: int = 60, max_total_wait: int = 120,
                 session: Optional[requests.Session] = None, sleep: Callable[[float], None] = time.sleep):
        if not url:
            raise RefinementError("Co-pilot URL is not configured")
        self.url = url
        self.timeout = timeout
        self.max_total_wait = max_total_wait
        self.session = session if session is not None else _session(token)
        self._sleep = sleep

    def _post_with_backoff(self, payload: Dict[str, object]) -> requests.Response:
        """POST with retries on 429/502/503/504 and connection failures, bounded by ``max_total_wait``."""
        backoff = 2
        total_wait = 0
        while True:
            try:
                resp = self.session.post(self.url, json=payload, timeout=self.timeout)
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
                wait_s = min(30, backoff)
                backoff = min(60, backoff * 2)
                if total_wait + wait_s > self.max_total_wait:
                    raise RefinementError(f"Co-pilot unreachable: {exc}") from exc
                logger.info("Co-pilot request failed (%s); retrying in %ss", exc, wait_s)
                self._sleep(wait_s)
                total_wait += wait_s
                continue
            if resp.status_code in RETRY_STATUSES:
                wait_s = _parse_retry_after_seconds(resp)
                if wait_s is None:
                    wait_s = min(30, backoff)
                    backoff = min(60, backoff * 2)
                if total_wait + wait_s > self.max_total_wait:
                    # Let the caller report the last error response
                    return resp
                logger.info("Co-pilot busy (HTTP %s); waiting %ss", resp.status_code, wait_s)
                self._sleep(wait_s)
                total_wait += wait_s
                continue
            return resp

    @staticmethod
    def _decode(resp: requests.Response) -> object:
        if resp.status_code >= 300:
            message = f"Service error ({resp.status_code}): {resp.reason or ''}".strip()
            try:
                body = resp.json()
                if isinstance(body, dict) and body.get("error"):
                    message = str(body["error"])
            except ValueError:
                pass
            logger.warning("Co-pilot HTTP %s: %s", resp.status_code, message)
            raise RefinementError(message)
        try:
            return resp.json()
        except ValueError as exc:
            raise RefinementError("Co-pilot returned invalid JSON") from exc

    def refine(self, command: str, tasks: Sequence[Task], *, project_title: str = "",
               document_context: Optional[str] = None) -> RefinementResult:
        if not command or not command.strip():
            raise RefinementError("Co-pilot command is empty")
        payload = {
            "userCommand": command,
            "currentPlan": {
                "project_title": project_title,
                "sub_tasks": [task_to_dict(t) for t in tasks],
            },
            "documentContext": document_context,
        }
        logger.info("Co-pilot request: %d task(s), command=%r", len(tasks), command[:50])
        result = parse_refinement(self._decode(self._post_with_backoff(payload)))
        logger.info("Co-pilot proposed %d modification(s)", len(result.modifications))
        return result


# -----------------------------
# Session recorder
# -----------------------------
MAX_RECONCILE_PASSES = 3


def _spawn(pending: Set[asyncio.Task], coro) -> asyncio.Task:
    """Schedule `coro` on the running loop and hold a reference until it finishes."""
    task = asyncio.get_running_loop().create_task(coro)
    pending.add(task)
    task.add_done_callback(functools.partial(_background_done, pending))
    return task


def _background_done(pending: Set[asyncio.Task], task: asyncio.Task) -> None:
    pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task failed: %s", exc, exc_info=exc)


class SaveTrigger(enum.Enum):
    MANUAL = "manual"
    AUTO_ON_COMPLETE = "auto_on_complete"
    INTERRUPT = "interrupt"


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).astimezone()


@dataclass
class SessionMetrics:
    cycles_completed: int = 0
    focused_minutes: int = 0
    session_start: dt.datetime = field(default_factory=_now)
    session_key: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class SaveResult:
    trigger: SaveTrigger
    success: bool
    tasks_saved: int = 0
    reconciled: Dict[str, str] = field(default_factory=dict)
    deleted: List[str] = field(default_factory=list)
    error: Optional[str] = None


class SessionRecorder:
    """Owns the live task list and session metrics for one project.

    Edits go through ``apply_edit`` and are journaled until a save succeeds.
    Reconciliation and saves share one asyncio lock, so a save requested while
    ids are being reconciled waits for it instead of racing the id map.
    """

    def __init__(self, project_id: str, tasks: Sequence[Task], store, *, title: str = "",
                 prefixes: Sequence[str] = DEFAULT_EPHEMERAL_PREFIXES, strict_reorder: bool = False,
                 timer: Optional[TimerStateMachine] = None, metrics: Optional[SessionMetrics] = None):
        self.project_id = project_id
        self.store = store
        self.title = title
        self.prefixes = tuple(prefixes)
        self.strict_reorder = strict_reorder
        self.metrics = metrics or SessionMetrics()
        seen: Set[str] = set()
        for t in tasks:
            if t.id in seen:
                raise DuplicateIdError(t.id)
            seen.add(t.id)
        self._tasks: List[Task] = list(tasks)
        self._journal: List[Modification] = []
        self._known_durable: Set[str] = {t.id for t in self._tasks if not is_ephemeral_id(t.id, self.prefixes)}
        self._saved_metrics = dataclasses.replace(self.metrics)
        self._title_dirty = False
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Set[asyncio.Task] = set()
        self.timer: Optional[TimerStateMachine] = None
        if timer is not None:
            self.attach_timer(timer)

    @property
    def tasks(self) -> List[Task]:
        return list(self._tasks)

    @property
    def pending_edits(self) -> List[Modification]:
        return list(self._journal)

    def has_ephemeral(self) -> bool:
        return any(is_ephemeral_id(t.id, self.prefixes) for t in self._tasks)

    @property
    def dirty(self) -> bool:
        return (bool(self._journal) or self._title_dirty or self.has_ephemeral()
                or self.metrics != self._saved_metrics)

    def _mutation_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    # --- edits ---
    def apply_edit(self, ops: Sequence[Modification]) -> List[Task]:
        ops = list(ops)
        if not ops:
            return self.tasks
        self._tasks = apply_modifications(self._tasks, ops, strict_reorder=self.strict_reorder)
        self._journal.extend(ops)
        logger.info("Applied %d edit(s); %d task(s) in session", len(ops), len(self._tasks))
        return self.tasks

    def apply_refinement(self, result: RefinementResult) -> List[Task]:
        tasks = self.apply_edit(result.modifications)
        if result.new_title and result.new_title != self.title:
            self.title = result.new_title
            self._title_dirty = True
        return tasks

    def toggle_completed(self, task_id: str) -> List[Task]:
        current = next((t for t in self._tasks if t.id == task_id), None)
        if current is None:
            return self.tasks
        return self.apply_edit([Update(task_id, {"completed": not current.completed})])

    # --- metrics ---
    def record_pomodoro(self, focused_minutes: int) -> None:
        self.metrics.cycles_completed += 1
        self.metrics.focused_minutes += max(0, int(focused_minutes))

    def attach_timer(self, timer: TimerStateMachine) -> None:
        self.timer = timer
        timer.subscribe(self._on_phase_completed)

    def _on_phase_completed(self, event: PhaseCompleted) -> None:
        if event.work_ended:
            self.record_pomodoro(event.focused_minutes)

    # --- persistence ---
    def _create(self, ephemeral: List[Task]) -> Tuple[List[Task], Dict[str, str]]:
        return self.store.create_tasks(self.project_id, ephemeral)

    async def _reconcile_locked(self) -> Dict[str, str]:
        combined: Dict[str, str] = {}
        loop = asyncio.get_running_loop()
        for _ in range(MAX_RECONCILE_PASSES):
            if not self.has_ephemeral():
                return combined
            snapshot = list(self._tasks)
            _, id_map = await loop.run_in_executor(
                None, functools.partial(reconcile_ids, snapshot, self._create, prefixes=self.prefixes),
            )
            # Rewrite the live list, not the snapshot: edits made while awaiting survive.
            self._tasks = remap_task_ids(self._tasks, id_map)
            self._journal = remap_modifications(self._journal, id_map)
            self._known_durable.update(id_map.values())
            combined.update(id_map)
        if self.has_ephemeral():
            raise PersistenceError("Tasks kept gaining ephemeral ids while reconciling; try again")
        return combined

    def _tick_guard(self):
        return self.timer.suspended() if self.timer is not None else contextlib.nullcontext()

    async def reconcile(self) -> Dict[str, str]:
        guard = self._tick_guard()
        async with self._mutation_lock():
            with guard:
                return await self._reconcile_locked()

    def _persist(self, tasks: List[Task], metrics: SessionMetrics, removed: List[str], title: Optional[str]) -> None:
        try:
            for task_id in removed:
                self.store.delete_task(task_id)
            if title is not None:
                self.store.update_project(self.project_id, title=title)
            self.store.record_session(self.project_id, tasks, metrics)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Failed to save session: {exc}") from exc

    async def _save(self, trigger: SaveTrigger) -> SaveResult:
        guard = self._tick_guard()
        async with self._mutation_lock():
            with guard:
                id_map = await self._reconcile_locked()
                tasks = list(self._tasks)
                journal_len = len(self._journal)
                metrics = dataclasses.replace(self.metrics)
                current_ids = {t.id for t in tasks}
                removed = sorted(self._known_durable - current_ids)
                title = self.title if self._title_dirty else None
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, self._persist, tasks, metrics, removed, title)
                del self._journal[:journal_len]
                self._known_durable = current_ids
                self._saved_metrics = metrics
                if title == self.title:
                    self._title_dirty = False
        logger.info("Save (%s) ok: %d task(s), %d removed", trigger.value, len(tasks), len(removed))
        return SaveResult(trigger=trigger, success=True, tasks_saved=len(tasks),
                          reconciled=id_map, deleted=removed)

    async def save(self, trigger: SaveTrigger = SaveTrigger.MANUAL) -> SaveResult:
        """Reconcile, then persist task state and metrics.

        Manual and AutoOnComplete saves raise PersistenceError; Interrupt
        saves log the failure and return an unsuccessful SaveResult.
        """
        try:
            return await self._save(trigger)
        except PersistenceError as exc:
            if trigger is SaveTrigger.INTERRUPT:
                logger.warning("Best-effort interrupt save failed: %s", exc, exc_info=True)
                return SaveResult(trigger=trigger, success=False, error=str(exc))
            logger.error("Save (%s) failed: %s", trigger.value, exc)
            raise

    def on_interrupt(self) -> Union[SaveResult, asyncio.Task, None]:
        """Host hook for "about to terminate": best-effort save of unsaved state.

        Inside a running loop the save is scheduled and its task returned;
        otherwise it runs to completion and the SaveResult is returned.
        """
        if not self.dirty:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            return _spawn(self._pending, self.save(SaveTrigger.INTERRUPT))
        try:
            return asyncio.run(self.save(SaveTrigger.INTERRUPT))
        except Exception:
            logger.exception("Interrupt save crashed")
            return None


# -----------------------------
# UI
# -----------------------------
EXTEND_MINUTES = 5


def _fmt_clock(seconds: int) -> str:
    s = int(max(0, seconds))
    h, r = divmod(s, 3600)
    m, s = divmod(r, 60)
    return f"{h:d}:{m:02d}:{s:02d}" if h else f"{m:02d}:{s:02d}"


def _ascii_bar(done: float, total: float, width: int = 40) -> str:
    total = max(total, 1)
    done = min(max(done, 0), total)
    filled = int(width * (done / total))
    return "[" + "#" * filled + "-" * (width - filled) + "]"


def build_session_fragments(timer: TimerStateMachine, recorder: SessionRecorder, selected: int,
                            status_line: str = "") -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = []
    phase_cls = f"class:phase.{timer.phase.value}"
    frags.append(("class:title", f"{recorder.title or 'Untitled project'}\n\n"))
    label = PHASE_LABELS[timer.phase]
    if timer.phase is not TimerPhase.IDLE and not timer.running:
        label += " (paused)"
    frags.append((phase_cls, f"{label}\n"))
    frags.append(("class:clock", f"{_fmt_clock(timer.time_left)}  "))
    frags.append((phase_cls, _ascii_bar(timer.total_time - timer.time_left, timer.total_time) + "\n"))
    nxt, secs = timer.next_phase_preview()
    frags.append(("class:dim", f"Next up: {PHASE_LABELS[nxt]} ({_fmt_clock(secs)})   "
                               f"Cycles: {timer.cycles_completed}   "
                               f"Focused: {recorder.metrics.focused_minutes} min\n\n"))
    tasks = recorder.tasks
    if not tasks:
        frags.append(("class:dim", "No tasks in this plan.\n"))
    for idx, task in enumerate(tasks):
        mark = "x" if task.completed else " "
        est = f" ~{task.estimated_minutes}m" if task.estimated_minutes else ""
        cls = "class:selected" if idx == selected else ("class:done" if task.completed else "")
        frags.append((cls, f" [{mark}] {task.title}{est}\n"))
        if idx == selected and task.action:
            frags.append(("class:dim", f"     {task.action}\n"))
    frags.append(("", "\n"))
    dirty = "  * unsaved changes" if recorder.dirty else ""
    frags.append(("class:status", f"{status_line}{dirty}\n"))
    frags.append(("class:dim", "space start/pause  n skip  + add 5m  r reset  x done  s save  e end  q quit"))
    return frags


def run_ui(recorder: SessionRecorder, timer: TimerStateMachine) -> None:
    """Full-screen timer session; returns when the user ends or quits."""
    state: Dict[str, object] = {'selected': 0, 'status': ''}
    pending: Set[asyncio.Task] = set()
    app: Optional[Application] = None

    def invalidate() -> None:
        if app is not None:
            app.invalidate()

    def on_phase(event: PhaseCompleted) -> None:
        if event.tone_hz is not None and app is not None:
            app.output.bell()
        msg = f"{PHASE_LABELS[event.ended]} finished"
        if event.work_ended:
            msg += f" (+{event.focused_minutes} min focused)"
        state['status'] = msg
        invalidate()

    timer.subscribe(on_phase)

    def selected_task() -> Optional[Task]:
        tasks = recorder.tasks
        if not tasks:
            return None
        idx = min(int(state['selected']), len(tasks) - 1)
        state['selected'] = idx
        return tasks[idx]

    async def save_async(trigger: SaveTrigger, exit_after: bool = False) -> None:
        state['status'] = "Saving..."
        invalidate()
        try:
            result = await recorder.save(trigger)
        except FocusSessionError as exc:
            state['status'] = f"Error: {exc}"
            invalidate()
            return
        state['status'] = f"Saved {result.tasks_saved} task(s)"
        if exit_after and app is not None:
            app.exit(result='ended')
        invalidate()

    kb = KeyBindings()

    @kb.add(' ')
    def _(event):
        if timer.running:
            timer.pause()
        else:
            timer.start()

    @kb.add('n')
    def _(event):
        timer.skip()

    @kb.add('+')
    def _(event):
        try:
            timer.extend(EXTEND_MINUTES)
            state['status'] = f"Added {EXTEND_MINUTES} minutes"
        except TimerError as exc:
            state['status'] = str(exc)

    @kb.add('r')
    def _(event):
        timer.reset()
        state['status'] = "Timer reset"

    @kb.add('j')
    @kb.add('down')
    def _(event):
        state['selected'] = min(int(state['selected']) + 1, max(0, len(recorder.tasks) - 1))

    @kb.add('k')
    @kb.add('up')
    def _(event):
        state['selected'] = max(0, int(state['selected']) - 1)

    @kb.add('x')
    def _(event):
        task = selected_task()
        if task is not None:
            recorder.toggle_completed(task.id)

    @kb.add('s')
    def _(event):
        _spawn(pending, save_async(SaveTrigger.MANUAL))

    @kb.add('e')
    def _(event):
        _spawn(pending, save_async(SaveTrigger.AUTO_ON_COMPLETE, exit_after=True))

    @kb.add('q')
    @kb.add('c-c')
    def _(event):
        event.app.exit(result='quit')

    control = FormattedTextControl(
        lambda: build_session_fragments(timer, recorder, int(state['selected']), str(state['status'])),
        focusable=True,
    )
    root = HSplit([Frame(Window(content=control, wrap_lines=True), title="focus session")])
    style = Style.from_dict({
        'title': 'bold',
        'clock': 'bold',
        'phase.idle': '#6b7280',
        'phase.work': '#2563eb bold',
        'phase.short_break': '#10b981 bold',
        'phase.long_break': '#f97316 bold',
        'selected': 'reverse',
        'done': '#6b7280',
        'dim': '#888888',
        'status': '#e5c07b',
    })
    app = Application(layout=Layout(root), key_bindings=kb, style=style, full_screen=True,
                      refresh_interval=0.5)
    try:
        app.run()
    finally:
        timer.close()


# -----------------------------
# CLI
# -----------------------------
def _load_json(path: str) -> object:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _raise_exit(signum, frame) -> None:
    sys.exit(128 + signum)


def main(argv: Optional[Sequence[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Timer-driven work sessions over an AI task plan")
    ap.add_argument("--config", help="Path to YAML config")
    ap.add_argument("--db", help="Path to sqlite DB (overrides config)")
    ap.add_argument("--project", help="Project id to work on (overrides config)")
    ap.add_argument("--import-plan", metavar="PATH", help="Create a project from a generate-plan JSON payload and print its id")
    ap.add_argument("--title", help="Project title for --import-plan")
    ap.add_argument("--apply", metavar="PATH", help="Apply a JSON modification batch to the project and save")
    ap.add_argument("--refine", metavar="COMMAND", help="Ask the Co-pilot to refine the plan, apply and save")
    ap.add_argument("--stats", action="store_true", help="Print session statistics for the project")
    ap.add_argument("--no-ui", action="store_true", help="Print a task summary instead of starting the timer")
    ap.add_argument("--log-level", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    args = ap.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(2)
    setup_logging(args.log_level or cfg.log_level)
    store = TaskStore(args.db or cfg.db)
    try:
        if args.import_plan:
            payload = _load_json(args.import_plan)
            items = payload.get("plan") if isinstance(payload, dict) else payload
            if not isinstance(items, list):
                raise ModificationError("Plan payload has no 'plan' list")
            title = args.title or (payload.get("projectTitle") if isinstance(payload, dict) else None) or "Untitled project"
            project_id = store.create_project(title)
            recorder = SessionRecorder(project_id, tasks_from_plan(items), store, title=title,
                                       prefixes=cfg.ephemeral_prefixes)
            asyncio.run(recorder.reconcile())
            print(project_id)
            return

        project_id = args.project or cfg.project_id
        if not project_id:
            print("No project selected (use --project or project_id in config).", file=sys.stderr)
            sys.exit(1)
        project = store.get_project(project_id)
        if project is None:
            print(f"Unknown project: {project_id}", file=sys.stderr)
            sys.exit(1)

        if args.stats:
            for key, value in store.project_statistics(project_id).items():
                print(f"{key}: {value}")
            return

        recorder = SessionRecorder(project_id, store.load_tasks(project_id), store,
                                   title=str(project["title"]), prefixes=cfg.ephemeral_prefixes,
                                   strict_reorder=cfg.strict_reorder)

        if args.apply:
            raw = _load_json(args.apply)
            mods_raw = raw.get("modifications") if isinstance(raw, dict) else raw
            if not isinstance(mods_raw, list):
                raise ModificationError("Modification file has no 'modifications' list")
            recorder.apply_edit([modification_from_dict(m) for m in mods_raw])
            asyncio.run(recorder.save(SaveTrigger.MANUAL))
            print(f"Applied {len(mods_raw)} modification(s); {len(recorder.tasks)} task(s) saved")
            return

        if args.refine:
            token = os.environ.get("FOCUS_API_TOKEN") or load_dotenv_token()
            if not token or not cfg.copilot_url:
                print("Co-pilot needs copilot.url in config and FOCUS_API_TOKEN.", file=sys.stderr)
                sys.exit(1)
            refiner = PlanRefiner(cfg.copilot_url, token, timeout=cfg.copilot_timeout)
            result = refiner.refine(args.refine, recorder.tasks, project_title=recorder.title)
            if result.explanation:
                print(result.explanation)
            recorder.apply_refinement(result)
            asyncio.run(recorder.save(SaveTrigger.MANUAL))
            print(f"Applied {len(result.modifications)} modification(s)")
            return

        if args.no_ui:
            tasks = recorder.tasks
            done_ct = sum(1 for t in tasks if t.completed)
            print(f"Project: {recorder.title}")
            print(f"Tasks: {len(tasks)} (done {done_ct})")
            for t in tasks:
                print(f"  [{'x' if t.completed else ' '}] {t.title}")
            return

        timer = TimerStateMachine(cfg.pomodoro, AsyncioScheduler())
        recorder.attach_timer(timer)
        signal.signal(signal.SIGTERM, _raise_exit)
        try:
            run_ui(recorder, timer)
        finally:
            recorder.on_interrupt()
    except (FocusSessionError, OSError, ValueError) as exc:
        logger.error("Command failed: %s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    finally:
        store.close()


if __name__ == "__main__":
    main()
