"""Process-wide circuit breaker keyed by (agent type, queue name).

State machine per key::

    CLOSED --(failures in window >= threshold)--> OPEN
    OPEN --(cooldown elapsed, next acquire)--> HALF_OPEN (one trial call)
    HALF_OPEN --(trial success)--> CLOSED
    HALF_OPEN --(trial failure)--> OPEN

The failure window is time-based: a failure counts toward the threshold for
``window_seconds`` after it was recorded. Successes in CLOSED state do not
clear the window; only a successful HALF_OPEN trial does.

Every key owns its own lock, so read-check-update sequences for one key are
serialized while unrelated keys never contend.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

BreakerKey = tuple[str, str]


class BreakerState(str, Enum):
    """Circuit states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True, slots=True)
class BreakerConfig:
    """Threshold F, window W and cooldown T for one agent type."""

    failure_threshold: int = 5
    window_seconds: float = 300.0
    cooldown_seconds: float = 3_600.0


@dataclass(frozen=True, slots=True)
class BreakerDecision:
    """Result of asking the breaker whether one call may proceed."""

    key: BreakerKey
    allowed: bool
    state: BreakerState
    trial: bool = False
    retry_after_seconds: float | None = None


@dataclass(slots=True)
class BreakerSnapshot:
    """Health view for one breaker key."""

    agent_type: str
    queue_name: str
    state: BreakerState
    failures_in_window: int
    total_calls: int
    successful_calls: int
    success_rate: float
    last_error: str | None
    seconds_until_half_open: float | None

    @property
    def is_healthy(self) -> bool:
        return self.state == BreakerState.CLOSED


@dataclass(slots=True)
class _KeyState:
    config: BreakerConfig
    lock: threading.Lock = field(default_factory=threading.Lock)
    state: BreakerState = BreakerState.CLOSED
    failures: deque[float] = field(default_factory=deque)
    opened_at: float | None = None
    trial_in_flight: bool = False
    total_calls: int = 0
    successful_calls: int = 0
    last_error: str | None = None


class CircuitBreaker:
    """Shared failure-rate guard; construct once per process and inject."""

    def __init__(
        self,
        *,
        config_for: Callable[[str], BreakerConfig] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config_for = config_for or (lambda _agent_type: BreakerConfig())
        self._clock = clock
        self._registry_lock = threading.Lock()
        self._keys: dict[BreakerKey, _KeyState] = {}

    def acquire(self, agent_type: str, queue_name: str) -> BreakerDecision:
        """Decide whether one call may proceed, transitioning OPEN→HALF_OPEN if due."""

        key = _make_key(agent_type, queue_name)
        entry = self._entry(key)
        with entry.lock:
            now = self._clock()
            if entry.state == BreakerState.CLOSED:
                return BreakerDecision(key=key, allowed=True, state=BreakerState.CLOSED)

            if entry.state == BreakerState.OPEN:
                opened_at = entry.opened_at if entry.opened_at is not None else now
                remaining = entry.config.cooldown_seconds - (now - opened_at)
                if remaining > 0:
                    return BreakerDecision(
                        key=key,
                        allowed=False,
                        state=BreakerState.OPEN,
                        retry_after_seconds=remaining,
                    )
                self._transition(entry, key=key, to_state=BreakerState.HALF_OPEN)

            if entry.trial_in_flight:
                return BreakerDecision(key=key, allowed=False, state=BreakerState.HALF_OPEN)
            entry.trial_in_flight = True
            return BreakerDecision(
                key=key,
                allowed=True,
                state=BreakerState.HALF_OPEN,
                trial=True,
            )

    def record_success(self, decision: BreakerDecision) -> None:
        """Record a call that reached the model and got a response."""

        entry = self._entry(decision.key)
        with entry.lock:
            entry.total_calls += 1
            entry.successful_calls += 1
            if decision.trial and entry.state == BreakerState.HALF_OPEN:
                entry.trial_in_flight = False
                entry.failures.clear()
                entry.opened_at = None
                self._transition(entry, key=decision.key, to_state=BreakerState.CLOSED)

    def record_failure(self, decision: BreakerDecision, *, error: str | None = None) -> None:
        """Record a failed model call."""

        entry = self._entry(decision.key)
        with entry.lock:
            now = self._clock()
            entry.total_calls += 1
            entry.last_error = error

            if decision.trial and entry.state == BreakerState.HALF_OPEN:
                entry.trial_in_flight = False
                entry.opened_at = now
                self._transition(entry, key=decision.key, to_state=BreakerState.OPEN)
                return

            if entry.state != BreakerState.CLOSED:
                return

            entry.failures.append(now)
            self._prune(entry, now=now)
            if len(entry.failures) >= entry.config.failure_threshold:
                entry.opened_at = now
                self._transition(entry, key=decision.key, to_state=BreakerState.OPEN)

    def release(self, decision: BreakerDecision) -> None:
        """Give back a HALF_OPEN trial slot when the call ended without a verdict."""

        if not decision.trial:
            return
        entry = self._entry(decision.key)
        with entry.lock:
            if entry.state == BreakerState.HALF_OPEN:
                entry.trial_in_flight = False

    def reset(self, agent_type: str, queue_name: str) -> None:
        """Force a key back to CLOSED with an empty failure window."""

        key = _make_key(agent_type, queue_name)
        entry = self._entry(key)
        with entry.lock:
            entry.failures.clear()
            entry.opened_at = None
            entry.trial_in_flight = False
            self._transition(entry, key=key, to_state=BreakerState.CLOSED)

    def state(self, agent_type: str, queue_name: str) -> BreakerState:
        """Current state without side effects."""

        entry = self._entry(_make_key(agent_type, queue_name))
        with entry.lock:
            return entry.state

    def snapshot(self) -> list[BreakerSnapshot]:
        """Health report for every key seen so far."""

        with self._registry_lock:
            items = sorted(self._keys.items())

        snapshots: list[BreakerSnapshot] = []
        for key, entry in items:
            with entry.lock:
                now = self._clock()
                self._prune(entry, now=now)
                until_half_open = None
                if entry.state == BreakerState.OPEN and entry.opened_at is not None:
                    until_half_open = max(
                        0.0,
                        entry.config.cooldown_seconds - (now - entry.opened_at),
                    )
                success_rate = (
                    entry.successful_calls / entry.total_calls if entry.total_calls else 1.0
                )
                snapshots.append(
                    BreakerSnapshot(
                        agent_type=key[0],
                        queue_name=key[1],
                        state=entry.state,
                        failures_in_window=len(entry.failures),
                        total_calls=entry.total_calls,
                        successful_calls=entry.successful_calls,
                        success_rate=round(success_rate, 2),
                        last_error=entry.last_error,
                        seconds_until_half_open=until_half_open,
                    ),
                )
        return snapshots

    def _entry(self, key: BreakerKey) -> _KeyState:
        with self._registry_lock:
            entry = self._keys.get(key)
            if entry is None:
                entry = _KeyState(config=self._config_for(key[0]))
                self._keys[key] = entry
            return entry

    @staticmethod
    def _prune(entry: _KeyState, *, now: float) -> None:
        horizon = now - entry.config.window_seconds
        while entry.failures and entry.failures[0] <= horizon:
            entry.failures.popleft()

    @staticmethod
    def _transition(entry: _KeyState, *, key: BreakerKey, to_state: BreakerState) -> None:
        if entry.state == to_state:
            return
        previous = entry.state
        entry.state = to_state
        log = logger.warning if to_state == BreakerState.OPEN else logger.info
        log(
            "Circuit breaker %s -> %s for agent=%s queue=%s",
            previous.value,
            to_state.value,
            key[0],
            key[1],
        )


def _make_key(agent_type: str, queue_name: str) -> BreakerKey:
    return (str(getattr(agent_type, "value", agent_type)), queue_name)
