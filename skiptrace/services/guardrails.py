"""
Guardrails — per-provider daily budget, token bucket, and circuit breaker.

Every admission passes three checks, in order, as one gate:
  1. budget   — deny 'budget_exceeded' if spent + reserved + next cost > cap
  2. bucket   — lazy refill; deny 'rate_limited' with fewer than one token
  3. breaker  — CLOSED admits, OPEN denies 'circuit_open' until the cooldown
                ends, HALF_OPEN admits up to probe_quota probe calls

State for one provider is a single immutable GuardrailsState value. Every
decision computes the next value and swaps it in with compare-and-set, so a
denial never half-applies and concurrent workers never double-spend.

After each swap a snapshot is published to Redis (guardrails:<provider>) so
the admin API in another process can inspect it.
"""
import json
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, date
from typing import Callable, Dict, Optional, Tuple

from skiptrace.errors import BUDGET_EXCEEDED, RATE_LIMITED, CIRCUIT_OPEN

logger = logging.getLogger('services.guardrails')

# Breaker states
CLOSED = 'CLOSED'
OPEN = 'OPEN'
HALF_OPEN = 'HALF_OPEN'

REDIS_PREFIX = 'guardrails'


@dataclass(frozen=True)
class GuardrailsConfig:
    provider: str
    cost_cents: int
    daily_budget_cents: Optional[int]
    capacity: float
    refill_rate: float
    window_size: int = 200
    min_samples: int = 30
    error_threshold: float = 0.3
    cooldown_seconds: float = 60.0
    probe_quota: int = 1


# ── State values ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BudgetState:
    day: date
    cap_cents: Optional[int]
    spent_cents: int = 0
    reserved_cents: int = 0

    def rolled(self, today: date) -> 'BudgetState':
        if today == self.day:
            return self
        return BudgetState(day=today, cap_cents=self.cap_cents)

    def would_exceed(self, cost_cents: int) -> bool:
        if self.cap_cents is None:
            return False
        return self.spent_cents + self.reserved_cents + cost_cents > self.cap_cents


@dataclass(frozen=True)
class BucketState:
    capacity: float
    refill_rate: float
    tokens: float
    last_refill: float

    def refilled(self, now: float) -> 'BucketState':
        elapsed = max(0.0, now - self.last_refill)
        tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        return replace(self, tokens=tokens, last_refill=max(now, self.last_refill))

    def eta(self) -> float:
        """Seconds until one whole token is available."""
        if self.tokens >= 1:
            return 0.0
        if self.refill_rate <= 0:
            return float('inf')
        return (1 - self.tokens) / self.refill_rate


@dataclass(frozen=True)
class BreakerState:
    state: str = CLOSED
    window: Tuple[bool, ...] = ()
    opened_at: Optional[float] = None
    probes_admitted: int = 0
    probe_successes: int = 0

    @property
    def errors(self) -> int:
        return sum(1 for ok in self.window if not ok)

    @property
    def error_rate(self) -> float:
        return self.errors / len(self.window) if self.window else 0.0


@dataclass(frozen=True)
class GuardrailsState:
    budget: BudgetState
    bucket: BucketState
    breaker: BreakerState = field(default_factory=BreakerState)


@dataclass(frozen=True)
class Admission:
    provider: str
    allowed: bool
    reason: Optional[str] = None
    reserved_cents: int = 0
    probe: bool = False
    retry_after: float = 0.0
    day: Optional[date] = None

    @classmethod
    def denied(cls, provider, reason, retry_after=0.0):
        return cls(provider=provider, allowed=False, reason=reason, retry_after=retry_after)


def _utc_day(ts: float) -> date:
    return datetime.fromtimestamp(ts, timezone.utc).date()


# ── Controller ────────────────────────────────────────────────────────────────

class GuardrailsController:
    """
    Admission control for one provider.

    Usage:
        admission = controller.admit()
        if admission.allowed:
            ... call provider ...
            controller.record_outcome(success=True, cost_cents=12, admission=admission)
    """

    def __init__(self, config: GuardrailsConfig, redis_client=None,
                 spent_today_cents: int = 0, clock: Callable[[], float] = time.time):
        self.config = config
        self.provider = config.provider
        self.redis = redis_client
        self._clock = clock
        self._lock = threading.Lock()
        self._publish_lock = threading.Lock()
        now = clock()
        self._state = GuardrailsState(
            budget=BudgetState(
                day=_utc_day(now),
                cap_cents=config.daily_budget_cents,
                spent_cents=int(spent_today_cents or 0),
            ),
            bucket=BucketState(
                capacity=config.capacity,
                refill_rate=config.refill_rate,
                tokens=config.capacity,
                last_refill=now,
            ),
        )

    @property
    def state(self) -> GuardrailsState:
        return self._state

    # ── Compare-and-set ───────────────────────────────────────────────

    def _compare_and_set(self, expected: GuardrailsState, new: GuardrailsState) -> bool:
        with self._lock:
            if self._state is not expected:
                return False
            self._state = new
            return True

    def _transition(self, decide):
        """Retry decide(current, now) -> (new_state, result) until the swap lands."""
        while True:
            current = self._state
            now = self._clock()
            new, result = decide(current, now)
            if new is current or self._compare_and_set(current, new):
                break
        if new is not current:
            with self._publish_lock:
                # Skip if a newer state landed; its own transition publishes it.
                if self._state is new:
                    self._publish(new, now)
        return result

    def _advance(self, state: GuardrailsState, now: float) -> GuardrailsState:
        """Apply the purely time-derived transitions: day rollover, refill, cooldown end."""
        budget = state.budget.rolled(_utc_day(now))
        bucket = state.bucket.refilled(now)
        breaker = state.breaker
        if breaker.state == OPEN and breaker.opened_at is not None \
                and now - breaker.opened_at >= self.config.cooldown_seconds:
            breaker = replace(breaker, state=HALF_OPEN, probes_admitted=0, probe_successes=0)
            logger.info("Circuit '%s' cooldown elapsed, now HALF_OPEN", self.provider)
        return GuardrailsState(budget=budget, bucket=bucket, breaker=breaker)

    # ── Public API ────────────────────────────────────────────────────

    def admit(self) -> Admission:
        cost = self.config.cost_cents

        def decide(current, now):
            state = self._advance(current, now)

            if state.budget.would_exceed(cost):
                return state, Admission.denied(self.provider, BUDGET_EXCEEDED)

            if state.bucket.tokens < 1:
                return state, Admission.denied(self.provider, RATE_LIMITED, state.bucket.eta())

            breaker = state.breaker
            probe = False
            if breaker.state == OPEN:
                remaining = self.config.cooldown_seconds - (now - (breaker.opened_at or now))
                return state, Admission.denied(self.provider, CIRCUIT_OPEN, max(0.0, remaining))
            if breaker.state == HALF_OPEN:
                if breaker.probes_admitted >= self.config.probe_quota:
                    return state, Admission.denied(self.provider, CIRCUIT_OPEN, 1.0)
                breaker = replace(breaker, probes_admitted=breaker.probes_admitted + 1)
                probe = True

            new = GuardrailsState(
                budget=replace(state.budget, reserved_cents=state.budget.reserved_cents + cost),
                bucket=replace(state.bucket, tokens=state.bucket.tokens - 1),
                breaker=breaker,
            )
            return new, Admission(
                provider=self.provider, allowed=True, reserved_cents=cost,
                probe=probe, day=state.budget.day,
            )

        admission = self._transition(decide)
        if not admission.allowed:
            logger.debug("Admission denied for %s: %s", self.provider, admission.reason,
                         extra={'provider': self.provider})
        return admission

    def record_outcome(self, success: bool, cost_cents: int = 0,
                       admission: Optional[Admission] = None) -> None:
        """Settle an admitted call: reconcile spend and feed the breaker."""

        def decide(current, now):
            state = self._advance(current, now)
            budget = self._unreserve(state.budget, admission)
            budget = replace(budget, spent_cents=budget.spent_cents + int(cost_cents or 0))
            breaker = self._next_breaker(state.breaker, success, admission, now)
            return GuardrailsState(budget=budget, bucket=state.bucket, breaker=breaker), None

        self._transition(decide)

    def release(self, admission: Admission) -> None:
        """Give back an admission that never reached the provider."""
        if not admission.allowed:
            return

        def decide(current, now):
            state = self._advance(current, now)
            breaker = state.breaker
            if admission.probe and breaker.state == HALF_OPEN and breaker.probes_admitted > 0:
                breaker = replace(breaker, probes_admitted=breaker.probes_admitted - 1)
            budget = self._unreserve(state.budget, admission)
            return GuardrailsState(budget=budget, bucket=state.bucket, breaker=breaker), None

        self._transition(decide)

    def snapshot(self) -> dict:
        """Diagnostic document for the admin API."""
        return self._document(self._advance(self._state, self._clock()), self._clock())

    def reset(self) -> None:
        """Manually close the breaker and clear its window."""
        def decide(current, now):
            return replace(self._advance(current, now), breaker=BreakerState()), None
        self._transition(decide)
        logger.info("Circuit '%s' manually reset to CLOSED", self.provider)

    # ── Private helpers ───────────────────────────────────────────────

    @staticmethod
    def _unreserve(budget: BudgetState, admission: Optional[Admission]) -> BudgetState:
        # Reservations from before a day rollover were already dropped.
        if admission is None or not admission.allowed or admission.day != budget.day:
            return budget
        return replace(budget, reserved_cents=max(0, budget.reserved_cents - admission.reserved_cents))

    def _next_breaker(self, breaker: BreakerState, success: bool,
                      admission: Optional[Admission], now: float) -> BreakerState:
        cfg = self.config

        if breaker.state == HALF_OPEN:
            if admission is None or not admission.probe:
                # Late outcome from a call admitted before the trip.
                return breaker
            if not success:
                logger.warning("Circuit '%s' probe failed, re-OPENED for %ss",
                               self.provider, cfg.cooldown_seconds)
                return BreakerState(state=OPEN, window=breaker.window, opened_at=now)
            successes = breaker.probe_successes + 1
            if successes >= cfg.probe_quota:
                logger.info("Circuit '%s' probes succeeded, CLOSED", self.provider)
                return BreakerState(state=CLOSED)
            return replace(breaker, probe_successes=successes)

        if breaker.state == OPEN:
            # Late outcome from a call admitted before the trip.
            return breaker

        window = (breaker.window + (bool(success),))[-cfg.window_size:]
        breaker = replace(breaker, window=window)
        if len(window) >= cfg.min_samples and breaker.error_rate >= cfg.error_threshold:
            logger.warning(
                "Circuit '%s' OPENED: error rate %.2f over %d calls (threshold=%.2f)",
                self.provider, breaker.error_rate, len(window), cfg.error_threshold,
            )
            return BreakerState(state=OPEN, window=window, opened_at=now)
        return breaker

    def _document(self, state: GuardrailsState, now: float) -> dict:
        budget = state.budget
        breaker = state.breaker
        return {
            'status': 'available',
            'provider': self.provider,
            'breakerState': breaker.state,
            'budgetDay': budget.day.isoformat(),
            'budgetCapUsd': None if budget.cap_cents is None else budget.cap_cents / 100,
            'budgetSpentUsd': budget.spent_cents / 100,
            'budgetReservedUsd': budget.reserved_cents / 100,
            'costPerCallUsd': self.config.cost_cents / 100,
            'tokenBucket': {
                'capacity': state.bucket.capacity,
                'tokens': round(state.bucket.tokens, 3),
                'refillRate': state.bucket.refill_rate,
                'lastRefill': state.bucket.last_refill,
            },
            'window': {
                'samples': len(breaker.window),
                'errors': breaker.errors,
                'errorRate': round(breaker.error_rate, 4),
                'threshold': self.config.error_threshold,
            },
            'openedAt': breaker.opened_at,
            'updatedAt': now,
        }

    def _publish(self, state: GuardrailsState, now: float) -> None:
        if self.redis is None:
            return
        try:
            self.redis.set(f'{REDIS_PREFIX}:{self.provider}', json.dumps(self._document(state, now)))
        except Exception as e:
            logger.debug("Could not publish guardrails state for %s: %s", self.provider, e)


# ── Registry ──────────────────────────────────────────────────────────────────

class GuardrailsRegistry:
    """
    One controller per provider, created on first use.

    config_for(provider) supplies the GuardrailsConfig; the ledger (optional)
    seeds today's spend so a restart does not reset the budget.
    """

    def __init__(self, config_for: Callable[[str], GuardrailsConfig], ledger=None,
                 redis_client=None, clock: Callable[[], float] = time.time):
        self._config_for = config_for
        self._ledger = ledger
        self._redis = redis_client
        self._clock = clock
        self._controllers: Dict[str, GuardrailsController] = {}
        self._lock = threading.Lock()

    def get(self, provider: str) -> GuardrailsController:
        provider = provider.lower()
        with self._lock:
            controller = self._controllers.get(provider)
            if controller is None:
                spent = 0
                if self._ledger is not None:
                    spent = self._ledger.spent_today(
                        provider, datetime.fromtimestamp(self._clock(), timezone.utc))
                controller = GuardrailsController(
                    self._config_for(provider), redis_client=self._redis,
                    spent_today_cents=spent, clock=self._clock,
                )
                self._controllers[provider] = controller
                logger.info("Guardrails initialized for %s (spent today=%d¢)", provider, spent)
            return controller

    def admit(self, provider: str) -> Admission:
        return self.get(provider).admit()

    def record_outcome(self, provider: str, success: bool, cost_cents: int = 0,
                       admission: Optional[Admission] = None) -> None:
        self.get(provider).record_outcome(success, cost_cents, admission)

    def release(self, admission: Admission) -> None:
        self.get(admission.provider).release(admission)

    def providers(self):
        with self._lock:
            return sorted(self._controllers)

    def snapshots(self) -> Dict[str, dict]:
        return {p: self.get(p).snapshot() for p in self.providers()}


def read_snapshot(redis_client, provider: str) -> dict:
    """Read the last published state for provider; 'unavailable' if it can't be read."""
    try:
        raw = redis_client.get(f'{REDIS_PREFIX}:{provider.lower()}')
    except Exception as e:
        return {'status': 'unavailable', 'provider': provider, 'error': str(e)}
    if raw is None:
        return {'status': 'unavailable', 'provider': provider, 'error': 'no state published'}
    try:
        return json.loads(raw)
    except ValueError as e:
        return {'status': 'unavailable', 'provider': provider, 'error': f'corrupt state: {e}'}
