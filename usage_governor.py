"""
Per-provider admission control: daily/monthly hard caps, error-spike
cooldown, and advisory inter-call throttling.

States per provider:
- ACTIVE: calls are admitted while under the daily and monthly caps
- COOLDOWN: too many errors inside the trailing window (or a 429); calls are
  denied until ``paused_until`` and then admitted again automatically
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pipeline_core import (
    Clock,
    Config,
    CooldownActiveError,
    DurableTable,
    ProviderError,
    QuotaExceededError,
    RateLimitedError,
)

REASON_COOLDOWN = "cooldown"
REASON_QUOTA_DAILY = "quota_daily"
REASON_QUOTA_MONTHLY = "quota_monthly"

USAGE_RETENTION_DAYS = 30


class ThrottleTier(Enum):
    CONSERVATIVE = 3.0
    NORMAL = 2.0
    AGGRESSIVE = 1.0

    @classmethod
    def from_name(cls, name: Optional[str]) -> "ThrottleTier":
        text = (name or "normal").strip().lower()
        if text == "safe":
            text = "conservative"
        try:
            return cls[text.upper()]
        except KeyError as exc:
            raise ValueError(f"Unknown throttle tier: {name!r}") from exc


class ProviderState(str, Enum):
    ACTIVE = "active"
    COOLDOWN = "cooldown"


@dataclass
class ProviderLimits:
    daily: Optional[int] = None
    monthly: Optional[int] = None


@dataclass
class CooldownPolicy:
    enabled: bool = True
    error_threshold: int = 5
    window_seconds: float = 60.0
    duration_seconds: float = 300.0


@dataclass
class AdmissionDecision:
    provider: str
    allowed: bool
    reason: Optional[str] = None
    retry_after: Optional[float] = None
    limit: Optional[int] = None

    def __bool__(self) -> bool:
        return self.allowed

    @property
    def is_quota(self) -> bool:
        return self.reason in (REASON_QUOTA_DAILY, REASON_QUOTA_MONTHLY)


@dataclass
class CooldownState:
    error_timestamps: List[float] = field(default_factory=list)
    paused_until: Optional[float] = None
    paused_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_timestamps": list(self.error_timestamps),
            "paused_until": self.paused_until,
            "paused_at": self.paused_at,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CooldownState":
        if not data:
            return cls()
        return cls(
            error_timestamps=[float(ts) for ts in data.get("error_timestamps", [])],
            paused_until=data.get("paused_until"),
            paused_at=data.get("paused_at"),
        )


class UsageGovernor:
    """Admission gate shared by every worker; all state changes are serialized per provider."""

    def __init__(
        self,
        table: DurableTable,
        limits: Optional[Dict[str, ProviderLimits]] = None,
        cooldown: Optional[CooldownPolicy] = None,
        tier: ThrottleTier = ThrottleTier.NORMAL,
        *,
        clock: Clock = time.time,
        sleep: Callable[[float], None] = time.sleep,
        throttle_overrides: Optional[Dict[str, float]] = None,
    ):
        self.table = table
        self.limits: Dict[str, ProviderLimits] = dict(limits or {})
        self.cooldown = cooldown or CooldownPolicy()
        self.tier = tier
        self.clock = clock
        self.sleep = sleep
        self.throttle_overrides = dict(throttle_overrides or {})
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._in_flight: Dict[str, int] = {}
        self._next_slot: Dict[str, float] = {}
        self._pace_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Config, table: DurableTable, **kwargs: Any) -> "UsageGovernor":
        providers = set(config.daily_limits) | set(config.monthly_limits)
        limits = {
            name: ProviderLimits(daily=config.daily_limits.get(name), monthly=config.monthly_limits.get(name))
            for name in providers
        }
        cooldown = CooldownPolicy(
            enabled=config.cooldown_enabled,
            error_threshold=config.cooldown_error_threshold,
            window_seconds=config.cooldown_window_seconds,
            duration_seconds=config.cooldown_duration_seconds,
        )
        return cls(table, limits, cooldown, ThrottleTier.from_name(config.throttle_tier), **kwargs)

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _lock_for(self, provider: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(provider)
            if lock is None:
                lock = threading.Lock()
                self._locks[provider] = lock
            return lock

    def _now_dt(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    @staticmethod
    def _day_key(provider: str, day: str) -> str:
        return f"usage:{provider}:{day}"

    @staticmethod
    def _month_key(provider: str, month: str) -> str:
        return f"usage_month:{provider}:{month}"

    @staticmethod
    def _cooldown_key(provider: str) -> str:
        return f"cooldown:{provider}"

    def _counts(self, provider: str) -> Dict[str, Any]:
        now = self._now_dt()
        day = now.strftime("%Y-%m-%d")
        month = now.strftime("%Y-%m")
        day_row = self.table.get(self._day_key(provider, day)) or {}
        month_row = self.table.get(self._month_key(provider, month)) or {}
        return {
            "day": day,
            "month": month,
            "daily_count": int(day_row.get("daily_count", 0)),
            "monthly_count": int(month_row.get("monthly_count", 0)),
            "day_row_exists": bool(day_row),
        }

    def _load_cooldown(self, provider: str) -> CooldownState:
        return CooldownState.from_dict(self.table.get(self._cooldown_key(provider)))

    def _save_cooldown(self, provider: str, state: CooldownState) -> None:
        self.table.put(self._cooldown_key(provider), state.to_dict())

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def check_admission(self, provider: str, *, reserve: bool = False) -> AdmissionDecision:
        """Cooldown first, then monthly and daily caps.

        With ``reserve=True`` an allowed decision also holds a slot so that
        concurrent workers cannot both pass a check only one should pass.
        The slot is released by ``record_outcome(..., reserved=True)`` or
        ``release()``.
        """
        with self._lock_for(provider):
            now = self.clock()
            if self.cooldown.enabled:
                state = self._load_cooldown(provider)
                if state.paused_until is not None:
                    if now < state.paused_until:
                        return AdmissionDecision(
                            provider, False, REASON_COOLDOWN, retry_after=state.paused_until - now
                        )
                    logging.info("Cooldown for %s expired; resuming calls", provider)
                    self._save_cooldown(provider, CooldownState())

            limits = self.limits.get(provider)
            if limits is not None:
                counts = self._counts(provider)
                pending = self._in_flight.get(provider, 0)
                if limits.monthly is not None and counts["monthly_count"] + pending >= limits.monthly:
                    return AdmissionDecision(provider, False, REASON_QUOTA_MONTHLY, limit=limits.monthly)
                if limits.daily is not None and counts["daily_count"] + pending >= limits.daily:
                    return AdmissionDecision(provider, False, REASON_QUOTA_DAILY, limit=limits.daily)

            if reserve:
                self._in_flight[provider] = self._in_flight.get(provider, 0) + 1
            return AdmissionDecision(provider, True)

    def release(self, provider: str) -> None:
        """Give back a reserved slot for a call that was never made."""
        with self._lock_for(provider):
            self._release_locked(provider)

    def _release_locked(self, provider: str) -> None:
        current = self._in_flight.get(provider, 0)
        self._in_flight[provider] = max(0, current - 1)

    def record_outcome(
        self,
        provider: str,
        success: bool,
        *,
        rate_limited: bool = False,
        retry_after: Optional[float] = None,
        reserved: bool = False,
    ) -> None:
        """Count a completed call and feed errors into the cooldown window."""
        with self._lock_for(provider):
            if reserved:
                self._release_locked(provider)

            counts = self._counts(provider)
            self.table.put(
                self._day_key(provider, counts["day"]),
                {
                    "provider": provider,
                    "day": counts["day"],
                    "daily_count": counts["daily_count"] + 1,
                    "month": counts["month"],
                    "monthly_count": counts["monthly_count"] + 1,
                },
            )
            self.table.put(
                self._month_key(provider, counts["month"]),
                {"provider": provider, "month": counts["month"], "monthly_count": counts["monthly_count"] + 1},
            )
            if not counts["day_row_exists"]:
                self._prune_locked(provider)

            if success or not self.cooldown.enabled:
                return

            now = self.clock()
            state = self._load_cooldown(provider)
            window_start = now - self.cooldown.window_seconds
            state.error_timestamps = [ts for ts in state.error_timestamps if ts > window_start]
            state.error_timestamps.append(now)

            already_paused = state.paused_until is not None and now < state.paused_until
            if rate_limited:
                duration = max(self.cooldown.duration_seconds, retry_after or 0.0)
                state.paused_at = now
                state.paused_until = max(state.paused_until or 0.0, now + duration)
                logging.warning("Provider %s rate limited; cooling down for %.0fs", provider, duration)
            elif not already_paused and len(state.error_timestamps) > self.cooldown.error_threshold:
                state.paused_at = now
                state.paused_until = now + self.cooldown.duration_seconds
                logging.warning(
                    "Error spike for %s (%d errors in %.0fs); cooling down for %.0fs",
                    provider,
                    len(state.error_timestamps),
                    self.cooldown.window_seconds,
                    self.cooldown.duration_seconds,
                )
            self._save_cooldown(provider, state)

    def _prune_locked(self, provider: str) -> int:
        cutoff = (self._now_dt() - timedelta(days=USAGE_RETENTION_DAYS)).strftime("%Y-%m-%d")
        removed = 0
        prefix = f"usage:{provider}:"
        for key in self.table.keys(prefix):
            if key[len(prefix):] < cutoff:
                self.table.delete(key)
                removed += 1
        if removed:
            logging.debug("Pruned %d usage rows older than %s for %s", removed, cutoff, provider)
        return removed

    def prune(self) -> int:
        """Drop day rows older than the retention period for every provider."""
        providers = {key.split(":")[1] for key in self.table.keys("usage:")}
        removed = 0
        for provider in providers:
            with self._lock_for(provider):
                removed += self._prune_locked(provider)
        return removed

    # ------------------------------------------------------------------
    # Throttling
    # ------------------------------------------------------------------

    def throttle_delay(self, provider: str) -> float:
        return self.throttle_overrides.get(provider, self.tier.value)

    def wait_throttle(self, provider: str) -> float:
        """Sleep until this provider's next pacing slot; returns the time slept."""
        delay = self.throttle_delay(provider)
        if delay <= 0:
            return 0.0
        with self._pace_lock:
            now = self.clock()
            slot = max(now, self._next_slot.get(provider, 0.0))
            self._next_slot[provider] = slot + delay
        wait_for = slot - now
        if wait_for > 0:
            self.sleep(wait_for)
        return wait_for

    # ------------------------------------------------------------------
    # Call wrapper
    # ------------------------------------------------------------------

    def call(self, provider: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Admit, pace, execute and record one external call.

        Raises CooldownActiveError / QuotaExceededError when admission is
        denied; provider errors are recorded and re-raised.
        """
        decision = self.check_admission(provider, reserve=True)
        if not decision.allowed:
            if decision.reason == REASON_COOLDOWN:
                raise CooldownActiveError(provider, self.clock() + (decision.retry_after or 0.0))
            period = "monthly" if decision.reason == REASON_QUOTA_MONTHLY else "daily"
            raise QuotaExceededError(provider, period, decision.limit or 0)

        try:
            self.wait_throttle(provider)
            result = func(*args, **kwargs)
        except RateLimitedError as exc:
            self.record_outcome(provider, False, rate_limited=True, retry_after=exc.retry_after, reserved=True)
            raise
        except ProviderError:
            self.record_outcome(provider, False, reserved=True)
            raise
        except BaseException:
            self.release(provider)
            raise
        self.record_outcome(provider, True, reserved=True)
        return result

    # ------------------------------------------------------------------
    # Manual control + reporting
    # ------------------------------------------------------------------

    def resume(self, provider: str) -> None:
        """Manual override: end any cooldown for ``provider`` now."""
        with self._lock_for(provider):
            self._save_cooldown(provider, CooldownState())
        logging.info("Cooldown for %s cleared manually", provider)

    def state(self, provider: str) -> ProviderState:
        cooldown = self._load_cooldown(provider)
        if self.cooldown.enabled and cooldown.paused_until is not None and self.clock() < cooldown.paused_until:
            return ProviderState.COOLDOWN
        return ProviderState.ACTIVE

    def known_providers(self) -> List[str]:
        names = set(self.limits)
        for prefix in ("usage:", "cooldown:"):
            for key in self.table.keys(prefix):
                names.add(key.split(":")[1])
        return sorted(names)

    def status(self, provider: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        providers = [provider] if provider else self.known_providers()
        report: Dict[str, Dict[str, Any]] = {}
        now = self.clock()
        for name in providers:
            with self._lock_for(name):
                counts = self._counts(name)
                cooldown = self._load_cooldown(name)
            limits = self.limits.get(name, ProviderLimits())
            remaining = 0.0
            if cooldown.paused_until is not None and now < cooldown.paused_until:
                remaining = cooldown.paused_until - now
            report[name] = {
                "state": self.state(name).value,
                "daily_count": counts["daily_count"],
                "daily_limit": limits.daily,
                "monthly_count": counts["monthly_count"],
                "monthly_limit": limits.monthly,
                "cooldown_remaining_seconds": round(remaining, 1),
                "recent_errors": len([ts for ts in cooldown.error_timestamps if ts > now - self.cooldown.window_seconds]),
                "throttle_delay_seconds": self.throttle_delay(name),
            }
        return report
