from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Outcome:
    """Result of a guarded operation. Faults never escape; they become outcomes."""

    ok: bool
    value: Any = None
    reason: Optional[str] = None
    cancelled: bool = False

    @classmethod
    def success(cls, value: Any = None) -> "Outcome":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, reason: str) -> "Outcome":
        return cls(ok=False, reason=str(reason or "").strip() or "failed")

    @classmethod
    def cancellation(cls, reason: str = "cancelled") -> "Outcome":
        return cls(ok=False, reason=reason, cancelled=True)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": self.ok, "value": self.value, "reason": self.reason}
        if self.cancelled:
            payload["cancelled"] = True
        return payload


FaultHandler = Callable[[BaseException], Outcome]


def default_fault_handler(exc: BaseException) -> Outcome:
    logger.error("unhandled fault: %r", exc, exc_info=exc)
    return Outcome.failure("action failed, more info in logs")


@dataclass(frozen=True)
class FaultRule:
    category: Type[BaseException]
    handler: FaultHandler


@dataclass(frozen=True)
class FaultPolicy:
    rules: Tuple[FaultRule, ...] = ()
    default: FaultHandler = default_fault_handler

    def register(self, category: Type[BaseException], handler: FaultHandler) -> "FaultPolicy":
        return replace(self, rules=self.rules + (FaultRule(category, handler),))

    def handler_for(self, exc: BaseException) -> FaultHandler:
        # Nearest class in the MRO wins; registration order breaks ties.
        mro = type(exc).__mro__
        best: Optional[FaultRule] = None
        best_rank = len(mro)
        for rule in self.rules:
            if not isinstance(exc, rule.category):
                continue
            rank = mro.index(rule.category) if rule.category in mro else len(mro) - 1
            if rank < best_rank:
                best, best_rank = rule, rank
        return best.handler if best is not None else self.default


@dataclass(frozen=True)
class RetryPolicy(FaultPolicy):
    interval_seconds: float = 1.0
    max_tries: int = 1


Operation = Callable[[], Any]
AsyncOperation = Callable[[], Union[Awaitable[Any], Any]]


def _as_outcome(result: Any) -> Outcome:
    if isinstance(result, Outcome):
        return result
    if result is False:
        return Outcome.failure("operation reported failure")
    if result is None or result is True:
        return Outcome.success()
    return Outcome.success(result)


class ResilientExecutor:
    """
    Runs operations under a fault policy.

    execute()/execute_async() always return an Outcome. The retry combinators
    call the operation at most ``max_tries`` times, waiting ``interval_seconds``
    between attempts on a cancel signal so a shutdown can cut the wait short.
    """

    def __init__(self, policy: Optional[FaultPolicy] = None) -> None:
        self._policy = policy or FaultPolicy()

    @property
    def policy(self) -> FaultPolicy:
        return self._policy

    def _handle(self, exc: Exception) -> Outcome:
        handler = self._policy.handler_for(exc)
        try:
            return _as_outcome(handler(exc))
        except Exception as handler_exc:
            logger.error("fault handler raised while handling %r: %r", exc, handler_exc)
            return Outcome.failure(f"fault handler failed: {handler_exc}")

    def execute(self, op: Operation) -> Outcome:
        try:
            return _as_outcome(op())
        except Exception as exc:
            return self._handle(exc)

    async def execute_async(self, op: AsyncOperation) -> Outcome:
        try:
            result = op()
            if inspect.isawaitable(result):
                result = await result
            return _as_outcome(result)
        except Exception as exc:
            return self._handle(exc)

    def repeat_till_made_it_or_timeout(
        self,
        op: Operation,
        interval_seconds: float,
        max_tries: int,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> Outcome:
        if int(max_tries) <= 0:
            return Outcome.failure(f"max_tries must be positive, got {max_tries}")
        wait = max(0.0, float(interval_seconds))
        outcome = Outcome.failure("not attempted")
        for attempt in range(1, int(max_tries) + 1):
            if cancel is not None and cancel.is_set():
                return Outcome.cancellation(f"cancelled before attempt {attempt}")
            outcome = self.execute(op)
            if outcome.ok or attempt >= int(max_tries):
                return outcome
            if cancel is not None:
                if cancel.wait(wait):
                    return Outcome.cancellation(f"cancelled after attempt {attempt}")
            else:
                time.sleep(wait)
        return outcome

    async def repeat_till_made_it_or_timeout_async(
        self,
        op: AsyncOperation,
        interval_seconds: float,
        max_tries: int,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> Outcome:
        if int(max_tries) <= 0:
            return Outcome.failure(f"max_tries must be positive, got {max_tries}")
        wait = max(0.0, float(interval_seconds))
        outcome = Outcome.failure("not attempted")
        for attempt in range(1, int(max_tries) + 1):
            if cancel is not None and cancel.is_set():
                return Outcome.cancellation(f"cancelled before attempt {attempt}")
            outcome = await self.execute_async(op)
            if outcome.ok or attempt >= int(max_tries):
                return outcome
            if cancel is None:
                await asyncio.sleep(wait)
                continue
            try:
                await asyncio.wait_for(cancel.wait(), timeout=wait)
            except asyncio.TimeoutError:
                continue
            return Outcome.cancellation(f"cancelled after attempt {attempt}")
        return outcome

    def retry(
        self,
        op: Operation,
        policy: RetryPolicy,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> Outcome:
        return ResilientExecutor(policy).repeat_till_made_it_or_timeout(
            op,
            policy.interval_seconds,
            policy.max_tries,
            cancel=cancel,
        )
