from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SupervisorConfig:
    max_crashes: int = 3
    restart_delay_seconds: float = 2.0


def run_supervised(
    *,
    run_once: Callable[[], None],
    cfg: Optional[SupervisorConfig] = None,
    on_crash: Optional[Callable[[int, BaseException], None]] = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> None:
    """
    Crash-safety wrapper for the server process.

    run_once() returning normally ends supervision. Each exception counts as a crash;
    the last allowed crash is re-raised to the caller.
    """
    if cfg is None:
        cfg = SupervisorConfig()

    crashes = 0
    while True:
        try:
            run_once()
            return
        except Exception as exc:
            crashes += 1
            logger.error("supervised run crashed (%s/%s): %r", crashes, cfg.max_crashes, exc, exc_info=exc)
            if callable(on_crash):
                on_crash(crashes, exc)
            if crashes >= cfg.max_crashes:
                raise
            if cfg.restart_delay_seconds > 0:
                sleep_fn(cfg.restart_delay_seconds)
