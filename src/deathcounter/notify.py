from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class NotificationSink:
    """Two-level (info/error) notification surface shared by the server components."""

    def __init__(
        self,
        *,
        info_fn: Optional[Callable[[str], None]] = None,
        error_fn: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._info_fn = info_fn
        self._error_fn = error_fn

    def _emit(self, fn: Optional[Callable[[str], None]], message: str) -> None:
        text = str(message or "").strip()
        if not text:
            return
        line = f"{_utc_now_iso()} {text}"
        if callable(fn):
            try:
                fn(line)
                return
            except Exception:
                logger.exception("notification callback failed")
        print(line)

    def info(self, message: str) -> None:
        logger.info("%s", message)
        self._emit(self._info_fn, message)

    def error(self, message: str) -> None:
        logger.error("%s", message)
        if self._error_fn is None:
            self._emit(self._info_fn, f"ERROR {message}")
            return
        self._emit(self._error_fn, message)
