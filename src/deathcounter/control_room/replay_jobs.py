from __future__ import annotations

import itertools
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Literal, Optional, Union

from deathcounter.resilience import Outcome


@dataclass(frozen=True)
class LocalTrigger:
    kind: Literal["local"] = "local"


@dataclass(frozen=True)
class HostedClipReference:
    clip_id: str
    channel: str
    kind: Literal["hosted_clip"] = "hosted_clip"


ReplayPayload = Union[LocalTrigger, HostedClipReference]


@dataclass
class ReplayJob:
    player_slot: int
    payload: ReplayPayload = field(default_factory=LocalTrigger)
    seq: int = -1
    enqueued_at: float = 0.0
    attempts: int = 0

    @property
    def player_name(self) -> str:
        name = f"Player {self.player_slot}"
        if isinstance(self.payload, HostedClipReference):
            return f"{name} ({self.payload.channel})"
        return name

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.payload.kind}
        if isinstance(self.payload, HostedClipReference):
            payload["clip_id"] = self.payload.clip_id
            payload["channel"] = self.payload.channel
        return {
            "seq": self.seq,
            "player_slot": self.player_slot,
            "payload": payload,
            "enqueued_at": self.enqueued_at,
            "attempts": self.attempts,
        }


def _play_local(job: ReplayJob, bridge: Any) -> Outcome:
    return bridge.show_local_replay_trigger()


def _play_hosted_clip(job: ReplayJob, bridge: Any) -> Outcome:
    payload = job.payload
    if not isinstance(payload, HostedClipReference):
        return Outcome.failure("hosted clip payload expected")
    return bridge.show_hosted_clip(payload.clip_id, job.player_slot)


_PLAYERS: Dict[str, Callable[[ReplayJob, Any], Outcome]] = {
    "local": _play_local,
    "hosted_clip": _play_hosted_clip,
}


def play(job: ReplayJob, bridge: Any) -> Outcome:
    """Single delivery call for a job, picked by payload kind."""
    player = _PLAYERS.get(job.payload.kind)
    if player is None:
        return Outcome.failure(f"no player for replay kind {job.payload.kind!r}")
    return player(job, bridge)


class ReplayQueue:
    """
    Multi-producer, single-consumer FIFO of replay jobs.

    Sequence numbers are handed out inside the same critical section as the append,
    so racing producers are ordered by arrival at the queue.
    """

    def __init__(self, *, time_fn: Callable[[], float] = time.time) -> None:
        self._time_fn = time_fn
        self._lock = threading.Lock()
        self._items: Deque[ReplayJob] = deque()
        self._seq = itertools.count(1)

    def put(self, job: ReplayJob) -> ReplayJob:
        with self._lock:
            job.seq = next(self._seq)
            job.enqueued_at = self._time_fn()
            self._items.append(job)
        return job

    def peek(self) -> Optional[ReplayJob]:
        with self._lock:
            return self._items[0] if self._items else None

    def pop_head(self, seq: int) -> Optional[ReplayJob]:
        """Remove the head only if it is still the job with ``seq``."""
        with self._lock:
            if self._items and self._items[0].seq == seq:
                return self._items.popleft()
            return None

    def clear(self) -> int:
        with self._lock:
            dropped = len(self._items)
            self._items.clear()
            return dropped

    def is_empty(self) -> bool:
        with self._lock:
            return not self._items

    def snapshot(self) -> List[ReplayJob]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
