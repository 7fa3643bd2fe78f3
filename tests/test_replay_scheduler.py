from __future__ import annotations

import threading
import time
from typing import Any, Iterable, List, Optional, Tuple

from deathcounter.control_room.replay_scheduler import (
    ReplayScheduler,
    ReplaySchedulerSettings,
    SchedulerState,
)
from collecting_sink import CollectingSink
from deathcounter.resilience import Outcome


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _FakeBridge:
    destination = "Host"

    def __init__(self, *, connected: bool = True, last_scene_change: float = 0.0) -> None:
        self.connected = connected
        self.transition_active = False
        self.scene_change_at = last_scene_change
        self.main_active = True
        self.scenes = {"Main"}
        self.inputs = {"Twitch Replay", "Player 1 Caption", "Player 2 Caption"}
        self.show_results: List[Outcome] = []
        self.shown: List[Tuple[str, Any]] = []
        self.captions: List[Tuple[int, str, Any]] = []
        self.caption_result = Outcome.success()
        self.connect_calls = 0
        self.block_show: Optional[threading.Event] = None
        self.raise_on_scene_change_read = 0
        self.connected_listeners: List[Any] = []
        self.disconnected_listeners: List[Any] = []

    @property
    def is_connected(self) -> bool:
        return self.connected

    def connect(self) -> bool:
        self.connect_calls += 1
        self.connected = True
        return True

    @property
    def is_transition_active(self) -> bool:
        return self.transition_active

    @property
    def last_scene_change(self) -> float:
        if self.raise_on_scene_change_read > 0:
            self.raise_on_scene_change_read -= 1
            raise RuntimeError("scene cache exploded")
        return self.scene_change_at

    def is_main_scene_active(self) -> Outcome:
        return Outcome.success(self.main_active)

    def has_scene(self, name: str) -> Outcome:
        return Outcome.success(name in self.scenes)

    def has_named_elements(self, names: Iterable[str]) -> Outcome:
        missing = [name for name in names if name not in self.inputs]
        if missing:
            return Outcome.failure(f"following items are missing: {', '.join(missing)}")
        return Outcome.success()

    def _show(self, entry: Tuple[str, Any]) -> Outcome:
        if self.block_show is not None:
            self.block_show.wait(5.0)
        self.shown.append(entry)
        if self.show_results:
            return self.show_results.pop(0)
        return Outcome.success()

    def show_local_replay_trigger(self) -> Outcome:
        return self._show(("local", None))

    def show_hosted_clip(self, clip_id: str, player_slot: int) -> Outcome:
        return self._show(("clip", (clip_id, player_slot)))

    def set_caption(self, player_slot: int, text: str, color: Any = None) -> Outcome:
        self.captions.append((player_slot, text, color))
        return self.caption_result

    def add_connected_listener(self, fn: Any) -> None:
        self.connected_listeners.append(fn)

    def add_disconnected_listener(self, fn: Any) -> None:
        self.disconnected_listeners.append(fn)


def _settings(**overrides: Any) -> ReplaySchedulerSettings:
    values = dict(
        main_scene_name="Main",
        player_caption_source_name_pattern="Player {0} Caption",
        twitch_clip_replay_browser_source_name="Twitch Replay",
        max_players=2,
        tick_interval_seconds=0.01,
        replay_cooldown_seconds=5.0,
        show_replay_try_count=3,
        show_replay_try_interval_seconds=0.0,
        stop_wait_seconds=2.0,
        reconnect_interval_seconds=0.01,
    )
    values.update(overrides)
    return ReplaySchedulerSettings(**values)


def _scheduler(bridge: _FakeBridge, clock: Optional[_Clock] = None, **overrides: Any):
    sink = CollectingSink()
    scheduler = ReplayScheduler(bridge, _settings(**overrides), notifier=sink, time_fn=clock or _Clock())
    return scheduler, sink


def _wait_until(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_ready_job_is_delivered_and_removed_in_one_tick() -> None:
    bridge = _FakeBridge()
    scheduler, sink = _scheduler(bridge)
    scheduler.enqueue_local_replay(1)

    assert scheduler.tick() == "DELIVERED"
    assert bridge.shown == [("local", None)]
    assert scheduler.pending() == []
    assert sink.infos[-1] == "[ReplayScheduler] showing replay for Player 1"
    assert sink.errors == []


def test_transition_holds_job_until_it_clears() -> None:
    bridge = _FakeBridge()
    bridge.transition_active = True
    scheduler, _sink = _scheduler(bridge)
    scheduler.enqueue_hosted_clip("clip-1", "speedy", 2)

    for _ in range(5):
        assert scheduler.tick() == "TRANSITION_ACTIVE"
    assert bridge.shown == []
    assert len(scheduler.pending()) == 1

    bridge.transition_active = False
    assert scheduler.tick() == "DELIVERED"
    assert bridge.shown == [("clip", ("clip-1", 2))]


def test_cooldown_blocks_delivery_until_threshold() -> None:
    clock = _Clock(now=104.9)
    bridge = _FakeBridge(last_scene_change=100.0)
    scheduler, _sink = _scheduler(bridge, clock)
    scheduler.enqueue_local_replay(1)

    assert scheduler.tick() == "COOLDOWN"
    assert bridge.shown == []
    clock.now = 105.0
    assert scheduler.tick() == "DELIVERED"


def test_wrong_scene_defers_silently() -> None:
    bridge = _FakeBridge()
    bridge.main_active = False
    scheduler, sink = _scheduler(bridge)
    scheduler.enqueue_local_replay(1)
    assert scheduler.tick() == "NOT_MAIN_SCENE"
    assert sink.errors == []
    assert len(scheduler.pending()) == 1


def test_fifo_order_is_kept_under_gating() -> None:
    bridge = _FakeBridge()
    bridge.main_active = False
    scheduler, _sink = _scheduler(bridge)
    for slot in (2, 1, 3):
        scheduler.enqueue_hosted_clip(f"clip-{slot}", "chan", slot)

    for _ in range(3):
        scheduler.tick()
    assert bridge.shown == []

    bridge.main_active = True
    results = [scheduler.tick() for _ in range(4)]
    assert results == ["DELIVERED", "DELIVERED", "DELIVERED", "QUEUE_EMPTY"]
    assert [entry[1][1] for entry in bridge.shown] == [2, 1, 3]


def test_retry_exhaustion_keeps_job_at_head() -> None:
    bridge = _FakeBridge()
    bridge.show_results = [Outcome.failure("replay scene is busy")] * 3
    scheduler, sink = _scheduler(bridge)
    first = scheduler.enqueue_local_replay(1)
    scheduler.enqueue_local_replay(2)

    assert scheduler.tick() == "DELIVERY_FAILED"
    assert len(bridge.shown) == 3
    assert first.attempts == 3
    assert scheduler.queue.peek() is first
    assert sink.errors == [
        "[ReplayScheduler] failed to show a replay for Player 1 after 3 tries, reason: replay scene is busy"
    ]

    assert scheduler.tick() == "DELIVERED"
    assert scheduler.queue.peek().player_slot == 2


def test_scene_query_failure_is_notified_and_skipped() -> None:
    bridge = _FakeBridge()
    scheduler, sink = _scheduler(bridge)
    bridge.is_main_scene_active = lambda: Outcome.failure("couldn't get current program scene name")
    scheduler.enqueue_local_replay(1)
    assert scheduler.tick() == "SCENE_QUERY_FAILED"
    assert bridge.shown == []
    assert "couldn't get current program scene name" in sink.errors[0]


def test_disconnected_bridge_is_reconnected_then_served() -> None:
    bridge = _FakeBridge(connected=False)
    scheduler, sink = _scheduler(bridge)
    scheduler.enqueue_local_replay(1)

    assert scheduler.tick() == "NOT_CONNECTED"
    assert "[ConnectionSupervisor] trying to reconnect to Host..." in sink.infos
    assert _wait_until(lambda: bridge.connected)
    scheduler.supervisor.join(timeout=2.0)
    assert scheduler.tick() == "DELIVERED"
    assert bridge.connect_calls == 1


def test_update_caption_failure_is_notified() -> None:
    bridge = _FakeBridge()
    scheduler, sink = _scheduler(bridge)
    assert scheduler.update_caption(1, "Deaths: 3", "#FF0000").ok is True
    assert bridge.captions == [(1, "Deaths: 3", "#FF0000")]

    bridge.caption_result = Outcome.failure("no websocket connection to Host")
    assert scheduler.update_caption(2, None).ok is False
    assert bridge.captions[-1] == (2, "", None)
    assert sink.errors == ["[ReplayScheduler] failed to update player caption, reason: no websocket connection to Host"]


def test_start_fails_fast_when_main_scene_is_missing() -> None:
    bridge = _FakeBridge()
    bridge.scenes = set()
    scheduler, _sink = _scheduler(bridge)
    outcome = scheduler.start()
    assert outcome.ok is False
    assert "Main Scene [Main] is missing" in str(outcome.reason)
    assert scheduler.state == SchedulerState.STOPPED


def test_start_fails_fast_when_caption_source_is_missing() -> None:
    bridge = _FakeBridge()
    bridge.inputs.discard("Player 2 Caption")
    scheduler, _sink = _scheduler(bridge)
    outcome = scheduler.start()
    assert outcome.ok is False
    assert "Player 2 Caption" in str(outcome.reason)
    assert scheduler.state == SchedulerState.STOPPED


def test_start_rejects_non_positive_player_count() -> None:
    scheduler, _sink = _scheduler(_FakeBridge(), max_players=0)
    outcome = scheduler.start()
    assert outcome.ok is False
    assert "Max Players value [0]" in str(outcome.reason)


def test_start_run_and_stop_delivers_from_loop() -> None:
    bridge = _FakeBridge(connected=False)
    scheduler, sink = _scheduler(bridge)
    outcome = scheduler.start()
    try:
        assert outcome.ok is True
        assert scheduler.state == SchedulerState.RUNNING
        assert scheduler.start().ok is False
        assert len(bridge.connected_listeners) == 1

        scheduler.enqueue_local_replay(1)
        scheduler.enqueue_local_replay(2)
        assert _wait_until(lambda: len(bridge.shown) == 2)
    finally:
        scheduler.stop()
    assert scheduler.state == SchedulerState.STOPPED
    assert "[ReplayScheduler] setup is ok" in sink.infos
    assert sink.infos[-1] == "[ReplayScheduler] stopped"


def test_loop_survives_unexpected_tick_fault() -> None:
    bridge = _FakeBridge()
    scheduler, sink = _scheduler(bridge)
    assert scheduler.start().ok is True
    try:
        bridge.raise_on_scene_change_read = 2
        scheduler.enqueue_local_replay(1)
        scheduler.enqueue_local_replay(2)
        assert _wait_until(lambda: len(bridge.shown) == 2)
    finally:
        scheduler.stop()
    tick_errors = [line for line in sink.errors if "tick failed" in line]
    assert len(tick_errors) == 2
    assert scheduler.pending() == []


def test_stop_cuts_retry_wait_short_and_keeps_job() -> None:
    bridge = _FakeBridge()
    bridge.show_results = [Outcome.failure("busy")] * 10
    scheduler, sink = _scheduler(bridge, show_replay_try_interval_seconds=5.0, show_replay_try_count=10)
    assert scheduler.start().ok is True
    scheduler.enqueue_local_replay(1)
    assert _wait_until(lambda: len(bridge.shown) == 1)

    started = time.monotonic()
    scheduler.stop()
    assert time.monotonic() - started < 2.0
    assert scheduler.state == SchedulerState.STOPPED
    assert len(scheduler.pending()) == 1
    assert not any("failed to show a replay" in line for line in sink.errors)


def test_stop_abandons_a_stuck_loop_after_bounded_wait() -> None:
    bridge = _FakeBridge()
    release = threading.Event()
    bridge.block_show = release
    scheduler, sink = _scheduler(bridge, stop_wait_seconds=0.1)
    assert scheduler.start().ok is True
    scheduler.enqueue_local_replay(1)
    time.sleep(0.1)
    try:
        scheduler.stop()
        assert scheduler.state == SchedulerState.STOPPED
        assert any("abandoning it" in line for line in sink.errors)
    finally:
        release.set()


def test_bridge_events_are_forwarded_as_notifications() -> None:
    bridge = _FakeBridge()
    scheduler, sink = _scheduler(bridge)
    assert scheduler.start().ok is True
    try:
        bridge.disconnected_listeners[0]("OBS is shutting down")
        bridge.connected_listeners[0]()
    finally:
        scheduler.stop()
    assert "[ReplayScheduler] disconnected from host's obs websocket, reason: OBS is shutting down" in sink.errors
    assert "[ReplayScheduler] connected to host's obs websocket" in sink.infos
