from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from deathcounter.control_room.connection_supervisor import ConnectionSupervisor, connect_till_made_it
from deathcounter.control_room.replay_jobs import (
    HostedClipReference,
    LocalTrigger,
    ReplayJob,
    ReplayQueue,
    play,
)
from deathcounter.notify import NotificationSink
from deathcounter.resilience import FaultPolicy, Outcome, ResilientExecutor

logger = logging.getLogger(__name__)


class SchedulerState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class ReplaySchedulerSettings:
    main_scene_name: Optional[str] = None
    player_caption_source_name_pattern: Optional[str] = None
    twitch_clip_replay_browser_source_name: Optional[str] = None
    max_players: int = 0
    tick_interval_seconds: float = 0.25
    replay_cooldown_seconds: float = 5.0
    show_replay_try_count: int = 5
    show_replay_try_interval_seconds: float = 2.0
    stop_wait_seconds: float = 10.0
    reconnect_interval_seconds: float = 1.0


class ReplayScheduler:
    """
    Gated FIFO replay delivery onto the broadcast output.

    A single loop thread wakes every tick, keeps the bridge connection supervised
    and, when every gate holds (connected, queue non-empty, no transition running,
    scene-change cooldown elapsed, main scene on program), tries to deliver the
    head job with a bounded retry. A job that exhausts its retries stays at the
    head and is tried again on a later tick; jobs behind it wait.

    Producers call enqueue()/update_caption() from any thread.
    """

    def __init__(
        self,
        bridge: Any,
        settings: ReplaySchedulerSettings,
        *,
        notifier: Optional[NotificationSink] = None,
        supervisor: Optional[ConnectionSupervisor] = None,
        queue: Optional[ReplayQueue] = None,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self._bridge = bridge
        self._settings = settings
        self._notifier = notifier or NotificationSink()
        self._time_fn = time_fn
        self._cancel = threading.Event()
        self._executor = ResilientExecutor(FaultPolicy(default=self._default_fault_handler))
        self._queue = queue or ReplayQueue(time_fn=time_fn)
        if supervisor is None:
            supervisor = ConnectionSupervisor(
                notifier=self._notifier,
                interval_seconds=settings.reconnect_interval_seconds,
                cancel=self._cancel,
                executor=self._executor,
            )
            supervisor.add(bridge)
        self._supervisor = supervisor

        self._state_lock = threading.Lock()
        self._state = SchedulerState.STOPPED
        self._thread: Optional[threading.Thread] = None
        self._generation = 0
        self._tick_lock = threading.Lock()
        self._listeners_attached = False

    # ── public surface ──────────────────────────────────────────

    @property
    def state(self) -> SchedulerState:
        with self._state_lock:
            return self._state

    @property
    def queue(self) -> ReplayQueue:
        return self._queue

    @property
    def supervisor(self) -> ConnectionSupervisor:
        return self._supervisor

    def is_running(self) -> bool:
        return self.state == SchedulerState.RUNNING

    def _set_state(self, state: SchedulerState) -> None:
        with self._state_lock:
            self._state = state

    def start(self) -> Outcome:
        with self._state_lock:
            if self._state != SchedulerState.STOPPED:
                return Outcome.failure(f"replay scheduler is {self._state.value}")
            self._state = SchedulerState.STARTING
        self._cancel.clear()

        self._notifier.info("[ReplayScheduler] connecting to OBS websocket...")
        connected = connect_till_made_it(
            self._bridge,
            interval_seconds=self._settings.reconnect_interval_seconds,
            cancel=self._cancel,
            executor=self._executor,
        )
        if not connected:
            self._set_state(SchedulerState.STOPPED)
            return Outcome.cancellation("start cancelled before OBS connection was made")
        self._notifier.info("[ReplayScheduler] connected to OBS websocket")
        self._attach_bridge_listeners()

        self._notifier.info("[ReplayScheduler] validating obs setup...")
        validated = self.validate_setup()
        if not validated.ok:
            self._set_state(SchedulerState.STOPPED)
            return Outcome.failure(f"couldn't validate the OBS setup, reason: {validated.reason}")
        self._notifier.info("[ReplayScheduler] setup is ok")

        with self._state_lock:
            if self._cancel.is_set():
                self._state = SchedulerState.STOPPED
                return Outcome.cancellation("start cancelled during validation")
            self._generation += 1
            generation = self._generation
            self._thread = threading.Thread(
                target=self._run,
                args=(generation,),
                name="deathcounter-replay-scheduler",
                daemon=True,
            )
            self._thread.start()
            self._state = SchedulerState.RUNNING
        return Outcome.success()

    def stop(self) -> None:
        with self._state_lock:
            state = self._state
            thread = self._thread
            if state == SchedulerState.STARTING:
                # start() observes the cancel signal and resets the state itself.
                self._cancel.set()
                return
            if state != SchedulerState.RUNNING:
                return
            self._state = SchedulerState.STOPPING

        self._notifier.info("[ReplayScheduler] stopping...")
        self._cancel.set()
        wait_s = max(0.0, float(self._settings.stop_wait_seconds))
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=wait_s)
            if thread.is_alive():
                self._notifier.error(
                    f"[ReplayScheduler] loop did not exit within {wait_s:g}s; abandoning it"
                )
        self._supervisor.join(timeout=wait_s)

        with self._state_lock:
            # An abandoned loop sees a stale generation and exits on its own.
            self._generation += 1
            self._thread = None
            self._state = SchedulerState.STOPPED
        self._notifier.info("[ReplayScheduler] stopped")

    def join(self, timeout: Optional[float] = None) -> None:
        with self._state_lock:
            thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)

    def enqueue(self, job: ReplayJob) -> ReplayJob:
        queued = self._queue.put(job)
        logger.info("queued replay seq=%s for %s", queued.seq, queued.player_name)
        return queued

    def enqueue_local_replay(self, player_slot: int) -> ReplayJob:
        return self.enqueue(ReplayJob(player_slot=int(player_slot), payload=LocalTrigger()))

    def enqueue_hosted_clip(self, clip_id: str, channel: str, player_slot: int) -> ReplayJob:
        payload = HostedClipReference(clip_id=str(clip_id), channel=str(channel))
        return self.enqueue(ReplayJob(player_slot=int(player_slot), payload=payload))

    def update_caption(self, player_slot: int, caption: Optional[str], color: Any = None) -> Outcome:
        outcome = self._executor.execute(
            lambda: self._bridge.set_caption(int(player_slot), caption or "", color)
        )
        if not outcome.ok:
            self._notifier.error(f"[ReplayScheduler] failed to update player caption, reason: {outcome.reason}")
        return outcome

    def pending(self) -> List[Dict[str, Any]]:
        return [job.to_dict() for job in self._queue.snapshot()]

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "pending": len(self._queue),
            "connections": self._supervisor.snapshot(),
        }

    # ── setup validation ────────────────────────────────────────

    def validate_setup(self) -> Outcome:
        settings = self._settings
        main_scene = str(settings.main_scene_name or "").strip()
        if not main_scene:
            return Outcome.failure("Main Scene Name is missing")
        has_scene = self._executor.execute(lambda: self._bridge.has_scene(main_scene))
        if not has_scene.ok:
            return Outcome.failure(str(has_scene.reason))
        if not has_scene.value:
            return Outcome.failure(f"Main Scene [{main_scene}] is missing")

        clip_source = str(settings.twitch_clip_replay_browser_source_name or "").strip()
        if not clip_source:
            return Outcome.failure("Twitch Replay Browser Source name is not specified")
        pattern = str(settings.player_caption_source_name_pattern or "").strip()
        if not pattern:
            return Outcome.failure("Player Caption Source Name Pattern is not specified")
        if int(settings.max_players) <= 0:
            return Outcome.failure(f"Max Players value [{settings.max_players}] is not acceptable")

        def required_names() -> List[str]:
            return [clip_source] + [pattern.format(slot) for slot in range(1, int(settings.max_players) + 1)]

        names = self._executor.execute(required_names)
        if not names.ok:
            return Outcome.failure(f"Player Caption Source Name Pattern is invalid: {names.reason}")
        present = self._executor.execute(lambda: self._bridge.has_named_elements(names.value))
        if not present.ok:
            return Outcome.failure(str(present.reason))
        return Outcome.success()

    # ── loop ────────────────────────────────────────────────────

    def _run(self, generation: int) -> None:
        interval = max(0.0, float(self._settings.tick_interval_seconds))
        while not self._cancel.wait(interval):
            if generation != self._generation:
                break
            try:
                self.tick()
            except Exception as exc:
                logger.exception("replay scheduler tick failed")
                self._notifier.error(f"[ReplayScheduler] tick failed, continuing: {exc}")
        logger.info("replay scheduler loop exited (generation=%s)", generation)

    def tick(self) -> str:
        """One gating + delivery pass. Returns a reason code describing what happened."""
        with self._tick_lock:
            self._supervisor.tick()

            if not self._supervisor.is_connected(self._bridge.destination):
                return "NOT_CONNECTED"
            if self._queue.is_empty():
                return "QUEUE_EMPTY"
            if self._bridge.is_transition_active:
                return "TRANSITION_ACTIVE"

            elapsed = self._time_fn() - float(self._bridge.last_scene_change)
            if elapsed < float(self._settings.replay_cooldown_seconds):
                return "COOLDOWN"

            main_active = self._executor.execute(self._bridge.is_main_scene_active)
            if not main_active.ok:
                self._notifier.error(
                    f"[ReplayScheduler] failed to check whether main scene is active, reason: {main_active.reason}"
                )
                return "SCENE_QUERY_FAILED"
            if not main_active.value:
                return "NOT_MAIN_SCENE"

            job = self._queue.peek()
            if job is None:
                return "QUEUE_EMPTY"

            tries = int(self._settings.show_replay_try_count)
            outcome = self._executor.repeat_till_made_it_or_timeout(
                lambda: self._deliver(job),
                self._settings.show_replay_try_interval_seconds,
                tries,
                cancel=self._cancel,
            )
            if outcome.cancelled:
                return "CANCELLED"
            if not outcome.ok:
                self._notifier.error(
                    f"[ReplayScheduler] failed to show a replay for {job.player_name} after {tries} tries, "
                    f"reason: {outcome.reason}"
                )
                return "DELIVERY_FAILED"

            self._notifier.info(f"[ReplayScheduler] showing replay for {job.player_name}")
            if self._queue.pop_head(job.seq) is None:
                self._notifier.error("[ReplayScheduler] failed to dequeue replay")
            return "DELIVERED"

    def _deliver(self, job: ReplayJob) -> Outcome:
        job.attempts += 1
        return play(job, self._bridge)

    # ── bridge events / faults ──────────────────────────────────

    def _attach_bridge_listeners(self) -> None:
        if self._listeners_attached:
            return
        self._listeners_attached = True
        if hasattr(self._bridge, "add_connected_listener"):
            self._bridge.add_connected_listener(self._on_bridge_connected)
        if hasattr(self._bridge, "add_disconnected_listener"):
            self._bridge.add_disconnected_listener(self._on_bridge_disconnected)

    def _on_bridge_connected(self) -> None:
        self._notifier.info("[ReplayScheduler] connected to host's obs websocket")

    def _on_bridge_disconnected(self, reason: str) -> None:
        self._notifier.error(f"[ReplayScheduler] disconnected from host's obs websocket, reason: {reason}")

    def _default_fault_handler(self, exc: BaseException) -> Outcome:
        logger.error("replay scheduler action failed: %r", exc, exc_info=exc)
        return Outcome.failure("replay scheduler action failed, more info in logs")
