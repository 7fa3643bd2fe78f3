"""OBSBridge: the broadcast-control endpoint, spoken to over obs-websocket v5.

Requests go through an ``obsws_python.ReqClient``; push events (scene changes,
transitions, OBS exiting) arrive on an ``obsws_python.EventClient`` thread and
only ever touch small lock-guarded cells, so event delivery never waits on the
replay scheduler.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

import obsws_python as obs
import webcolors
import websocket
from obsws_python.error import OBSSDKRequestError, OBSSDKTimeoutError

from deathcounter.notify import NotificationSink
from deathcounter.resilience import FaultPolicy, Outcome, ResilientExecutor

logger = logging.getLogger(__name__)

DEFAULT_CAPTION_COLOR = 0xEFEFEF
INSTANT_REPLAY_HOTKEY_NAME = "instant_replay.trigger"
LOCAL_REPLAY_SCENE_NAME = "Local Replay Scene"
SCENE_SWITCHER_VENDOR = "AdvancedSceneSwitcher"
SCENE_SWITCHER_REQUEST = "AdvancedSceneSwitcherMessage"

CaptionColor = Union[None, int, str, Sequence[int]]


@dataclass(frozen=True)
class OBSBridgeOptions:
    destination: str = "Host"
    host: str = "127.0.0.1"
    port: int = 4455
    password: Optional[str] = None
    timeout_seconds: float = 3.0
    main_scene_name: Optional[str] = None
    player_caption_source_name_pattern: Optional[str] = None
    twitch_clip_replay_browser_source_name: Optional[str] = None
    max_players: int = 0
    replay_timeout_seconds: float = 30.0
    replay_delay_seconds: float = 10.0


@dataclass(frozen=True)
class SceneState:
    scene_name: Optional[str]
    transition_active: bool
    last_scene_change: float


def twitch_clip_embed_url(clip_id: str) -> str:
    return f"https://clips.twitch.tv/embed?autoplay=1&clip={clip_id}&parent=absolute"


def caption_color_value(color: CaptionColor) -> int:
    """
    Convert a caption color to the integer OBS text sources expect.

    Accepts None (default color), a raw int, a color name (``"Tomato"``),
    ``"#RRGGBB"``, ``"r, g, b"``, ``"a, r, g, b"`` or an (r, g, b) sequence.
    Alpha is dropped. Channels are packed as R | G << 8 | B << 16.
    """
    if color is None:
        return DEFAULT_CAPTION_COLOR
    if isinstance(color, bool):
        raise ValueError(f"unsupported caption color: {color!r}")
    if isinstance(color, int):
        if color < 0 or color > 0xFFFFFFFF:
            raise ValueError(f"caption color out of range: {color!r}")
        return color
    if isinstance(color, str):
        text = color.strip()
        if text.startswith("#") and len(text) == 7:
            try:
                channels = [int(text[i : i + 2], 16) for i in (1, 3, 5)]
            except ValueError as exc:
                raise ValueError(f"unsupported caption color: {color!r}") from exc
        elif text.isalpha():
            try:
                rgb = webcolors.name_to_rgb(text.lower())
            except ValueError as exc:
                raise ValueError(f"unsupported caption color: {color!r}") from exc
            channels = [rgb.red, rgb.green, rgb.blue]
        else:
            parts = [part.strip() for part in text.split(",")]
            if len(parts) not in (3, 4):
                raise ValueError(f"unsupported caption color: {color!r}")
            try:
                channels = [int(part) for part in parts[-3:]]
            except ValueError as exc:
                raise ValueError(f"unsupported caption color: {color!r}") from exc
    else:
        channels = list(color)[:3]
        if len(channels) != 3:
            raise ValueError(f"unsupported caption color: {color!r}")
    if any((not isinstance(ch, int)) or ch < 0 or ch > 255 for ch in channels):
        raise ValueError(f"caption color channels must be 0-255: {color!r}")
    r, g, b = channels
    return r | (g << 8) | (b << 16)


class OBSBridge:
    def __init__(
        self,
        options: OBSBridgeOptions,
        *,
        notifier: Optional[NotificationSink] = None,
        req_client_factory: Optional[Callable[..., Any]] = None,
        event_client_factory: Optional[Callable[..., Any]] = None,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self._options = options
        self._notifier = notifier or NotificationSink()
        self._req_client_factory = req_client_factory or obs.ReqClient
        self._event_client_factory = event_client_factory or obs.EventClient
        self._time_fn = time_fn

        self._connection_lock = threading.Lock()
        self._connected = False
        self._connecting = False

        self._clients_lock = threading.Lock()
        self._req_client: Any = None
        self._event_client: Any = None
        self._request_lock = threading.Lock()

        self._scene_lock = threading.Lock()
        self._scene_name_cached: Optional[str] = None
        self._last_scene_change = time_fn()

        self._transition_lock = threading.Lock()
        self._transition_active = False

        self._local_replay_lock = threading.Lock()
        self._last_local_replay: Optional[float] = None

        self._listeners_lock = threading.Lock()
        self._connected_listeners: List[Callable[[], None]] = []
        self._disconnected_listeners: List[Callable[[str], None]] = []

        policy = (
            FaultPolicy(default=self._default_fault_handler)
            .register(OBSSDKRequestError, self._request_error_handler)
            .register(OBSSDKTimeoutError, self._connection_fault_handler)
            .register(websocket.WebSocketException, self._connection_fault_handler)
            .register(ConnectionError, self._connection_fault_handler)
            .register(OSError, self._connection_fault_handler)
        )
        self._executor = ResilientExecutor(policy)

    # ── state accessors ─────────────────────────────────────────

    @property
    def options(self) -> OBSBridgeOptions:
        return self._options

    @property
    def destination(self) -> str:
        return self._options.destination or "Unknown"

    @property
    def is_connected(self) -> bool:
        with self._connection_lock:
            connected = self._connected
        if connected and not self._event_stream_alive():
            # EventClient swallows a dropped socket and just ends its worker thread.
            self._mark_disconnected("event stream closed")
            return False
        return connected

    @property
    def is_connecting(self) -> bool:
        with self._connection_lock:
            return self._connecting

    @property
    def is_transition_active(self) -> bool:
        with self._transition_lock:
            return self._transition_active

    @property
    def last_scene_change(self) -> float:
        with self._scene_lock:
            return self._last_scene_change

    def scene_state(self) -> SceneState:
        with self._scene_lock:
            name = self._scene_name_cached
            changed = self._last_scene_change
        return SceneState(scene_name=name, transition_active=self.is_transition_active, last_scene_change=changed)

    def add_connected_listener(self, fn: Callable[[], None]) -> None:
        with self._listeners_lock:
            self._connected_listeners.append(fn)

    def add_disconnected_listener(self, fn: Callable[[str], None]) -> None:
        with self._listeners_lock:
            self._disconnected_listeners.append(fn)

    # ── connection ──────────────────────────────────────────────

    def connect(self) -> bool:
        if self.is_connected:
            return True
        if not str(self._options.host or "").strip():
            return False
        with self._connection_lock:
            if self._connecting:
                return False
            self._connecting = True

        kwargs = {
            "host": self._options.host,
            "port": int(self._options.port),
            "password": self._options.password or "",
            "timeout": self._options.timeout_seconds,
        }
        req_client: Any = None
        try:
            req_client = self._req_client_factory(**kwargs)
            event_client = self._event_client_factory(**kwargs)
            event_client.callback.register(
                [
                    self.on_current_program_scene_changed,
                    self.on_scene_transition_started,
                    self.on_scene_transition_ended,
                    self.on_exit_started,
                ]
            )
        except Exception as exc:
            with self._connection_lock:
                self._connecting = False
            if req_client is not None:
                try:
                    req_client.disconnect()
                except Exception:
                    pass
            if isinstance(exc, ConnectionRefusedError):
                logger.debug("OBS at %s refused connection", self.destination)
            else:
                logger.info("OBS connect to %s failed: %s", self.destination, exc)
            return False

        with self._clients_lock:
            self._req_client = req_client
            self._event_client = event_client
        with self._connection_lock:
            self._connected = True
            self._connecting = False

        refreshed = self._refresh_current_scene_name()
        if not refreshed.ok:
            self._notifier.error(f"{self.destination}'s OBS couldn't update current program scene when connected")

        for listener in self._listeners(self._connected_listeners):
            try:
                listener()
            except Exception:
                logger.exception("connected listener failed")
        return True

    def disconnect(self) -> None:
        self._mark_disconnected("closed by client")

    def _mark_disconnected(self, reason: str) -> None:
        with self._connection_lock:
            was_connected = self._connected
            self._connected = False
        with self._clients_lock:
            req_client, event_client = self._req_client, self._event_client
            self._req_client = None
            self._event_client = None
        for client in (event_client, req_client):
            if client is None:
                continue
            try:
                client.disconnect()
            except Exception:
                pass
        if not was_connected:
            return
        for listener in self._listeners(self._disconnected_listeners):
            try:
                listener(reason)
            except Exception:
                logger.exception("disconnected listener failed")

    def _event_stream_alive(self) -> bool:
        with self._clients_lock:
            event_client = self._event_client
        worker = getattr(event_client, "worker", None)
        return worker is None or worker.is_alive()

    def _listeners(self, items: List[Any]) -> List[Any]:
        with self._listeners_lock:
            return list(items)

    def _request(self, name: str, *args: Any) -> Any:
        with self._clients_lock:
            client = self._req_client
        if client is None:
            raise ConnectionError(f"no websocket connection to {self.destination}")
        with self._request_lock:
            return getattr(client, name)(*args)

    # ── fault handlers ──────────────────────────────────────────

    def _default_fault_handler(self, exc: BaseException) -> Outcome:
        logger.error("[OBSBridge] %s action failed: %r", self.destination, exc, exc_info=exc)
        return Outcome.failure("obs bridge action failed, more info in logs")

    def _request_error_handler(self, exc: BaseException) -> Outcome:
        req_name = getattr(exc, "req_name", "request")
        code = getattr(exc, "code", "?")
        return Outcome.failure(f"OBS request {req_name} failed (code {code})")

    def _connection_fault_handler(self, exc: BaseException) -> Outcome:
        self._mark_disconnected(str(exc) or type(exc).__name__)
        return Outcome.failure(f"lost websocket connection to {self.destination}: {exc}")

    # ── push events (EventClient thread) ────────────────────────

    def on_current_program_scene_changed(self, data: Any) -> None:
        self._cache_scene(str(getattr(data, "scene_name", "") or ""), self._time_fn())
        with self._transition_lock:
            self._transition_active = False

    def on_scene_transition_started(self, data: Any) -> None:
        with self._transition_lock:
            self._transition_active = True

    def on_scene_transition_ended(self, data: Any) -> None:
        with self._transition_lock:
            self._transition_active = False

    def on_exit_started(self, data: Any) -> None:
        self._mark_disconnected("OBS is shutting down")

    def _cache_scene(self, scene_name: str, changed_at: float) -> None:
        with self._scene_lock:
            self._scene_name_cached = scene_name or None
            self._last_scene_change = changed_at

    # ── scene queries ───────────────────────────────────────────

    def _refresh_current_scene_name(self) -> Outcome:
        def action() -> Outcome:
            resp = self._request("get_current_program_scene")
            name = getattr(resp, "current_program_scene_name", None) or getattr(resp, "scene_name", None)
            if not str(name or "").strip():
                return Outcome.failure("couldn't get current program scene name")
            self._cache_scene(str(name), self._time_fn())
            return Outcome.success(str(name))

        return self._executor.execute(action)

    def get_current_scene_name(self) -> Outcome:
        with self._scene_lock:
            cached = self._scene_name_cached
        if cached:
            return Outcome.success(cached)
        return self._refresh_current_scene_name()

    def is_main_scene_active(self) -> Outcome:
        main_scene = str(self._options.main_scene_name or "").strip()
        if not main_scene:
            return Outcome.failure("MainSceneName is required")
        current = self.get_current_scene_name()
        if not current.ok:
            return Outcome.failure(f"failed to get current scene name, reason: {current.reason}")
        return Outcome.success(current.value == main_scene)

    def has_scene(self, scene_name: str) -> Outcome:
        def action() -> Outcome:
            resp = self._request("get_scene_list")
            names = {str(item.get("sceneName", "")) for item in (getattr(resp, "scenes", None) or [])}
            return Outcome.success(scene_name in names)

        return self._executor.execute(action)

    def has_named_elements(self, names: Iterable[str]) -> Outcome:
        wanted = [str(name) for name in names]

        def action() -> Outcome:
            resp = self._request("get_input_list")
            present = {str(item.get("inputName", "")) for item in (getattr(resp, "inputs", None) or [])}
            missing = [name for name in wanted if name not in present]
            if missing:
                return Outcome.failure(f"following items are missing: {', '.join(missing)}")
            return Outcome.success()

        return self._executor.execute(action)

    # ── output control ──────────────────────────────────────────

    def set_caption(self, player_slot: int, text: str, color: CaptionColor = None) -> Outcome:
        pattern = self._options.player_caption_source_name_pattern
        if not pattern:
            return Outcome.failure("PlayerCaptionSourceNamePattern is required")
        if not self.is_connected:
            return Outcome.failure(f"no websocket connection to {self.destination}")
        try:
            color_value = caption_color_value(color)
        except ValueError as exc:
            return Outcome.failure(str(exc))
        source_name = pattern.format(player_slot)

        def action() -> Outcome:
            self._request("set_input_settings", source_name, {"text": str(text or ""), "color": color_value}, True)
            return Outcome.success()

        return self._executor.execute(action)

    def show_hosted_clip(self, clip_id: str, player_slot: int) -> Outcome:
        source_name = self._options.twitch_clip_replay_browser_source_name
        if not source_name:
            return Outcome.failure("TwitchClipReplayBrowserSourceName is required")
        if not self.is_connected:
            return Outcome.failure(f"no websocket connection to {self.destination}")
        if self.is_transition_active:
            return Outcome.failure("can't play during scene transition")

        def action() -> Outcome:
            self._request("set_input_settings", source_name, {"url": twitch_clip_embed_url(clip_id)}, True)
            self._request(
                "call_vendor_request",
                SCENE_SWITCHER_VENDOR,
                SCENE_SWITCHER_REQUEST,
                {"message": f"twitch_replay_player{int(player_slot)}"},
            )
            return Outcome.success()

        return self._executor.execute(action)

    def show_local_replay_trigger(self) -> Outcome:
        if not self.is_connected:
            return Outcome.failure(f"no websocket connection to {self.destination}")

        def action() -> Outcome:
            current = self.get_current_scene_name()
            if not current.ok:
                return Outcome.failure(str(current.reason))
            if current.value == LOCAL_REPLAY_SCENE_NAME:
                return Outcome.failure("replay scene is busy")
            self._request("trigger_hotkey_by_name", INSTANT_REPLAY_HOTKEY_NAME)
            return Outcome.success()

        return self._executor.execute(action)

    def claim_local_replay(self) -> Outcome:
        """Rate-limit local replays: at most one per ``replay_timeout_seconds``."""
        now = self._time_fn()
        with self._local_replay_lock:
            last = self._last_local_replay
            if last is not None and (now - last) <= float(self._options.replay_timeout_seconds):
                return Outcome.failure("replay is on cooldown")
            self._last_local_replay = now
        return Outcome.success(float(self._options.replay_delay_seconds))

    def status(self) -> Dict[str, Any]:
        state = self.scene_state()
        return {
            "destination": self.destination,
            "connected": self.is_connected,
            "connecting": self.is_connecting,
            "scene_name": state.scene_name,
            "transition_active": state.transition_active,
            "last_scene_change": state.last_scene_change,
        }
