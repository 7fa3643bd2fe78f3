from __future__ import annotations

import logging
from dataclasses import dataclass
from http.server import ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional

from deathcounter.config import DeathCounterConfig
from deathcounter.control_room.intake_server import IntakeContext, create_server
from deathcounter.control_room.replay_scheduler import ReplayScheduler, ReplaySchedulerSettings
from deathcounter.notify import NotificationSink
from deathcounter.obs.bridge import OBSBridge, OBSBridgeOptions
from deathcounter.resilience import Outcome
from deathcounter.twitch.clips import ClipRequester, TwitchClipClient

logger = logging.getLogger(__name__)


def bridge_options_from_config(cfg: DeathCounterConfig) -> OBSBridgeOptions:
    return OBSBridgeOptions(
        destination="Host",
        host=cfg.obs_host,
        port=int(cfg.obs_port),
        password=cfg.obs_password,
        main_scene_name=cfg.resolved_main_scene_name() or None,
        player_caption_source_name_pattern=cfg.player_caption_source_name_pattern,
        twitch_clip_replay_browser_source_name=cfg.twitch_clip_replay_browser_source_name,
        max_players=int(cfg.max_players),
        replay_timeout_seconds=float(cfg.local_replay_timeout_seconds),
        replay_delay_seconds=float(cfg.local_replay_delay_seconds),
    )


def scheduler_settings_from_config(cfg: DeathCounterConfig) -> ReplaySchedulerSettings:
    return ReplaySchedulerSettings(
        main_scene_name=cfg.resolved_main_scene_name() or None,
        player_caption_source_name_pattern=cfg.player_caption_source_name_pattern,
        twitch_clip_replay_browser_source_name=cfg.twitch_clip_replay_browser_source_name,
        max_players=int(cfg.max_players),
        tick_interval_seconds=float(cfg.tick_interval_seconds),
        replay_cooldown_seconds=float(cfg.replay_cooldown_seconds),
        show_replay_try_count=int(cfg.show_replay_try_count),
        show_replay_try_interval_seconds=float(cfg.show_replay_try_interval_seconds),
        stop_wait_seconds=float(cfg.stop_wait_seconds),
        reconnect_interval_seconds=float(cfg.reconnect_interval_seconds),
    )


@dataclass
class App:
    """The assembled server: OBS bridge, replay scheduler, clip requester and intake HTTP server."""

    cfg: DeathCounterConfig
    notifier: NotificationSink
    bridge: Any
    scheduler: ReplayScheduler
    clip_requester: Optional[ClipRequester]
    intake: IntakeContext
    server: Optional[ThreadingHTTPServer] = None
    serving: bool = False

    def start(self) -> Outcome:
        started = self.scheduler.start()
        if not started.ok:
            return started
        self.server = create_server(self.intake, host=self.cfg.server_host, port=int(self.cfg.server_port))
        host, port = self.server.server_address[:2]
        self.notifier.info(f"[DeathCounter] intake server listening on http://{host}:{port}")
        return Outcome.success()

    def serve_forever(self, poll_interval: float = 0.5) -> None:
        if self.server is None:
            raise RuntimeError("App.start() must succeed before serve_forever()")
        self.serving = True
        self.server.serve_forever(poll_interval=poll_interval)

    def shutdown(self) -> None:
        if self.server is not None:
            # shutdown() waits for serve_forever() and would hang if it never ran.
            if self.serving:
                self.server.shutdown()
                self.serving = False
            self.server.server_close()
            self.server = None
        if self.clip_requester is not None:
            self.clip_requester.stop(timeout=2.0)
        self.scheduler.stop()
        self.bridge.disconnect()

    def status(self) -> Dict[str, Any]:
        return {
            "scheduler": self.scheduler.status(),
            "bridge": self.bridge.status() if hasattr(self.bridge, "status") else {},
            "pending": self.scheduler.pending(),
        }


def build_app(
    cfg: DeathCounterConfig,
    *,
    notifier: Optional[NotificationSink] = None,
    bridge_factory: Optional[Callable[..., Any]] = None,
    clip_client: Optional[TwitchClipClient] = None,
) -> App:
    """Build the app with injected dependencies. Clip replays are disabled without a Twitch client id."""
    notifier = notifier or NotificationSink()
    bridge_factory = bridge_factory or OBSBridge
    bridge = bridge_factory(bridge_options_from_config(cfg), notifier=notifier)
    scheduler = ReplayScheduler(bridge, scheduler_settings_from_config(cfg), notifier=notifier)

    if clip_client is None and str(cfg.twitch_client_id or "").strip():
        clip_client = TwitchClipClient(client_id=str(cfg.twitch_client_id))
    clip_requester: Optional[ClipRequester] = None
    if clip_client is not None:
        clip_requester = ClipRequester(
            clip_client,
            enqueue_hosted_clip=scheduler.enqueue_hosted_clip,
            notifier=notifier,
            delay_seconds=float(cfg.clip_creation_delay_seconds),
        )
    else:
        logger.info("twitch client id not configured; /show_twitch_replay is disabled")

    intake = IntakeContext(
        scheduler=scheduler,
        bridge=bridge,
        clip_requester=clip_requester,
        notifier=notifier,
    )
    return App(
        cfg=cfg,
        notifier=notifier,
        bridge=bridge,
        scheduler=scheduler,
        clip_requester=clip_requester,
        intake=intake,
    )
