from __future__ import annotations

import json
import logging
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

from deathcounter.notify import NotificationSink

logger = logging.getLogger(__name__)

_MAX_JSON_BODY_BYTES = 64 * 1024


def _json_response(handler: BaseHTTPRequestHandler, payload: Any, status: int = 200) -> None:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def _text_response(handler: BaseHTTPRequestHandler, text: str, status: int = 200) -> None:
    body = text.encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "text/plain; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def _player_slot(payload: Dict[str, Any]) -> Optional[int]:
    raw = payload.get("playerSlot")
    if isinstance(raw, bool):
        return None
    try:
        slot = int(raw)
    except (TypeError, ValueError):
        return None
    return slot if slot > 0 else None


class IntakeContext:
    """Everything the request handlers act on. Built by app wiring, faked in tests."""

    def __init__(
        self,
        *,
        scheduler: Any,
        bridge: Any = None,
        clip_requester: Any = None,
        notifier: Optional[NotificationSink] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self.scheduler = scheduler
        self.bridge = bridge
        self.clip_requester = clip_requester
        self.notifier = notifier or NotificationSink()
        self.timer_factory = timer_factory

    def schedule_local_replay(self, player_slot: int) -> Tuple[bool, str]:
        if self.bridge is None:
            self.scheduler.enqueue_local_replay(player_slot)
            return True, "queued"
        claim = self.bridge.claim_local_replay()
        if not claim.ok:
            return False, str(claim.reason)
        delay = float(claim.value or 0.0)
        if delay <= 0:
            self.scheduler.enqueue_local_replay(player_slot)
            return True, "queued"
        timer = self.timer_factory(delay, self.scheduler.enqueue_local_replay, args=(player_slot,))
        timer.daemon = True
        timer.start()
        return True, f"queued in {delay:g}s"


def build_handler(ctx: IntakeContext) -> type[BaseHTTPRequestHandler]:
    class IntakeHandler(BaseHTTPRequestHandler):
        def log_message(self, fmt: str, *args: Any) -> None:
            logger.debug("intake %s - %s", self.address_string(), fmt % args)

        def _read_json_body(self) -> Tuple[bool, Dict[str, Any]]:
            ctype = str(self.headers.get("Content-Type", "")).lower()
            if "application/json" not in ctype:
                return False, {}
            try:
                content_length = int(self.headers.get("Content-Length", "0"))
            except (TypeError, ValueError):
                return False, {}
            if content_length <= 0 or content_length > _MAX_JSON_BODY_BYTES:
                return False, {}
            raw = self.rfile.read(content_length)
            try:
                parsed = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                return False, {}
            if not isinstance(parsed, dict):
                return False, {}
            return True, parsed

        def _bad_request(self, detail: str) -> None:
            _json_response(self, {"ok": False, "error": "bad_request", "detail": detail}, status=HTTPStatus.BAD_REQUEST)

        def do_GET(self) -> None:  # noqa: N802
            path = urlparse(self.path).path
            if path == "/ping":
                _text_response(self, "pong")
                return
            if path == "/status":
                _json_response(self, {"ok": True, "scheduler": ctx.scheduler.status(), "pending": ctx.scheduler.pending()})
                return
            _json_response(self, {"ok": False, "error": "not_found"}, status=HTTPStatus.NOT_FOUND)

        def do_POST(self) -> None:  # noqa: N802
            path = urlparse(self.path).path
            routes = {
                "/join": self._join,
                "/update_player_caption": self._update_player_caption,
                "/show_twitch_replay": self._show_twitch_replay,
                "/show_local_replay": self._show_local_replay,
            }
            route = routes.get(path)
            if route is None:
                _json_response(self, {"ok": False, "error": "not_found"}, status=HTTPStatus.NOT_FOUND)
                return
            ok_body, payload = self._read_json_body()
            if not ok_body:
                self._bad_request("expected a JSON object body with Content-Type: application/json")
                return
            try:
                route(payload)
            except Exception as exc:
                logger.exception("intake %s failed", path)
                _json_response(
                    self,
                    {"ok": False, "error": "internal_error", "detail": str(exc)},
                    status=HTTPStatus.INTERNAL_SERVER_ERROR,
                )

        def _join(self, payload: Dict[str, Any]) -> None:
            slot = _player_slot(payload)
            if slot is None:
                self._bad_request("playerSlot must be a positive integer")
                return
            name = str(payload.get("displayedName") or "").strip() or f"Player {slot}"
            ctx.notifier.info(f"[Intake] {name} joined as player {slot}")
            _json_response(self, {"ok": True})

        def _update_player_caption(self, payload: Dict[str, Any]) -> None:
            slot = _player_slot(payload)
            if slot is None:
                self._bad_request("playerSlot must be a positive integer")
                return
            outcome = ctx.scheduler.update_caption(slot, payload.get("caption"), payload.get("color"))
            _json_response(self, {"ok": bool(outcome.ok), "error": outcome.reason})

        def _show_twitch_replay(self, payload: Dict[str, Any]) -> None:
            slot = _player_slot(payload)
            if slot is None:
                self._bad_request("playerSlot must be a positive integer")
                return
            channel = str(payload.get("channel") or "").strip()
            if not channel:
                self._bad_request("channel is required")
                return
            token = str(payload.get("userAccessToken") or "").strip()
            if not token:
                self._bad_request("userAccessToken is required")
                return
            if ctx.clip_requester is None:
                _json_response(
                    self,
                    {"ok": False, "error": "twitch_clips_disabled"},
                    status=HTTPStatus.SERVICE_UNAVAILABLE,
                )
                return
            ctx.clip_requester.request(channel, token, slot)
            _json_response(self, {"ok": True})

        def _show_local_replay(self, payload: Dict[str, Any]) -> None:
            slot = _player_slot(payload)
            if slot is None:
                self._bad_request("playerSlot must be a positive integer")
                return
            accepted, detail = ctx.schedule_local_replay(slot)
            if not accepted:
                _json_response(self, {"ok": False, "error": detail}, status=HTTPStatus.TOO_MANY_REQUESTS)
                return
            _json_response(self, {"ok": True, "detail": detail})

    return IntakeHandler


def create_server(ctx: IntakeContext, *, host: str = "127.0.0.1", port: int = 3366) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer((host, port), build_handler(ctx))
    server.daemon_threads = True
    setattr(server, "_deathcounter_ctx", ctx)
    return server
