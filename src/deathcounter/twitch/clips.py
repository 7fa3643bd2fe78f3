from __future__ import annotations

import json
import logging
import threading
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Callable, Dict, Optional

from deathcounter.notify import NotificationSink
from deathcounter.resilience import FaultPolicy, Outcome, ResilientExecutor, RetryPolicy

logger = logging.getLogger(__name__)

_HELIX_BASE_URL = "https://api.twitch.tv/helix"


def _strip_oauth_prefix(token: str) -> str:
    token = str(token or "").strip()
    if token.startswith("oauth:"):
        token = token.split(":", 1)[1]
    return token


class TwitchClipClient:
    """Helix client for clip replays: user lookup, clip creation and clip confirmation."""

    def __init__(
        self,
        *,
        client_id: str,
        base_url: str = _HELIX_BASE_URL,
        timeout_seconds: float = 10.0,
        urlopen: Optional[Callable[..., Any]] = None,
    ) -> None:
        self._client_id = str(client_id or "").strip()
        self._base_url = str(base_url).rstrip("/")
        self._timeout_seconds = float(timeout_seconds)
        self._urlopen = urlopen or urllib.request.urlopen
        self._broadcaster_ids: Dict[str, str] = {}
        self._cache_lock = threading.Lock()

        policy = (
            FaultPolicy(default=self._default_fault_handler)
            .register(urllib.error.HTTPError, self._http_error_handler)
            .register(urllib.error.URLError, self._network_error_handler)
            .register(OSError, self._network_error_handler)
            .register(ValueError, self._bad_response_handler)
        )
        self._executor = ResilientExecutor(policy)

    def _headers(self, user_access_token: str) -> Dict[str, str]:
        return {
            "Client-ID": self._client_id,
            "Authorization": f"Bearer {_strip_oauth_prefix(user_access_token)}",
            "Content-Type": "application/json",
        }

    def _call(self, method: str, path: str, query: Dict[str, str], user_access_token: str) -> Dict[str, Any]:
        url = f"{self._base_url}/{path}?{urllib.parse.urlencode(query)}"
        req = urllib.request.Request(
            url,
            data=b"" if method == "POST" else None,
            method=method,
            headers=self._headers(user_access_token),
        )
        with self._urlopen(req, timeout=self._timeout_seconds) as response:
            raw = response.read()
        parsed = json.loads(raw.decode("utf-8") if raw else "{}")
        if not isinstance(parsed, dict):
            raise ValueError("unexpected helix response shape")
        return parsed

    def get_broadcaster_id(self, channel: str, user_access_token: str) -> Outcome:
        login = str(channel or "").strip().lower()
        if not login:
            return Outcome.failure("channel is required")
        with self._cache_lock:
            cached = self._broadcaster_ids.get(login)
        if cached:
            return Outcome.success(cached)

        def action() -> Outcome:
            body = self._call("GET", "users", {"login": login}, user_access_token)
            data = body.get("data") or []
            if not data or not str(data[0].get("id", "")).strip():
                return Outcome.failure(f"twitch user {login} not found")
            user_id = str(data[0]["id"]).strip()
            with self._cache_lock:
                self._broadcaster_ids[login] = user_id
            return Outcome.success(user_id)

        return self._executor.execute(action)

    def create_clip(self, channel: str, user_access_token: str) -> Outcome:
        broadcaster = self.get_broadcaster_id(channel, user_access_token)
        if not broadcaster.ok:
            return Outcome.failure(f"couldn't resolve broadcaster id, reason: {broadcaster.reason}")

        def action() -> Outcome:
            body = self._call("POST", "clips", {"broadcaster_id": broadcaster.value}, user_access_token)
            data = body.get("data") or []
            clip_id = str(data[0].get("id", "")).strip() if data else ""
            if not clip_id:
                return Outcome.failure("twitch returned no clip id")
            return Outcome.success(clip_id)

        return self._executor.execute(action)

    def get_clip(self, clip_id: str, user_access_token: str) -> Outcome:
        """Confirm a created clip exists. Creation finishes asynchronously and can still fail."""
        clip_id = str(clip_id or "").strip()
        if not clip_id:
            return Outcome.failure("clip id is required")

        def action() -> Outcome:
            body = self._call("GET", "clips", {"id": clip_id}, user_access_token)
            if not (body.get("data") or []):
                return Outcome.failure("clip not found")
            return Outcome.success(clip_id)

        return self._executor.execute(action)

    # ── fault handlers ──────────────────────────────────────────

    def _http_error_handler(self, exc: BaseException) -> Outcome:
        code = getattr(exc, "code", "?")
        if code == 401:
            return Outcome.failure("twitch rejected the user access token (HTTP 401)")
        if code == 404:
            return Outcome.failure("twitch channel is not live or not found (HTTP 404)")
        return Outcome.failure(f"twitch request failed: HTTP {code}")

    def _network_error_handler(self, exc: BaseException) -> Outcome:
        return Outcome.failure(f"twitch is unreachable: {getattr(exc, 'reason', exc)}")

    def _bad_response_handler(self, exc: BaseException) -> Outcome:
        return Outcome.failure(f"twitch returned an unreadable response: {exc}")

    def _default_fault_handler(self, exc: BaseException) -> Outcome:
        logger.error("twitch clip action failed: %r", exc, exc_info=exc)
        return Outcome.failure("twitch clip action failed, more info in logs")


class ClipRequester:
    """
    Turns "clip that" requests into hosted-clip replay jobs.

    Twitch needs a moment after the moment itself before the clip covers it, so each
    request waits ``delay_seconds`` on its own worker thread, creates the clip with a
    bounded retry, polls until Twitch confirms the clip exists and only then hands the
    clip id to ``enqueue_hosted_clip``.
    """

    def __init__(
        self,
        client: TwitchClipClient,
        *,
        enqueue_hosted_clip: Callable[[str, str, int], Any],
        notifier: Optional[NotificationSink] = None,
        delay_seconds: float = 20.0,
        retry: Optional[RetryPolicy] = None,
        confirm_retry: Optional[RetryPolicy] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self._client = client
        self._enqueue_hosted_clip = enqueue_hosted_clip
        self._notifier = notifier or NotificationSink()
        self._delay_seconds = max(0.0, float(delay_seconds))
        self._retry = retry or RetryPolicy(interval_seconds=2.0, max_tries=3)
        self._confirm_retry = confirm_retry or RetryPolicy(interval_seconds=5.0, max_tries=3)
        self._cancel = cancel or threading.Event()
        self._executor = ResilientExecutor(self._retry)
        self._workers_lock = threading.Lock()
        self._workers: list[threading.Thread] = []

    def request(self, channel: str, user_access_token: str, player_slot: int) -> threading.Thread:
        worker = threading.Thread(
            target=self._run,
            args=(str(channel), str(user_access_token), int(player_slot)),
            name=f"deathcounter-clip-{channel}",
            daemon=True,
        )
        with self._workers_lock:
            self._workers = [w for w in self._workers if w.is_alive()]
            self._workers.append(worker)
        worker.start()
        return worker

    def _run(self, channel: str, user_access_token: str, player_slot: int) -> None:
        if self._cancel.wait(self._delay_seconds):
            logger.info("clip request for %s dropped (shutting down)", channel)
            return
        outcome = self._executor.retry(
            lambda: self._client.create_clip(channel, user_access_token),
            self._retry,
            cancel=self._cancel,
        )
        if outcome.cancelled:
            return
        if not outcome.ok:
            self._notifier.error(f"[ClipRequester] failed to create a clip for {channel}, reason: {outcome.reason}")
            return
        clip_id = str(outcome.value)

        confirmed = self._executor.retry(
            lambda: self._client.get_clip(clip_id, user_access_token),
            self._confirm_retry,
            cancel=self._cancel,
        )
        if confirmed.cancelled:
            return
        if not confirmed.ok:
            self._notifier.error(
                f"[ClipRequester] clip {clip_id} for {channel} was requested, but after "
                f"{self._confirm_retry.max_tries} tries twitch didn't confirm it, reason: {confirmed.reason}"
            )
            return
        self._notifier.info(f"[ClipRequester] created clip {clip_id} for {channel}")
        self._enqueue_hosted_clip(clip_id, channel, player_slot)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._cancel.set()
        with self._workers_lock:
            workers = list(self._workers)
        for worker in workers:
            if worker is not threading.current_thread():
                worker.join(timeout=timeout)
