from __future__ import annotations

import io
import json
import threading
import urllib.error
from typing import Any, Dict, List

from collecting_sink import CollectingSink
from deathcounter.resilience import Outcome, RetryPolicy
from deathcounter.twitch.clips import ClipRequester, TwitchClipClient


class _Response:
    def __init__(self, payload: Dict[str, Any]) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "_Response":
        return self

    def __exit__(self, *exc: Any) -> None:
        return None


class _FakeHelix:
    def __init__(self) -> None:
        self.requests: List[Any] = []
        self.clip_error: Exception | None = None
        self.clip_lookups_before_found = 0

    def __call__(self, req: Any, timeout: float = 0.0) -> _Response:
        self.requests.append(req)
        if "/users?" in req.full_url:
            return _Response({"data": [{"id": "4242", "login": "speedy"}]})
        if "/clips?id=" in req.full_url:
            if self.clip_lookups_before_found > 0:
                self.clip_lookups_before_found -= 1
                return _Response({"data": []})
            return _Response({"data": [{"id": "AwkwardClip"}]})
        if "/clips?" in req.full_url:
            if self.clip_error is not None:
                raise self.clip_error
            return _Response({"data": [{"id": "AwkwardClip", "edit_url": "https://clips.twitch.tv/x/edit"}]})
        raise AssertionError(f"unexpected url {req.full_url}")


def test_create_clip_resolves_broadcaster_and_posts() -> None:
    helix = _FakeHelix()
    client = TwitchClipClient(client_id="cid", urlopen=helix)
    outcome = client.create_clip("Speedy", "oauth:tok")
    assert outcome.ok is True
    assert outcome.value == "AwkwardClip"

    users_req, clips_req = helix.requests
    assert users_req.full_url == "https://api.twitch.tv/helix/users?login=speedy"
    assert users_req.get_method() == "GET"
    assert clips_req.full_url == "https://api.twitch.tv/helix/clips?broadcaster_id=4242"
    assert clips_req.get_method() == "POST"
    assert clips_req.get_header("Authorization") == "Bearer tok"
    assert clips_req.get_header("Client-id") == "cid"


def test_broadcaster_id_is_cached_per_channel() -> None:
    helix = _FakeHelix()
    client = TwitchClipClient(client_id="cid", urlopen=helix)
    assert client.create_clip("speedy", "tok").ok is True
    assert client.create_clip("speedy", "tok").ok is True
    user_lookups = [req for req in helix.requests if "/users?" in req.full_url]
    assert len(user_lookups) == 1


def test_http_errors_become_failure_outcomes() -> None:
    helix = _FakeHelix()
    helix.clip_error = urllib.error.HTTPError(
        "https://api.twitch.tv/helix/clips", 401, "Unauthorized", {}, io.BytesIO(b"")
    )
    client = TwitchClipClient(client_id="cid", urlopen=helix)
    outcome = client.create_clip("speedy", "tok")
    assert outcome.ok is False
    assert "HTTP 401" in str(outcome.reason)

    helix.clip_error = urllib.error.URLError("no route to host")
    assert "unreachable" in str(client.create_clip("speedy", "tok").reason)


def test_empty_channel_is_rejected_without_network() -> None:
    helix = _FakeHelix()
    client = TwitchClipClient(client_id="cid", urlopen=helix)
    assert client.get_broadcaster_id("  ", "tok").ok is False
    assert helix.requests == []


def test_get_clip_waits_for_twitch_to_list_the_clip() -> None:
    helix = _FakeHelix()
    helix.clip_lookups_before_found = 1
    client = TwitchClipClient(client_id="cid", urlopen=helix)
    assert client.get_clip("AwkwardClip", "tok").reason == "clip not found"
    found = client.get_clip("AwkwardClip", "tok")
    assert found.ok is True
    assert found.value == "AwkwardClip"
    assert helix.requests[-1].full_url == "https://api.twitch.tv/helix/clips?id=AwkwardClip"
    assert helix.requests[-1].get_method() == "GET"


class _ScriptedClipClient:
    def __init__(self, results: List[Outcome], confirmations: List[Outcome] | None = None) -> None:
        self.results = list(results)
        self.confirmations = list(confirmations or [])
        self.calls = 0
        self.confirm_calls = 0

    def create_clip(self, channel: str, user_access_token: str) -> Outcome:
        self.calls += 1
        return self.results.pop(0)

    def get_clip(self, clip_id: str, user_access_token: str) -> Outcome:
        self.confirm_calls += 1
        if self.confirmations:
            return self.confirmations.pop(0)
        return Outcome.success(clip_id)


def test_clip_requester_enqueues_after_retry() -> None:
    client = _ScriptedClipClient([Outcome.failure("not live yet"), Outcome.success("Clip1")])
    queued: List[Any] = []
    sink = CollectingSink()
    requester = ClipRequester(
        client,  # type: ignore[arg-type]
        enqueue_hosted_clip=lambda clip_id, channel, slot: queued.append((clip_id, channel, slot)),
        notifier=sink,
        delay_seconds=0.0,
        retry=RetryPolicy(interval_seconds=0.0, max_tries=3),
    )
    worker = requester.request("speedy", "tok", 2)
    worker.join(timeout=2.0)
    assert queued == [("Clip1", "speedy", 2)]
    assert client.calls == 2
    assert sink.errors == []


def test_clip_requester_reports_failure_and_enqueues_nothing() -> None:
    client = _ScriptedClipClient([Outcome.failure("HTTP 401")] * 2)
    queued: List[Any] = []
    sink = CollectingSink()
    requester = ClipRequester(
        client,  # type: ignore[arg-type]
        enqueue_hosted_clip=lambda *args: queued.append(args),
        notifier=sink,
        delay_seconds=0.0,
        retry=RetryPolicy(interval_seconds=0.0, max_tries=2),
    )
    requester.request("speedy", "tok", 1).join(timeout=2.0)
    assert queued == []
    assert sink.errors == ["[ClipRequester] failed to create a clip for speedy, reason: HTTP 401"]


def test_clip_requester_stop_drops_pending_requests() -> None:
    client = _ScriptedClipClient([Outcome.success("never")])
    queued: List[Any] = []
    requester = ClipRequester(
        client,  # type: ignore[arg-type]
        enqueue_hosted_clip=lambda *args: queued.append(args),
        notifier=CollectingSink(),
        delay_seconds=30.0,
        cancel=threading.Event(),
    )
    worker = requester.request("speedy", "tok", 1)
    requester.stop(timeout=2.0)
    assert not worker.is_alive()
    assert queued == []
    assert client.calls == 0


def test_clip_requester_enqueues_once_clip_is_confirmed() -> None:
    client = _ScriptedClipClient(
        [Outcome.success("Clip2")],
        confirmations=[Outcome.failure("clip not found"), Outcome.success("Clip2")],
    )
    queued: List[Any] = []
    sink = CollectingSink()
    requester = ClipRequester(
        client,  # type: ignore[arg-type]
        enqueue_hosted_clip=lambda clip_id, channel, slot: queued.append((clip_id, channel, slot)),
        notifier=sink,
        delay_seconds=0.0,
        confirm_retry=RetryPolicy(interval_seconds=0.0, max_tries=3),
    )
    requester.request("speedy", "tok", 1).join(timeout=2.0)
    assert client.confirm_calls == 2
    assert queued == [("Clip2", "speedy", 1)]
    assert sink.infos == ["[ClipRequester] created clip Clip2 for speedy"]


def test_clip_requester_drops_clip_twitch_never_confirms() -> None:
    client = _ScriptedClipClient(
        [Outcome.success("Ghost")],
        confirmations=[Outcome.failure("clip not found")] * 3,
    )
    queued: List[Any] = []
    sink = CollectingSink()
    requester = ClipRequester(
        client,  # type: ignore[arg-type]
        enqueue_hosted_clip=lambda *args: queued.append(args),
        notifier=sink,
        delay_seconds=0.0,
        confirm_retry=RetryPolicy(interval_seconds=0.0, max_tries=3),
    )
    requester.request("speedy", "tok", 1).join(timeout=2.0)
    assert client.confirm_calls == 3
    assert queued == []
    assert sink.errors == [
        "[ClipRequester] clip Ghost for speedy was requested, but after 3 tries twitch didn't confirm it, "
        "reason: clip not found"
    ]
