from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = str(ROOT / "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

_ENV_KEYS = (
    "DEATHCOUNTER_OBS_HOST",
    "DEATHCOUNTER_OBS_PORT",
    "DEATHCOUNTER_OBS_PASSWORD",
    "DEATHCOUNTER_MAX_PLAYERS",
    "DEATHCOUNTER_SERVER_HOST",
    "DEATHCOUNTER_SERVER_PORT",
    "DEATHCOUNTER_CLIP_CREATION_DELAY_SECONDS",
    "DEATHCOUNTER_LOG_DIR",
    "DEATHCOUNTER_LOG_LEVEL",
    "TWITCH_CLIENT_ID",
)


@pytest.fixture(autouse=True)
def _isolate_deathcounter_env(monkeypatch) -> None:
    # A developer's shell config must not leak into config loading.
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
