from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional
import os
import tomllib


class ConfigError(ValueError):
    pass


def _parse_env_file(path: Path) -> dict[str, str]:
    out: dict[str, str] = {}
    if not path.exists():
        return out
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        k, v = line.split("=", 1)
        v = v.strip()
        if len(v) >= 2 and v[0] == v[-1] and v[0] in {"'", '"'}:
            v = v[1:-1]
        out[k.strip()] = v
    return out


@dataclass(repr=False)
class DeathCounterConfig:
    # OBS websocket
    obs_host: str = "127.0.0.1"
    obs_port: int = 4455
    main_scene_name: Optional[str] = None
    player_caption_source_name_pattern: Optional[str] = None
    twitch_clip_replay_browser_source_name: Optional[str] = None
    local_replay_timeout_seconds: float = 30.0
    local_replay_delay_seconds: float = 10.0

    max_players: int = 0
    clip_creation_delay_seconds: float = 20.0

    # Intake server
    server_host: str = "127.0.0.1"
    server_port: int = 3366

    # Replay scheduler
    tick_interval_seconds: float = 0.25
    replay_cooldown_seconds: float = 5.0
    show_replay_try_count: int = 5
    show_replay_try_interval_seconds: float = 2.0
    stop_wait_seconds: float = 10.0
    reconnect_interval_seconds: float = 1.0

    log_dir: Optional[Path] = None

    # Secrets
    obs_password: Optional[str] = field(default=None, repr=False)
    twitch_client_id: Optional[str] = field(default=None, repr=False)

    def resolved_main_scene_name(self) -> str:
        """Main scene names may carry a ``{0}`` placeholder for the player count."""
        raw = str(self.main_scene_name or "")
        try:
            return raw.format(self.max_players)
        except (IndexError, KeyError, ValueError):
            return raw

    def __repr__(self) -> str:
        return (
            "DeathCounterConfig("
            f"obs_host={self.obs_host!r}, "
            f"obs_port={self.obs_port!r}, "
            f"main_scene_name={self.main_scene_name!r}, "
            f"max_players={self.max_players!r}, "
            f"server_port={self.server_port!r}, "
            "obs_password=<redacted>, "
            "twitch_client_id=<redacted>"
            ")"
        )


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name, {}) if isinstance(data, dict) else {}
    return value if isinstance(value, dict) else {}


def _as_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc


def _as_float(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


_TOML_FIELDS = {
    # (section, key): (attribute, converter)
    ("obs", "host"): ("obs_host", "text"),
    ("obs", "port"): ("obs_port", "int"),
    ("obs", "main_scene_name"): ("main_scene_name", "text"),
    ("obs", "player_caption_source_name_pattern"): ("player_caption_source_name_pattern", "text"),
    ("obs", "twitch_clip_replay_browser_source_name"): ("twitch_clip_replay_browser_source_name", "text"),
    ("obs", "local_replay_timeout_seconds"): ("local_replay_timeout_seconds", "float"),
    ("obs", "local_replay_delay_seconds"): ("local_replay_delay_seconds", "float"),
    ("players", "max_players"): ("max_players", "int"),
    ("twitch", "clip_creation_delay_seconds"): ("clip_creation_delay_seconds", "float"),
    ("server", "host"): ("server_host", "text"),
    ("server", "port"): ("server_port", "int"),
    ("scheduler", "tick_interval_seconds"): ("tick_interval_seconds", "float"),
    ("scheduler", "replay_cooldown_seconds"): ("replay_cooldown_seconds", "float"),
    ("scheduler", "show_replay_try_count"): ("show_replay_try_count", "int"),
    ("scheduler", "show_replay_try_interval_seconds"): ("show_replay_try_interval_seconds", "float"),
    ("scheduler", "stop_wait_seconds"): ("stop_wait_seconds", "float"),
    ("scheduler", "reconnect_interval_seconds"): ("reconnect_interval_seconds", "float"),
}

_ENV_FIELDS = {
    "DEATHCOUNTER_OBS_HOST": ("obs_host", "text"),
    "DEATHCOUNTER_OBS_PORT": ("obs_port", "int"),
    "DEATHCOUNTER_MAX_PLAYERS": ("max_players", "int"),
    "DEATHCOUNTER_SERVER_HOST": ("server_host", "text"),
    "DEATHCOUNTER_SERVER_PORT": ("server_port", "int"),
    "DEATHCOUNTER_CLIP_CREATION_DELAY_SECONDS": ("clip_creation_delay_seconds", "float"),
}


def _apply(cfg: DeathCounterConfig, attr: str, kind: str, value: Any, label: str) -> None:
    if kind == "int":
        setattr(cfg, attr, _as_int(label, value))
    elif kind == "float":
        setattr(cfg, attr, _as_float(label, value))
    else:
        text = _as_text(value)
        if text is not None:
            setattr(cfg, attr, text)


def load_config(base_dir: Path | str) -> DeathCounterConfig:
    """
    Deterministic merge order:
      defaults < config/deathcounter.toml < config/secrets.env < environment
    """
    base = Path(base_dir)

    cfg = DeathCounterConfig()

    # 1) deathcounter.toml (non-secret)
    toml_path = base / "config" / "deathcounter.toml"
    if toml_path.exists():
        data = tomllib.loads(toml_path.read_text(encoding="utf-8"))
        for (section, key), (attr, kind) in _TOML_FIELDS.items():
            values = _section(data, section)
            if key in values:
                _apply(cfg, attr, kind, values[key], f"{section}.{key}")
        log_dir = _as_text(_section(data, "logging").get("dir"))
        if log_dir:
            cfg.log_dir = (base / log_dir).resolve()

    # 2) secrets.env (secret)
    env_data = _parse_env_file(base / "config" / "secrets.env")
    cfg.obs_password = env_data.get("OBS_WEBSOCKET_PASSWORD", cfg.obs_password)
    cfg.twitch_client_id = env_data.get("TWITCH_CLIENT_ID", cfg.twitch_client_id)

    # 3) environment overrides (only via loader)
    for env_key, (attr, kind) in _ENV_FIELDS.items():
        raw = os.getenv(env_key)
        if raw is not None and raw.strip():
            _apply(cfg, attr, kind, raw.strip(), env_key)
    if os.getenv("DEATHCOUNTER_OBS_PASSWORD"):
        cfg.obs_password = os.getenv("DEATHCOUNTER_OBS_PASSWORD")
    if os.getenv("TWITCH_CLIENT_ID"):
        cfg.twitch_client_id = os.getenv("TWITCH_CLIENT_ID")
    log_override = os.getenv("DEATHCOUNTER_LOG_DIR")
    if log_override:
        cfg.log_dir = (base / log_override).resolve()

    if cfg.log_dir is None:
        cfg.log_dir = (base / "logs").resolve()

    return cfg
