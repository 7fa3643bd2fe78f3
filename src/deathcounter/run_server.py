from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from deathcounter.app.supervisor import SupervisorConfig, run_supervised
from deathcounter.app.wiring import App, build_app
from deathcounter.config import ConfigError, load_config
from deathcounter.notify import NotificationSink


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _append_log(path: Path, message: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    line = f"{_utc_now_iso()} {message}\n"
    with path.open("a", encoding="utf-8") as fh:
        fh.write(line)


def _configure_logging() -> None:
    level_name = str(os.getenv("DEATHCOUNTER_LOG_LEVEL", "INFO")).strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="deathcounter-server")
    p.add_argument("--base-dir", default=".", help="Directory holding config/deathcounter.toml and config/secrets.env.")
    p.add_argument("--host", default=None, help="Intake server host (overrides config).")
    p.add_argument("--port", type=int, default=None, help="Intake server port (overrides config).")
    p.add_argument("--max-crashes", type=int, default=3)
    return p


def main(argv: list[str] | None = None) -> int:
    args = _arg_parser().parse_args(argv)
    _configure_logging()
    base_dir = Path(args.base_dir).resolve()
    try:
        cfg = load_config(base_dir)
    except ConfigError as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return 2
    if args.host:
        cfg.server_host = str(args.host)
    if args.port is not None:
        cfg.server_port = int(args.port)

    log_path = Path(cfg.log_dir or (base_dir / "logs")) / "server.log"

    def _info(line: str) -> None:
        print(line)
        _append_log(log_path, line)

    def _error(line: str) -> None:
        print(line, file=sys.stderr)
        _append_log(log_path, f"ERROR {line}")

    notifier = NotificationSink(info_fn=_info, error_fn=_error)
    _append_log(log_path, f"STARTUP: pid={os.getpid()} config={cfg!r}")

    exit_code = 0
    current: dict[str, Optional[App]] = {"app": None}

    def _run_once() -> None:
        nonlocal exit_code
        app = build_app(cfg, notifier=notifier)
        current["app"] = app
        try:
            started = app.start()
            if not started.ok:
                notifier.error(f"[DeathCounter] couldn't start: {started.reason}")
                exit_code = 3
                return
            notifier.info("[DeathCounter] READY")
            app.serve_forever(poll_interval=0.5)
        finally:
            app.shutdown()
            current["app"] = None

    def _on_crash(crashes: int, exc: BaseException) -> None:
        _append_log(log_path, f"CRASH: count={crashes} error={exc!r}")

    try:
        run_supervised(
            run_once=_run_once,
            cfg=SupervisorConfig(max_crashes=max(1, int(args.max_crashes))),
            on_crash=_on_crash,
        )
    except KeyboardInterrupt:
        app = current["app"]
        if app is not None:
            app.shutdown()
    except Exception as exc:
        _append_log(log_path, f"FATAL: {exc!r}")
        print(f"DeathCounter server stopped after repeated crashes: {exc}", file=sys.stderr)
        return 1
    finally:
        _append_log(log_path, "SHUTDOWN")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
