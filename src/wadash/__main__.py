from __future__ import annotations

import argparse
import logging
from pathlib import Path

import uvicorn

from .config import DashboardConfig
from .web.app import create_app


def main(argv: list[str] | None = None) -> None:
    cfg = DashboardConfig.from_env()

    ap = argparse.ArgumentParser(prog="wadash", description="WhatsApp dashboard server")
    ap.add_argument("--host", default=cfg.host, help=f"bind address (default: {cfg.host})")
    ap.add_argument("--port", type=int, default=cfg.port, help=f"bind port (default: {cfg.port})")
    ap.add_argument("--bridge-url", default=cfg.bridge.url, help="session bridge WebSocket URL")
    ap.add_argument("--auth", default=str(cfg.auth_dir), help="credential folder")
    ap.add_argument(
        "--db",
        default=str(cfg.db_path) if cfg.db_path else "",
        help="SQLite database path (empty: in-memory store)",
    )
    ap.add_argument("--no-autostart", action="store_true", help="don't connect on startup")
    ap.add_argument("--log-level", default=cfg.log_level, help="logging level (default: INFO)")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg.host = args.host
    cfg.port = args.port
    cfg.bridge.url = args.bridge_url
    cfg.auth_dir = Path(args.auth).expanduser().resolve()
    cfg.db_path = Path(args.db).expanduser() if args.db else None
    cfg.log_level = args.log_level.upper()
    if args.no_autostart:
        cfg.autostart = False

    uvicorn.run(create_app(cfg), host=cfg.host, port=cfg.port, log_level=cfg.log_level.lower())


if __name__ == "__main__":
    main()
