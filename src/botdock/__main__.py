"""CLI entry point for botdock."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from botdock.config import AppConfig, load_config
from botdock.log import setup_logging
from botdock.pairing.status import SessionStatusResolver


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="botdock",
        description="Deploy, pair and supervise messaging bots",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    for name, help_text in (
        ("start", "Start the API server and process monitor"),
        ("config-check", "Validate configuration"),
        ("sessions", "List pairing sessions on disk"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
        sub.add_argument("-e", "--env", default=".env", help="Path to .env file")

    args = parser.parse_args()

    if args.command is None:
        # Default to start
        args.command = "start"
        args.config = "config.yaml"
        args.env = ".env"

    if args.command == "config-check":
        _check_config(args.config, args.env)
    elif args.command == "sessions":
        _list_sessions(args.config, args.env)
    elif args.command == "start":
        _run(args.config, args.env)


def _load_or_exit(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'python install.py' first or copy config.example.yaml to config.yaml")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load_or_exit(config_path, env_path)
    print(f"Configuration valid: {config_path}")
    print(f"  Sessions     : {config.paths.sessions_dir}")
    print(f"  Deployments  : {config.paths.deployments_dir}")
    print(f"  Bot configs  : {config.paths.configs_dir}")
    print(f"  Storage      : {config.storage.db_path}")
    print(f"  Runtime      : {' '.join(config.deploy.runtime_command)}")
    print(f"  Install      : {' '.join(config.deploy.resolved_install_command())}"
          f" (on failure: {config.deploy.install_failure_policy})")
    print(f"  Pairing      : {' '.join(config.pairing.bridge_command)}"
          f" (timeout {config.pairing.timeout_seconds:g}s)")
    monitor = f"every {config.monitor.interval_seconds:g}s" if config.monitor.enabled else "disabled"
    print(f"  Monitor      : {monitor}")
    print(f"  API          : http://{config.web.host}:{config.web.port}")


def _list_sessions(config_path: str, env_path: str) -> None:
    config = _load_or_exit(config_path, env_path)
    resolver = SessionStatusResolver(config.paths.sessions_dir)
    sessions = asyncio.run(resolver.check_all_sessions())
    if not sessions:
        print("No sessions found.")
        return
    for session in sessions:
        state = "connected" if session["connected"] else session.get("reason", "pairing")
        print(f"{session['owner']}/{session['bot_id']}: {state}")
        info = session.get("session_info")
        if info:
            print(f"    {json.dumps(info, ensure_ascii=False)}")


def _run(config_path: str, env_path: str) -> None:
    """Load config and serve the API until interrupted."""
    import uvicorn

    from botdock.app import BotDockApp
    from botdock.web.app import create_app

    config = _load_or_exit(config_path, env_path)
    setup_logging(config.log_level, config.log_format)

    app = create_app(BotDockApp(config))
    try:
        uvicorn.run(
            app,
            host=config.web.host,
            port=config.web.port,
            log_level=config.log_level.lower(),
        )
    except (KeyboardInterrupt, SystemExit):
        pass


if __name__ == "__main__":
    main()
