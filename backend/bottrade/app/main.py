"""Entrypoint.

Usage:
  python -m bottrade.app.main api      # run FastAPI server (settles trades of active users too)
  python -m bottrade.app.main engine   # run headless settlement engine
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

import uvicorn

from bottrade.app.engine import run_engine
from bottrade.infrastructure.utils.config import get_config, reload_config


def main() -> None:
    parser = argparse.ArgumentParser("bot-trade")
    parser.add_argument("command", choices=["api", "engine"], help="What to run")
    parser.add_argument("--config", type=Path, default=None, help="Path to YAML config")
    args = parser.parse_args()

    if args.command == "engine":
        asyncio.run(run_engine(args.config))
        return

    if args.command == "api":
        config = reload_config(args.config) if args.config else get_config()
        uvicorn.run("bottrade.api.server:app", host=config.api.host, port=config.api.port, reload=False)
        return


if __name__ == "__main__":
    main()
