#!/usr/bin/env python3
"""
Worker process — runs the outbound dispatcher and the delay timer worker
until SIGINT / SIGTERM.

Usage:
    python scripts/run_worker.py
    python scripts/run_worker.py --config config/settings.yaml --flows flows/

`--flows` points at a directory of flow definition JSON files; each one is
validated and saved before the loops start.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys
from pathlib import Path

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load .env before any config is read
from dotenv import load_dotenv  # noqa: E402
load_dotenv()

import structlog  # noqa: E402

from config.settings import load_settings  # noqa: E402
from core.runtime import FlowRuntime  # noqa: E402
from models.errors import FlowVersionExists, GraphError  # noqa: E402
from models.schemas import FlowDefinition  # noqa: E402

logger = structlog.get_logger()


async def load_flows(runtime: FlowRuntime, flows_dir: str) -> int:
    loaded = 0
    for path in sorted(Path(flows_dir).glob("*.json")):
        try:
            flow = FlowDefinition.load(json.loads(path.read_text()))
            await runtime.store.save_flow(flow)
            loaded += 1
        except FlowVersionExists:
            logger.info("flow_version_exists", file=path.name)
        except (GraphError, json.JSONDecodeError) as e:
            logger.error("flow_file_invalid", file=path.name, error=str(e))
    logger.info("flows_loaded", count=loaded, directory=flows_dir)
    return loaded


async def run(config_path: str | None, flows_dir: str | None):
    settings = load_settings(config_path)
    runtime = FlowRuntime.from_settings(settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows
            pass

    await runtime.start()
    try:
        if flows_dir:
            await load_flows(runtime, flows_dir)
        await stop_event.wait()
    finally:
        await runtime.stop()


def main():
    parser = argparse.ArgumentParser(description="convoflow worker")
    parser.add_argument("--config", default=None, help="Settings YAML (defaults to CONVOFLOW_CONFIG)")
    parser.add_argument("--flows", default=None, help="Directory of flow definition JSON files")
    args = parser.parse_args()

    asyncio.run(run(args.config, args.flows))


if __name__ == "__main__":
    main()
