from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

import yaml

from sealchat.core.errors import ConfigurationError
from sealchat.server.runtime import ServerRuntime

log = logging.getLogger("sealchat.cmd.server")


def load_config(config_path: Path) -> dict:
    config = yaml.safe_load(config_path.read_text()) or {}
    if not isinstance(config, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping")
    return config


async def _run(config: dict) -> None:
    runtime = ServerRuntime(config)
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Server running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="sealchat server")
    parser.add_argument("--config", required=True, help="Path to server YAML config")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        config = load_config(Path(args.config))
        asyncio.run(_run(config))
    except ConfigurationError as exc:
        log.critical("Refusing to start: %s", exc.detail)
        raise SystemExit(2) from None


if __name__ == "__main__":
    main()
