from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import yaml

from .config import load_config
from .errors import InvalidConfiguration
from .runner import SentinelRunner


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Order Block Sentinel - order block detection and signal alerts")
    p.add_argument("--config", required=True, help="Path to YAML config")
    args = p.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except (OSError, TypeError, yaml.YAMLError) as e:
        # missing file, unknown keys in a section or malformed YAML
        print(f"config error: {e}", file=sys.stderr)
        return 2
    _setup_logging(cfg.app.log_level)

    try:
        runner = SentinelRunner(cfg)
    except InvalidConfiguration as e:
        for err in e.errors:
            logging.getLogger("main").error("invalid_config %s", err)
        return 2

    async def _run() -> None:
        try:
            await runner.run_forever()
        finally:
            # Close shared REST session cleanly.
            await runner.provider.close()

    try:
        asyncio.run(_run())
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logging.getLogger("main").exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
