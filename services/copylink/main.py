#!/usr/bin/env python3
# services/copylink/main.py

import asyncio
import sys
from pathlib import Path

# ------------------------------------------------------------
# 1) Ensure repo root is on sys.path
# ------------------------------------------------------------
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# ------------------------------------------------------------
# 2) Imports
# ------------------------------------------------------------
from shared.logutil import LogUtil
from shared.heartbeat import start_heartbeat
from shared.setup_base import SetupBase

from services.copylink.intel.orchestrator import run as orchestrator_run
from services.copylink.intel.errors import ValidationError
from services.copylink.intel.reconciliation import check_tolerance

SERVICE_NAME = "copylink"

NUMERIC_KEYS = {
    "COPYLINK_PORT": int,
    "LINK_TOKEN_TTL_SEC": int,
    "TOKEN_RETENTION_DAYS": int,
    "INGEST_MAX_SKEW_SEC": int,
    "RECONCILE_TOLERANCE": float,
    "RECONCILE_INTERVAL_SEC": float,
}


class CopyLinkSetup(SetupBase):
    """Coerces numeric env values and checks the secrets the service cannot run without."""

    async def extend_config(self, config):
        for key, cast in NUMERIC_KEYS.items():
            if key in config and config[key] not in (None, ""):
                try:
                    config[key] = cast(config[key])
                except (TypeError, ValueError):
                    raise RuntimeError(f"[setup:{self.service_name}] {key} must be {cast.__name__}")

        if config.get("RECONCILE_TOLERANCE") not in (None, ""):
            try:
                check_tolerance(config["RECONCILE_TOLERANCE"])
            except ValidationError as e:
                raise RuntimeError(f"[setup:{self.service_name}] RECONCILE_TOLERANCE: {e.message}")

        for key in ("COPYLINK_SECRET_KEY", "APP_SESSION_SECRET"):
            if not config.get(key):
                raise RuntimeError(f"[setup:{self.service_name}] {key} is required")


# ------------------------------------------------------------
# Main lifecycle
# ------------------------------------------------------------
async def main():
    logger = LogUtil(SERVICE_NAME)
    logger.info("starting setup()", emoji="⚙️")

    setup = CopyLinkSetup(SERVICE_NAME, logger)
    config = await setup.load()

    logger.configure_from_config(config)
    logger.ok("configuration loaded", emoji="📄")

    # Threaded heartbeat (outside asyncio)
    hb_stop = start_heartbeat(
        SERVICE_NAME,
        config,
        logger,
        payload_fn=lambda: {"mode": "api"},
    )

    orch_task = asyncio.create_task(
        orchestrator_run(config, logger),
        name=f"{SERVICE_NAME}-orchestrator",
    )

    try:
        await orch_task
        logger.warn("orchestrator exited unexpectedly", emoji="⚠️")
    finally:
        hb_stop.set()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("Shutting down gracefully…")
