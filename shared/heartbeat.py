# shared/heartbeat.py
"""
Threaded Redis heartbeat.

Runs outside asyncio so a blocked event loop still shows up as a stale
heartbeat rather than a silent one. Each beat writes ``<service>:heartbeat``
with a TTL; the value is a JSON payload (timestamp plus whatever
``payload_fn`` returns).
"""

import json
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import redis


def start_heartbeat(
    service_name: str,
    config: Dict[str, Any],
    logger,
    payload_fn: Optional[Callable[[], Dict[str, Any]]] = None,
    client: Optional[redis.Redis] = None,
) -> threading.Event:
    """
    Start the heartbeat thread and return its stop flag.

    Config:
      heartbeat.interval_sec  (default 5)
      heartbeat.ttl_sec       (default 15)
      REDIS_HOST / REDIS_PORT (system redis)
    """
    hb_cfg = config.get("heartbeat", {}) or {}
    interval_sec = float(hb_cfg.get("interval_sec", 5))
    ttl_sec = int(hb_cfg.get("ttl_sec", 15))

    if client is None:
        host = config.get("REDIS_HOST", "127.0.0.1")
        port = int(config.get("REDIS_PORT", 6379))
        client = redis.Redis(host=host, port=port, decode_responses=True)

    key = f"{service_name}:heartbeat"
    stop = threading.Event()

    def beat():
        failures = 0
        while not stop.is_set():
            payload = {
                "service": service_name,
                "ts": datetime.now(timezone.utc).isoformat(),
                "epoch": time.time(),
            }
            try:
                if payload_fn:
                    payload.update(payload_fn() or {})
                client.setex(key, ttl_sec, json.dumps(payload, default=str))
                if failures:
                    logger.ok(f"heartbeat recovered after {failures} failures", emoji="❤️")
                failures = 0
            except Exception as e:
                failures += 1
                # Only report the first miss and every tenth after that
                if failures == 1 or failures % 10 == 0:
                    logger.warn(f"heartbeat failed ({failures}x): {e}", emoji="💔")
            stop.wait(interval_sec)

        logger.info("heartbeat thread exiting", emoji="🛑")

    thread = threading.Thread(target=beat, name=f"{service_name}-heartbeat", daemon=True)
    thread.start()
    logger.info(f"heartbeat started (key={key}, every {interval_sec}s, ttl={ttl_sec}s)", emoji="❤️")
    return stop
