"""Per-race device heartbeats and the active device count derived from them."""

from __future__ import annotations

import json
import logging
import time
from typing import Callable, Optional

import redis

from . import keys
from .settings import settings

log = logging.getLogger(__name__)

# Heartbeat freshness counted toward "active"
DEVICE_STALE_THRESHOLD_MS = 30_000


def now_ms() -> int:
    return int(time.time() * 1000)


class DeviceRegistry:
    def __init__(
        self,
        client: redis.Redis,
        *,
        expiry_seconds: int = settings.RACESYNC_CACHE_EXPIRY_SECONDS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.client = client
        self.expiry_seconds = expiry_seconds
        self.clock = clock

    def record_heartbeat(self, race_id: str, device_id: str, device_name: str = "") -> None:
        if not device_id:
            return
        key = keys.devices_key(race_id)
        payload = json.dumps({"name": device_name or "Unknown", "lastSeen": self.clock()})
        self.client.hset(key, device_id, payload)
        self.client.expire(key, self.expiry_seconds)

    def count_active(self, race_id: str, now: Optional[int] = None) -> int:
        """Count fresh devices, deleting stale or unreadable entries as a side effect."""
        key = keys.devices_key(race_id)
        devices = self.client.hgetall(key)
        if not devices:
            return 0

        now = self.clock() if now is None else now
        active = 0
        stale: list[str] = []
        for device_id, raw in devices.items():
            try:
                last_seen = int(json.loads(raw)["lastSeen"])
            except (TypeError, ValueError, KeyError):
                stale.append(device_id)
                continue
            if now - last_seen <= DEVICE_STALE_THRESHOLD_MS:
                active += 1
            else:
                stale.append(device_id)

        if stale:
            self.client.hdel(key, *stale)
            log.debug("pruned_stale_devices", extra={"race": race_id, "count": len(stale)})
        return active
