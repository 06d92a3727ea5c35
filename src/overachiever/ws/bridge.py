"""Bridges scheduled scan requests from Redis pub/sub into the ScanQueue.

The arq scheduler publishes ``{"user_id": ..., "reason": "scheduled"}`` on
the scan request channel; every API process that runs a SyncEngine
consumes the channel and submits the request locally.
"""

import asyncio
import json

import redis.asyncio as aioredis
import structlog

from overachiever.sync.engine import SyncEngine
from overachiever.sync.models import ScanReason

logger = structlog.get_logger()


class ScanRequestBridge:
    """Subscribes to the scan request channel and feeds the engine."""

    def __init__(self, redis_client: aioredis.Redis, engine: SyncEngine, channel: str) -> None:
        self.redis = redis_client
        self.engine = engine
        self.channel = channel
        self._running = False
        self.received = 0

    def handle(self, data: str | bytes) -> bool:
        """Submit one published request. Returns False if it was unusable."""
        try:
            if isinstance(data, bytes):
                data = data.decode()
            payload = json.loads(data)
            user_id = int(payload["user_id"])
            reason = ScanReason(payload.get("reason", ScanReason.SCHEDULED.value))
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValueError):
            logger.warning("scan_request_invalid", channel=self.channel)
            return False

        self.received += 1
        admission = self.engine.request_scan(user_id, reason, force=bool(payload.get("force", False)))
        logger.debug(
            "scan_request_bridged",
            user_id=user_id,
            reason=reason.value,
            outcome=admission.outcome.value,
        )
        return True

    async def start(self) -> None:
        """Start listening to the scan request channel."""
        self._running = True
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel)

        logger.info("scan_bridge_started", channel=self.channel)

        try:
            while self._running:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
                if message is None:
                    continue
                self.handle(message.get("data", b""))

        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.unsubscribe()
            await pubsub.close()
            logger.info("scan_bridge_stopped")

    async def stop(self) -> None:
        """Signal the bridge to stop."""
        self._running = False
