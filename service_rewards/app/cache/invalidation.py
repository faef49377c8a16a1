"""
Redis pub/sub change notifications for the policy registry cache.
"""

import asyncio
import json
from typing import Any, Dict, Optional, Union

import redis.asyncio as redis

from shared.errors import RewardsException
from shared.logging import get_logger
from ..policies.models import Policy
from ..policies.registry import PolicyRegistry


def change_message(policy: Policy) -> Dict[str, Any]:
    """Notification payload for a changed policy."""
    return {
        "policy_id": policy.policy_id,
        "version": policy.version,
        "tenant_id": policy.tenant_id,
        "event_types": sorted(policy.event_types),
    }


async def publish_policy_change(client: redis.Redis, channel: str, policy: Policy) -> int:
    """Announce a policy change; returns the number of listeners reached."""
    return await client.publish(channel, json.dumps(change_message(policy)))


class PolicyChangeListener:
    """Subscribes to policy change notifications and invalidates the registry.

    Messages are JSON objects. ``{"all": true}`` expires the whole cache. A
    message with ``policy_id`` expires the scopes holding that policy, and
    ``tenant_id`` / ``event_types`` expire those scopes too, which covers a
    policy that no cached scope holds yet.
    """

    def __init__(self, redis_url: str, registry: PolicyRegistry, channel: str,
                 reconnect_backoff_seconds: float = 5.0):
        self.redis_url = redis_url
        self.registry = registry
        self.channel = channel
        self.reconnect_backoff_seconds = reconnect_backoff_seconds
        self.logger = get_logger("rewards.cache.invalidation")
        self.redis: Optional[redis.Redis] = None
        self.pubsub = None
        self.running = False
        self.subscribed = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Connect and start listening."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                health_check_interval=30
            )
            await self.redis.ping()
            await self._subscribe()
        except Exception as e:
            self.logger.error("Failed to start policy change listener", error=str(e))
            raise RewardsException("REDIS_START_FAILED", str(e)) from e

        self.running = True
        self._task = asyncio.create_task(self._listen_loop())
        self.logger.info("Policy change listener started", channel=self.channel)

    async def stop(self):
        """Stop listening and close the connection."""
        self.running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self._close_pubsub()
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
        self.logger.info("Policy change listener stopped")

    async def _subscribe(self):
        self.pubsub = self.redis.pubsub()
        await self.pubsub.subscribe(self.channel)
        self.subscribed = True

    async def _close_pubsub(self):
        self.subscribed = False
        if self.pubsub is None:
            return
        pubsub, self.pubsub = self.pubsub, None
        try:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()
        except Exception as e:
            self.logger.warning("Failed to close policy change subscription", error=str(e))

    async def _listen_loop(self):
        """Consume notifications, resubscribing with backoff when Redis drops."""
        while self.running:
            try:
                if self.pubsub is None:
                    await self._subscribe()
                    # Changes published while disconnected were missed
                    self.registry.invalidate_all()
                    self.logger.info("Policy change listener resubscribed", channel=self.channel)

                async for message in self.pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    self.handle_message(message.get("data"))
                raise ConnectionError("Policy change subscription closed")

            except asyncio.CancelledError:
                break

            except Exception as e:
                self.logger.error("Policy change listener disconnected", channel=self.channel, error=str(e))
                await self._close_pubsub()
                await asyncio.sleep(self.reconnect_backoff_seconds)

    def handle_message(self, data: Union[str, bytes, None]) -> int:
        """Apply one notification; returns the number of scopes expired."""
        try:
            payload = json.loads(data)
        except (TypeError, ValueError):
            self.logger.warning("Ignoring malformed policy change message", data=str(data)[:200])
            return 0
        if not isinstance(payload, dict):
            self.logger.warning("Ignoring malformed policy change message", data=str(data)[:200])
            return 0

        if payload.get("all"):
            return self.registry.invalidate_all()

        count = 0
        policy_id = payload.get("policy_id")
        if policy_id:
            count += self.registry.invalidate(policy_id)

        if "tenant_id" in payload or payload.get("event_types"):
            # Covers policies that no cached scope holds yet
            tenant_id = payload.get("tenant_id")
            for event_type in payload.get("event_types") or [None]:
                count += self.registry.invalidate_scope(tenant_id, event_type)

        return count

    async def health_check(self) -> bool:
        """False when stopped, or while the subscription is down."""
        if self.redis is None or not self.subscribed:
            return False
        if self._task is None or self._task.done():
            return False
        try:
            await self.redis.ping()
            return True
        except Exception:
            return False
