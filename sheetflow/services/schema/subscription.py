"""Schema change events over Redis pub/sub.

Producers publish on "<prefix>:<workflow id>". The subscriber applies an
event to the cache only when a subscription matches its workflow, node
and (when the subscription names one) file.
"""

import asyncio
from typing import Any, Dict, Optional, Set, Tuple, Union

import orjson
import redis.asyncio as redis

from sheetflow.core.config import Settings
from sheetflow.core.logging import get_logger
from sheetflow.models.schema import (
    SchemaSource,
    coerce_schema,
    db_format_to_columns,
    normalize_workflow_id,
)

from .cache import SchemaCache

logger = get_logger(__name__)

SubscriptionKey = Tuple[str, str]


def channel_for(prefix: str, workflow_id: str) -> str:
    return f"{prefix}:{normalize_workflow_id(workflow_id)}"


async def publish_schema_update(client: "redis.Redis", prefix: str, workflow_id: str, node_id: str,
                                schema: Any, sheet_name: Optional[str] = None,
                                file_id: Optional[str] = None, version: Optional[int] = None) -> int:
    """Publish a schema change. Returns the number of receivers."""
    payload = {
        "workflow_id": normalize_workflow_id(workflow_id),
        "node_id": node_id,
        "sheet_name": sheet_name,
        "file_id": file_id,
        "version": version,
        "schema": [col.to_dict() for col in coerce_schema(schema)],
    }
    return await client.publish(channel_for(prefix, workflow_id), orjson.dumps(payload))


class SchemaSubscription:
    """Filtered listener that writes matching events to the cache."""

    def __init__(self, cache: SchemaCache, settings: Settings,
                 client: Optional["redis.Redis"] = None):
        self.cache = cache
        self.settings = settings
        self.prefix = settings.schema_channel_prefix
        self._client = client
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        # (workflow, node) -> file ids; None in the set matches any file
        self._subscriptions: Dict[SubscriptionKey, Set[Optional[str]]] = {}

    # =========================================================================
    # Subscription filters
    # =========================================================================

    def subscribe(self, workflow_id: str, node_id: str, file_id: Optional[str] = None) -> None:
        key = (normalize_workflow_id(workflow_id), node_id)
        self._subscriptions.setdefault(key, set()).add(file_id)
        logger.debug("Schema subscription added", workflow_id=key[0], node_id=node_id, file_id=file_id)

    def unsubscribe(self, workflow_id: str, node_id: str, file_id: Optional[str] = None) -> None:
        key = (normalize_workflow_id(workflow_id), node_id)
        files = self._subscriptions.get(key)
        if not files:
            return
        files.discard(file_id)
        if not files:
            del self._subscriptions[key]

    def matches(self, workflow_id: str, node_id: str, file_id: Optional[str]) -> bool:
        files = self._subscriptions.get((normalize_workflow_id(workflow_id), node_id))
        if not files:
            return False
        return None in files or file_id in files

    @property
    def subscription_count(self) -> int:
        return sum(len(files) for files in self._subscriptions.values())

    # =========================================================================
    # Event handling
    # =========================================================================

    def handle_event(self, event: Union[bytes, str, Dict[str, Any]]) -> bool:
        """Apply one event to the cache. Returns True if it was applied."""
        if isinstance(event, (bytes, str)):
            try:
                event = orjson.loads(event)
            except orjson.JSONDecodeError as e:
                logger.warning("Malformed schema event", error=str(e))
                return False
        if not isinstance(event, dict):
            logger.warning("Schema event is not an object", event_type=type(event).__name__)
            return False

        workflow_id = event.get("workflow_id")
        node_id = event.get("node_id")
        if not (workflow_id and node_id and isinstance(workflow_id, str) and isinstance(node_id, str)):
            logger.warning("Schema event without workflow or node", keys=sorted(event))
            return False

        file_id = event.get("file_id")
        if not self.matches(workflow_id, node_id, file_id):
            return False

        try:
            if "schema" in event:
                schema = coerce_schema(event["schema"])
            else:
                schema = db_format_to_columns(event.get("columns"), event.get("data_types"))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Schema event with unreadable columns", workflow_id=workflow_id, node_id=node_id,
                           error=f"{type(e).__name__}: {e}")
            return False
        if not schema:
            return False

        self.cache.write(
            workflow_id, node_id, schema,
            sheet_name=event.get("sheet_name"),
            source=SchemaSource.SUBSCRIPTION,
            version=event.get("version"),
            file_id=file_id,
        )
        logger.debug("Schema event applied", workflow_id=workflow_id, node_id=node_id,
                     sheet_name=event.get("sheet_name"), columns=len(schema))
        return True

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Connect and listen on every workflow channel of the prefix."""
        if self._running:
            return
        if self._client is None:
            if not (self.settings.redis_enabled and self.settings.redis_url):
                logger.info("Schema subscription disabled", redis_enabled=self.settings.redis_enabled)
                return
            self._client = redis.from_url(
                self.settings.redis_url,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True,
            )

        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        await self._pubsub.psubscribe(f"{self.prefix}:*")
        self._running = True
        self._task = asyncio.create_task(self._listen())
        logger.info("Schema subscription started", pattern=f"{self.prefix}:*")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._pubsub is not None:
            await self._pubsub.punsubscribe()
            await self._pubsub.aclose()
            self._pubsub = None
        logger.info("Schema subscription stopped")

    async def publish(self, workflow_id: str, node_id: str, schema: Any,
                      sheet_name: Optional[str] = None, file_id: Optional[str] = None,
                      version: Optional[int] = None) -> int:
        """Publish through the subscription's connection. 0 when not connected."""
        if self._client is None:
            return 0
        try:
            return await publish_schema_update(self._client, self.prefix, workflow_id, node_id, schema,
                                               sheet_name=sheet_name, file_id=file_id, version=version)
        except redis.RedisError as e:
            logger.warning("Schema publish failed", workflow_id=workflow_id, node_id=node_id, error=str(e))
            return 0

    async def _listen(self) -> None:
        while self._running:
            try:
                message = await self._pubsub.get_message(timeout=1.0)
                if message and message.get("type") == "pmessage":
                    self.handle_event(message["data"])
            except asyncio.CancelledError:
                raise
            except redis.RedisError as e:
                logger.error("Schema subscription error", error=str(e))
                await asyncio.sleep(1.0)
            except Exception as e:
                logger.error("Schema event handling failed", error_type=type(e).__name__, error=str(e),
                             exc_info=True)
                await asyncio.sleep(0.1)
