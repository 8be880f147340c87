"""Schema subscription: event filtering and cache writes."""

import asyncio

import orjson
import pytest

from sheetflow.models.schema import SchemaSource
from sheetflow.services.schema import SchemaSubscription
from sheetflow.services.schema.subscription import channel_for, publish_schema_update


class RecordingRedis:
    def __init__(self):
        self.published = []

    async def publish(self, channel, payload):
        self.published.append((channel, payload))
        return 1


class ScriptedPubSub:
    """Hands out queued messages, then idles."""

    def __init__(self, messages):
        self.messages = list(messages)
        self.patterns = []

    async def psubscribe(self, pattern):
        self.patterns.append(pattern)

    async def punsubscribe(self):
        self.patterns = []

    async def aclose(self):
        pass

    async def get_message(self, timeout=None):
        if self.messages:
            return self.messages.pop(0)
        await asyncio.sleep(0.01)
        return None


class ScriptedRedis:
    def __init__(self, pubsub):
        self._pubsub = pubsub

    def pubsub(self, ignore_subscribe_messages=False):
        return self._pubsub


@pytest.fixture
def subscription(cache, settings) -> SchemaSubscription:
    return SchemaSubscription(cache, settings)


def _event(**overrides):
    event = {
        "workflow_id": "wf",
        "node_id": "input",
        "sheet_name": "Sheet1",
        "file_id": "file-1",
        "schema": [{"name": "region", "type": "string"}],
    }
    event.update(overrides)
    return event


class TestFiltering:
    def test_unsubscribed_events_are_ignored(self, subscription, cache):
        assert not subscription.handle_event(_event())
        assert len(cache) == 0

    def test_matching_event_is_cached_as_subscription(self, subscription, cache):
        subscription.subscribe("temp-wf", "input", "file-1")
        assert subscription.handle_event(orjson.dumps(_event()))

        entry = cache.get(cache.make_key("wf", "input", "Sheet1"))
        assert entry.source == SchemaSource.SUBSCRIPTION
        assert entry.file_id == "file-1"

    def test_other_file_is_ignored(self, subscription):
        subscription.subscribe("wf", "input", "file-1")
        assert not subscription.handle_event(_event(file_id="file-2"))

    def test_subscription_without_file_matches_any(self, subscription):
        subscription.subscribe("wf", "input")
        assert subscription.handle_event(_event(file_id="whatever"))

    def test_persisted_column_format(self, subscription, cache):
        subscription.subscribe("wf", "input")
        event = _event(columns=["a", "b"], data_types={"a": "number"})
        del event["schema"]
        assert subscription.handle_event(event)
        schema = cache.read("wf", "input", "Sheet1").schema
        assert [(c.name, c.type.value) for c in schema] == [("a", "number"), ("b", "unknown")]

    @pytest.mark.parametrize("payload", [b"{not json", {"node_id": "input"}, _event(schema=[]),
                                         b"[1, 2]", b"\"text\"", _event(node_id=["input"]),
                                         _event(schema=[{"type": "number"}])])
    def test_malformed_events(self, subscription, payload):
        subscription.subscribe("wf", "input")
        assert not subscription.handle_event(payload)

    def test_unsubscribe(self, subscription):
        subscription.subscribe("wf", "input", "file-1")
        subscription.unsubscribe("wf", "input", "file-1")
        assert subscription.subscription_count == 0
        assert not subscription.handle_event(_event())


class TestPublish:
    @pytest.mark.asyncio
    async def test_publish_without_connection(self, subscription):
        assert await subscription.publish("wf", "input", ["a"]) == 0

    @pytest.mark.asyncio
    async def test_publish_payload(self, settings):
        client = RecordingRedis()
        receivers = await publish_schema_update(client, settings.schema_channel_prefix, "temp-wf", "input",
                                                ["a"], sheet_name="Sheet1")
        assert receivers == 1
        channel, payload = client.published[0]
        assert channel == channel_for(settings.schema_channel_prefix, "wf")
        assert orjson.loads(payload)["schema"] == [{"name": "a", "type": "unknown"}]

    @pytest.mark.asyncio
    async def test_start_is_noop_when_disabled(self, subscription):
        await subscription.start()
        await subscription.stop()


class TestListener:
    @pytest.mark.asyncio
    async def test_bad_messages_do_not_stop_the_listener(self, cache, settings):
        pubsub = ScriptedPubSub([
            {"type": "pmessage"},
            {"type": "pmessage", "data": b"[1, 2]"},
            {"type": "pmessage", "data": orjson.dumps(_event(schema=[{"type": "number"}]))},
            {"type": "pmessage", "data": orjson.dumps(_event())},
        ])
        subscription = SchemaSubscription(cache, settings, client=ScriptedRedis(pubsub))
        subscription.subscribe("wf", "input")

        await subscription.start()
        try:
            for _ in range(100):
                if cache.read("wf", "input", "Sheet1") is not None:
                    break
                await asyncio.sleep(0.02)
        finally:
            await subscription.stop()

        entry = cache.read("wf", "input", "Sheet1")
        assert entry is not None
        assert [c.name for c in entry.schema] == ["region"]
        assert pubsub.patterns == []
