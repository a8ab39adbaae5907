"""
End-to-end tests of SparkCloud against a scripted cloud.
"""

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from spark_cloud import Scope, SparkCloud
from spark_cloud.shared.errors import AuthenticationError, PreconditionError, ProtocolParseError

from tests.helpers import (
    Collector,
    FakeCloud,
    RecordingSleep,
    StreamScript,
    make_config,
    sse_frame,
    wait_for,
)

FIREHOSE = "/v1/events"
OWNED = "/v1/devices/events"


@pytest.fixture
def fake_cloud():
    cloud = FakeCloud()
    cloud.route("POST", "/oauth/token", json_body={"access_token": "tok-1"})
    cloud.route("GET", "/v1/devices", json_body=[{"id": "owned1", "connected": True}])
    return cloud


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest_asyncio.fixture
async def spark(fake_cloud, sleep):
    client = SparkCloud(
        config=make_config(),
        transport=fake_cloud.transport,
        metrics_registry=CollectorRegistry(),
        sleep=sleep
    )
    yield client
    await client.close()


class TestStreamingFlow:
    """Subscribe, receive, reconnect and tear down through the public client."""

    @pytest.mark.asyncio
    async def test_device_subscription_with_prefix(self, spark, fake_cloud):
        fake_cloud.add_stream(
            "/v1/devices/abc123/events",
            StreamScript(chunks=[
                sse_frame("temperature", data="21.5", device_id="abc123"),
                sse_frame("temperature", data="9.0", device_id="xyz999"),
                sse_frame("humidity", data="40", device_id="abc123"),
                sse_frame("temp2", data="22.0", device_id="abc123"),
            ], hold=True)
        )
        collector = Collector()

        handle = await spark.subscribe_to_device_events("temp", "abc123", collector)
        await wait_for(lambda: len(collector.records) == 2)
        await spark.dispatcher.join()

        assert [(r.name, r.data, r.device_id) for r in collector.records] == [
            ("temperature", "21.5", "abc123"),
            ("temp2", "22.0", "abc123"),
        ]
        assert handle.active

    @pytest.mark.asyncio
    async def test_order_and_reconnect_without_loss(self, spark, fake_cloud, sleep):
        fake_cloud.add_stream(
            FIREHOSE,
            StreamScript(chunks=[sse_frame("r1"), sse_frame("r2")], drop=True),
            StreamScript(chunks=[sse_frame("r3"), sse_frame("r4")], hold=True),
        )
        first = Collector()
        second = Collector()

        await spark.subscribe_to_all_events(None, first)
        await spark.subscribe_to_all_events("r", second)
        await wait_for(lambda: len(first.records) == 4 and len(second.records) == 4)

        assert first.names == ["r1", "r2", "r3", "r4"]
        assert second.names == ["r1", "r2", "r3", "r4"]
        assert first.errors == []
        assert sleep.delays == [1.0]
        assert len(fake_cloud.requests_to(FIREHOSE)) == 2

    @pytest.mark.asyncio
    async def test_malformed_frame_reported_once(self, spark, fake_cloud):
        fake_cloud.add_stream(
            FIREHOSE,
            StreamScript(chunks=[
                sse_frame("temp1"),
                b"event: temperature\n\n",
                sse_frame("temp3"),
            ], hold=True)
        )
        collector = Collector()

        await spark.subscribe_to_all_events("temp", collector)
        await wait_for(lambda: len(collector.records) == 2)
        await spark.dispatcher.join()

        assert len(collector.errors) == 1
        assert isinstance(collector.errors[0], ProtocolParseError)
        assert [c[0].name if c[0] else "error" for c in collector.calls] == ["temp1", "error", "temp3"]

    @pytest.mark.asyncio
    async def test_private_events_follow_ownership(self, spark, fake_cloud):
        await spark.login("user@example.com", "secret")
        fake_cloud.add_stream(
            FIREHOSE,
            StreamScript(chunks=[
                sse_frame("secret", device_id="owned1", public=False),
                sse_frame("secret", device_id="stranger", public=False),
                sse_frame("open", device_id="stranger"),
            ], hold=True)
        )
        collector = Collector()

        await spark.subscribe_to_all_events("", collector)
        await wait_for(lambda: len(collector.records) == 2)
        await spark.dispatcher.join()

        assert [(r.name, r.device_id) for r in collector.records] == [
            ("secret", "owned1"),
            ("open", "stranger"),
        ]
        assert fake_cloud.requests_to(FIREHOSE)[0].headers["Authorization"] == "Bearer tok-1"
        assert len(fake_cloud.requests_to("/v1/devices", "GET")) == 1

    @pytest.mark.asyncio
    async def test_my_devices_requires_session(self, spark, fake_cloud):
        with pytest.raises(PreconditionError):
            await spark.subscribe_to_my_devices_events("temp", Collector())

        assert fake_cloud.requests == []
        assert len(spark.registry) == 0

    @pytest.mark.asyncio
    async def test_my_devices_stream(self, spark, fake_cloud):
        await spark.login("user@example.com", "secret")
        fake_cloud.add_stream(
            OWNED,
            StreamScript(chunks=[
                sse_frame("temperature", device_id="owned1", public=False),
                sse_frame("temperature", device_id="owned1"),
            ], hold=True)
        )
        collector = Collector()

        await spark.subscribe_to_my_devices_events("temp", collector)
        await wait_for(lambda: len(collector.records) == 2)

        assert [r.private for r in collector.records] == [True, False]

    @pytest.mark.asyncio
    async def test_revoked_token_ends_subscriptions(self, spark, fake_cloud, sleep):
        await spark.login("user@example.com", "secret")
        fake_cloud.add_stream(OWNED, StreamScript(status_code=401))
        first = Collector()
        second = Collector()

        handle_one = await spark.subscribe_to_my_devices_events("a", first)
        handle_two = await spark.subscribe_to_my_devices_events("b", second)
        await wait_for(lambda: len(first.errors) == 1 and len(second.errors) == 1)
        await spark.dispatcher.join()

        assert isinstance(first.errors[0], AuthenticationError)
        assert first.records == []
        assert not handle_one.active
        assert not handle_two.active
        assert spark.router.connections == {}
        assert sleep.delays == []
        assert len(fake_cloud.requests_to(OWNED)) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_closes_stream(self, spark, fake_cloud):
        fake_cloud.add_stream(FIREHOSE, StreamScript(chunks=[sse_frame("r1")], hold=True))
        collector = Collector()

        with await spark.subscribe_to_all_events("", collector) as handle:
            await wait_for(lambda: len(collector.records) == 1)

        assert not handle.active
        assert handle.unsubscribe() is False
        assert spark.router.connections == {}
        assert spark.metrics.sample("spark_active_subscriptions") == 0.0

    @pytest.mark.asyncio
    async def test_publish_private_needs_session(self, spark, fake_cloud):
        with pytest.raises(PreconditionError):
            await spark.publish_event("secret", "x", private=True)

        assert fake_cloud.requests_to(OWNED, "POST") == []

    @pytest.mark.asyncio
    async def test_claim_refreshes_ownership(self, spark, fake_cloud):
        await spark.login("user@example.com", "secret")
        await spark.owned_devices.refresh()
        assert not spark.owned_devices.is_owned("new1")

        fake_cloud.route("POST", "/v1/devices", json_body={"ok": True})
        fake_cloud.route("GET", "/v1/devices", json_body=[{"id": "owned1"}, {"id": "new1"}])

        await spark.claim_device("new1")

        assert spark.owned_devices.is_owned("new1")

    @pytest.mark.asyncio
    async def test_login_reauthenticates_open_firehose(self, spark, fake_cloud):
        fake_cloud.add_stream(
            FIREHOSE,
            StreamScript(chunks=[sse_frame("before", device_id="stranger")], hold=True),
            StreamScript(chunks=[
                sse_frame("secret", device_id="owned1", public=False),
                sse_frame("after", device_id="stranger"),
            ], hold=True),
        )
        collector = Collector()

        await spark.subscribe_to_all_events("", collector)
        await wait_for(lambda: collector.names == ["before"])

        await spark.login("user@example.com", "secret")
        await wait_for(lambda: len(collector.records) == 3)

        requests = fake_cloud.requests_to(FIREHOSE)
        assert len(requests) == 2
        assert "Authorization" not in requests[0].headers
        assert requests[1].headers["Authorization"] == "Bearer tok-1"
        assert collector.names == ["before", "secret", "after"]
        assert collector.errors == []

    @pytest.mark.asyncio
    async def test_logout_fails_my_devices_subscription(self, spark, fake_cloud):
        await spark.login("user@example.com", "secret")
        fake_cloud.add_stream(
            OWNED,
            StreamScript(chunks=[sse_frame("temperature", device_id="owned1", public=False)], hold=True)
        )
        fake_cloud.add_stream(FIREHOSE, StreamScript(chunks=[sse_frame("open1")], hold=True))
        owned = Collector()
        firehose = Collector()

        owned_handle = await spark.subscribe_to_my_devices_events("temp", owned)
        firehose_handle = await spark.subscribe_to_all_events("open", firehose)
        await wait_for(lambda: len(owned.records) == 1 and len(firehose.records) == 1)

        spark.logout()
        await wait_for(lambda: len(owned.errors) == 1)
        await spark.dispatcher.join()

        assert isinstance(owned.errors[0], AuthenticationError)
        assert not owned_handle.active
        assert firehose_handle.active
        assert set(spark.router.connections) == {Scope.all_public_and_owned()}
        assert len(fake_cloud.requests_to(OWNED)) == 1
        await wait_for(lambda: len(fake_cloud.requests_to(FIREHOSE)) == 2)
        assert "Authorization" not in fake_cloud.requests_to(FIREHOSE)[1].headers
        assert firehose.errors == []

    @pytest.mark.asyncio
    async def test_close_stops_everything(self, fake_cloud, sleep):
        spark = SparkCloud(
            config=make_config(),
            transport=fake_cloud.transport,
            metrics_registry=CollectorRegistry(),
            sleep=sleep
        )
        await spark.subscribe_to_all_events("", Collector())
        await spark.subscribe_to_device_events("", "abc123", Collector())

        await spark.close()
        await spark.close()

        assert spark.router.connections == {}
        assert len(spark.registry) == 0
        assert spark.http_client.is_closed
        with pytest.raises(PreconditionError):
            await spark.subscribe_to_all_events("", Collector())
