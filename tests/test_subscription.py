import asyncio

import pytest
from broker import run
from tether.client import (
    BadSubjectError,
    ClientState,
    ConnectionClosedError,
    EventType,
    PermissionsError,
    SlowConsumerError,
    connect,
)
from tether.client.subscription import CallbackDelivery, QueueDelivery


@pytest.mark.asyncio
async def test_subscribe_allocates_increasing_sids(client):
    """Test that subscription ids start at 1 and are never reused."""
    first = await client.subscribe("a")
    second = await client.subscribe("b")
    await first.unsubscribe()
    third = await client.subscribe("c")

    assert [first.sid, second.sid, third.sid] == [1, 2, 3]


@pytest.mark.asyncio
@pytest.mark.parametrize("subject", ["", "foo bar", "foo..bar", ".foo", "foo.", "foo.>.bar", "foo*.bar"])
async def test_subscribe_rejects_invalid_subject(client, subject):
    """Test that malformed subjects are rejected before anything is registered."""
    with pytest.raises(BadSubjectError):
        await client.subscribe(subject)


@pytest.mark.asyncio
async def test_subscribe_rejects_invalid_queue_group(client):
    """Test that queue groups containing whitespace are rejected."""
    with pytest.raises(BadSubjectError):
        await client.subscribe("foo", queue_group="bad group")


@pytest.mark.asyncio
async def test_unsubscribe_sends_unsub_and_stops_delivery(client, server):
    """Test that unsubscribe tells the server and ends iteration."""
    subscription = await client.subscribe("foo")
    await client.flush()

    await subscription.unsubscribe()
    await client.flush()

    assert server.ops("UNSUB") == [str(subscription.sid)]
    assert subscription.closed
    assert [msg async for msg in subscription] == []


@pytest.mark.asyncio
async def test_max_messages_auto_unsubscribes(client, server):
    """Test that a subscription closes itself right after its max_messages delivery."""
    subscription = await client.subscribe("limited", max_messages=2)
    await client.flush()

    for i in range(3):
        await client.publish("limited", f"{i}".encode())
    await client.flush()

    received = [msg.data async for msg in subscription]

    assert received == [b"0", b"1"]
    assert subscription.received == 2
    assert subscription.closed
    assert server.ops("UNSUB") == [str(subscription.sid)]


@pytest.mark.asyncio
async def test_callback_subscription_receives_messages(client):
    """Test that messages are handed to the callback in order."""
    received = []
    subscription = await client.subscribe("events", callback=received.append)
    await client.flush()

    await client.publish("events", b"one")
    await client.publish("events", b"two")
    await client.flush()

    assert [msg.data for msg in received] == [b"one", b"two"]
    assert isinstance(subscription.delivery, CallbackDelivery)
    with pytest.raises(RuntimeError):
        await subscription.next(timeout=0.1)


@pytest.mark.asyncio
async def test_callback_errors_do_not_break_delivery(client):
    """Test that an exception in a callback is logged and later messages still arrive."""
    received = []

    def callback(msg):
        if msg.data == b"bad":
            raise ValueError("boom")
        received.append(msg.data)

    await client.subscribe("events", callback=callback)
    await client.flush()

    await client.publish("events", b"bad")
    await client.publish("events", b"good")
    await client.flush()

    assert received == [b"good"]
    assert client.state == ClientState.CONNECTED


@pytest.mark.asyncio
async def test_wildcard_subscriptions(client):
    """Test that * matches one token and > matches the rest."""
    single = await client.subscribe("orders.*")
    full = await client.subscribe("orders.>")
    await client.flush()

    await client.publish("orders.new", b"1")
    await client.publish("orders.eu.new", b"2")
    await client.flush()

    assert (await single.next(timeout=1.0)).subject == "orders.new"
    assert [(await full.next(timeout=1.0)).subject for _ in range(2)] == ["orders.new", "orders.eu.new"]
    assert single.pending == (0, 0)


@pytest.mark.asyncio
async def test_queue_group_distributes_messages(client):
    """Test that each message goes to exactly one member of a queue group."""
    first = await client.subscribe("work", queue_group="workers")
    second = await client.subscribe("work", queue_group="workers")
    await client.flush()

    for i in range(10):
        await client.publish("work", f"{i}".encode())
    await client.flush()

    assert isinstance(first.delivery, QueueDelivery)
    assert first.pending[0] + second.pending[0] == 10


@pytest.mark.asyncio
async def test_unknown_sid_is_dropped(client, server):
    """Test that a message for a sid the client does not know is ignored."""
    observer = client.status()
    subscription = await client.subscribe("known")
    await client.flush()

    server.send_raw(b"MSG known 99 5\r\nhello\r\n")
    await client.flush()

    assert subscription.pending == (0, 0)
    assert observer.pending == 0
    assert client.state == ClientState.CONNECTED


@pytest.mark.asyncio
async def test_slow_consumer_drops_and_reports_once(client):
    """Test that overflowing pending limits drops messages and emits one SlowConsumerError."""
    observer = client.status()
    subscription = await client.subscribe("firehose", max_pending_messages=2)
    await client.flush()

    for i in range(5):
        await client.publish("firehose", f"{i}".encode())
    await client.flush()

    assert subscription.pending[0] == 2
    assert subscription.dropped == 3
    assert observer.pending == 1
    event = await observer.next(timeout=1.0)
    assert event.type is EventType.ERROR
    assert isinstance(event.error, SlowConsumerError)
    assert event.error.sid == subscription.sid


@pytest.mark.asyncio
async def test_slow_consumer_byte_limit(client):
    """Test that the byte limit is enforced independently of the message limit."""
    subscription = await client.subscribe("bulk", max_pending_bytes=10)
    await client.flush()

    await client.publish("bulk", b"x" * 8)
    await client.publish("bulk", b"y" * 8)
    await client.flush()

    assert subscription.pending == (1, 8)
    assert subscription.dropped == 1


@pytest.mark.asyncio
async def test_subscription_drain_keeps_queued_messages(client, server):
    """Test that drain unsubscribes but leaves already queued messages readable."""
    subscription = await client.subscribe("drained")
    await client.flush()

    for i in range(3):
        await client.publish("drained", f"{i}".encode())
    await client.flush()

    await subscription.drain()
    await client.flush()

    assert server.ops("UNSUB") == [str(subscription.sid)]
    assert [msg.data async for msg in subscription] == [b"0", b"1", b"2"]


@pytest.mark.asyncio
async def test_subscription_permission_violation_closes_subscription():
    """Test that a denied subscription is closed with the server's error."""
    server = await run(deny_subscribe=("secret.data",))
    client = await connect(server.client_url, timeout=1.0)
    observer = client.status()

    try:
        subscription = await client.subscribe("secret.data")
        allowed = await client.subscribe("public.data")
        await client.flush()

        with pytest.raises(PermissionsError) as exc_info:
            await subscription.next(timeout=1.0)

        assert exc_info.value.operation == "subscription"
        assert exc_info.value.subject == "secret.data"
        assert subscription.closed
        assert not allowed.closed

        event = await observer.next(timeout=1.0)
        assert event.type is EventType.ERROR
        assert isinstance(event.error, PermissionsError)
        assert client.state == ClientState.CONNECTED
    finally:
        await client.close()
        await server.shutdown()


@pytest.mark.asyncio
async def test_request_publish_permission_violation_raises():
    """Test that a request to a subject the client may not publish to fails fast."""
    server = await run(deny_publish=("restricted",))
    client = await connect(server.client_url, timeout=1.0)

    try:
        with pytest.raises(PermissionsError) as exc_info:
            await client.request("restricted", b"data", timeout=2.0)

        assert exc_info.value.operation == "publish"
        assert client.state == ClientState.CONNECTED
    finally:
        await client.close()
        await server.shutdown()


@pytest.mark.asyncio
async def test_close_discards_pending_messages(client):
    """Test that closing the client closes subscriptions immediately."""
    subscription = await client.subscribe("pending")
    await client.flush()
    await client.publish("pending", b"unread")
    await client.flush()

    await client.close()

    assert subscription.closed
    assert subscription.pending == (0, 0)
    assert [msg async for msg in subscription] == []


@pytest.mark.asyncio
async def test_client_drain_closes_after_flushing(client, server):
    """Test that draining the client unsubscribes everything and ends CLOSED."""
    subscription = await client.subscribe("drain.all")
    await client.flush()
    await client.publish("drain.all", b"last")
    await client.flush()

    await client.drain(timeout=1.0)

    assert client.state == ClientState.CLOSED
    assert server.ops("UNSUB") == [str(subscription.sid)]
    with pytest.raises(ConnectionClosedError):
        await client.publish("drain.all", b"too late")


@pytest.mark.asyncio
async def test_next_times_out(client):
    """Test that next raises TimeoutError when no message arrives."""
    subscription = await client.subscribe("quiet")
    with pytest.raises(asyncio.TimeoutError):
        await subscription.next(timeout=0.05)
