"""Tests for the change feed, its subscriptions and the Redis relay."""

import asyncio
import json
import threading

import pytest
import redis

from encore_stage.core.settings import settings
from encore_stage.services.errors import FeedUnavailableError
from encore_stage.services.feed import ChangeEvent, ChangeFeed, RedisChangeFeed


def _event(collection_id=1, subject_id=10, sequence_number=1, upvotes=1, downvotes=0):
    return ChangeEvent(
        collection_id=collection_id,
        subject_id=subject_id,
        upvotes=upvotes,
        downvotes=downvotes,
        net_score=upvotes - downvotes,
        sequence_number=sequence_number,
    )


def test_events_only_reach_matching_setlist(feed: ChangeFeed) -> None:
    first, second = [], []
    feed.subscribe(1, first.append)
    feed.subscribe(2, second.append)

    feed.publish(_event(collection_id=1))
    feed.publish(_event(collection_id=2, subject_id=20))
    feed.publish(_event(collection_id=3, subject_id=30))
    assert feed.drain(timeout=5)

    assert [event.subject_id for event in first] == [10]
    assert [event.subject_id for event in second] == [20]


def test_stale_and_duplicate_events_are_discarded(feed: ChangeFeed) -> None:
    received = []
    subscription = feed.subscribe(1, received.append)

    assert subscription.deliver(_event(sequence_number=3))
    assert not subscription.deliver(_event(sequence_number=2))
    assert not subscription.deliver(_event(sequence_number=3))
    assert subscription.deliver(_event(sequence_number=4))
    # Sequence numbers are tracked per song.
    assert subscription.deliver(_event(subject_id=11, sequence_number=1))

    assert [(event.subject_id, event.sequence_number) for event in received] == [
        (10, 3),
        (10, 4),
        (11, 1),
    ]
    assert subscription.last_sequence(10) == 4
    assert subscription.last_sequence(99) is None


def test_close_is_idempotent_and_stops_delivery(feed: ChangeFeed) -> None:
    received = []
    subscription = feed.subscribe(1, received.append)
    assert feed.subscriber_count(1) == 1

    subscription.close()
    subscription.close()

    assert subscription.closed
    assert feed.subscriber_count(1) == 0
    assert not subscription.deliver(_event())
    feed.publish(_event())
    assert feed.drain(timeout=5)
    assert received == []


def test_subscription_as_context_manager(feed: ChangeFeed) -> None:
    with feed.subscribe(5, lambda event: None) as subscription:
        assert feed.subscriber_count(5) == 1
    assert subscription.closed
    assert feed.subscriber_count(5) == 0


def test_failing_handler_does_not_affect_others(feed: ChangeFeed, caplog) -> None:
    received = []

    def _explode(event):
        raise RuntimeError("subscriber bug")

    feed.subscribe(1, _explode)
    feed.subscribe(1, received.append)

    feed.publish(_event())
    assert feed.drain(timeout=5)

    assert len(received) == 1
    assert "Change feed handler failed" in caplog.text


def test_failed_handler_does_not_mark_event_seen(feed: ChangeFeed) -> None:
    attempts = []

    def _flaky(event):
        attempts.append(event.sequence_number)
        if len(attempts) == 1:
            raise RuntimeError("first delivery fails")

    subscription = feed.subscribe(1, _flaky)
    with pytest.raises(RuntimeError):
        subscription.deliver(_event(sequence_number=1))

    assert subscription.deliver(_event(sequence_number=1))
    assert attempts == [1, 1]


def test_publish_does_not_wait_for_slow_handlers(feed: ChangeFeed) -> None:
    release = threading.Event()
    feed.subscribe(1, lambda event: release.wait(5))

    feed.publish(_event())

    assert not feed.drain(timeout=0.05)
    release.set()
    assert feed.drain(timeout=5)


def test_stalled_subscriber_does_not_starve_other_setlists() -> None:
    change_feed = ChangeFeed(max_workers=4)
    release = threading.Event()
    delivered = threading.Event()
    stalled = []
    change_feed.subscribe(1, lambda event: (stalled.append(event), release.wait(10)))
    change_feed.subscribe(2, lambda event: delivered.set())

    try:
        for sequence in range(1, 6):
            change_feed.publish(_event(collection_id=1, sequence_number=sequence))
        change_feed.publish(_event(collection_id=2, subject_id=20))

        assert delivered.wait(2)
    finally:
        release.set()
        assert change_feed.drain(timeout=5)
        change_feed.close()

    assert [event.sequence_number for event in stalled] == [1, 2, 3, 4, 5]


def test_full_inbox_drops_oldest_events(caplog) -> None:
    change_feed = ChangeFeed(max_workers=2, inbox_size=2)
    started = threading.Event()
    release = threading.Event()
    received = []

    def _slow(event):
        received.append(event.sequence_number)
        started.set()
        release.wait(5)

    subscription = change_feed.subscribe(1, _slow)
    try:
        change_feed.publish(_event(sequence_number=1))
        assert started.wait(2)
        for sequence in range(2, 6):
            change_feed.publish(_event(sequence_number=sequence))
        assert subscription.pending() == 2
    finally:
        release.set()
        assert change_feed.drain(timeout=5)
        change_feed.close()

    assert received == [1, 4, 5]
    assert "is full; dropping event for song 10 (seq 2)" in caplog.text


def test_closed_feed_rejects_publish_and_subscribe() -> None:
    change_feed = ChangeFeed(max_workers=1)
    subscription = change_feed.subscribe(1, lambda event: None)

    change_feed.close()
    change_feed.close()

    assert subscription.closed
    with pytest.raises(FeedUnavailableError):
        change_feed.publish(_event())
    with pytest.raises(FeedUnavailableError):
        change_feed.subscribe(1, lambda event: None)


def test_change_event_wire_format() -> None:
    event = _event(collection_id=4, subject_id=8, sequence_number=15, upvotes=3, downvotes=1)
    payload = json.loads(json.dumps(event.to_dict()))
    assert payload["net_score"] == 2
    assert ChangeEvent.from_dict(payload) == event
    with pytest.raises(KeyError):
        ChangeEvent.from_dict({"collection_id": 1})


@pytest.mark.asyncio
async def test_event_stream_bridges_to_asyncio(feed: ChangeFeed) -> None:
    stream = feed.open_stream(1, maxsize=8)

    feed.publish(_event(sequence_number=1))
    feed.publish(_event(sequence_number=2, upvotes=2))

    first = await stream.get(timeout=5)
    second = await stream.get(timeout=5)
    assert (first.sequence_number, second.sequence_number) == (1, 2)
    assert await stream.get(timeout=0.05) is None

    stream.close()
    stream.close()
    assert feed.subscriber_count(1) == 0
    assert await stream.get(timeout=0.05) is None


@pytest.mark.asyncio
async def test_event_stream_drops_oldest_when_full(feed: ChangeFeed) -> None:
    loop = asyncio.get_running_loop()
    stream = feed.open_stream(1, loop=loop, maxsize=2)

    for sequence_number in (1, 2, 3):
        stream._offer(_event(sequence_number=sequence_number))

    events = [await stream.get(timeout=1), await stream.get(timeout=1)]
    assert [event.sequence_number for event in events] == [2, 3]
    stream.close()


@pytest.mark.asyncio
async def test_event_stream_iteration_ends_on_close(feed: ChangeFeed) -> None:
    stream = feed.open_stream(1, maxsize=4)
    stream._offer(_event(sequence_number=1))
    stream.close()

    collected = [event.sequence_number async for event in stream]

    assert collected == [1]


@pytest.fixture()
def redis_client(mocker):
    client = mocker.MagicMock(spec=redis.Redis)
    pubsub = client.pubsub.return_value
    pubsub.run_in_thread.return_value = mocker.MagicMock()
    return client


def test_redis_feed_subscribes_to_setlist_channels(redis_client) -> None:
    relay = RedisChangeFeed(redis_client, channel_prefix="test", max_workers=1)
    try:
        pubsub = redis_client.pubsub.return_value
        redis_client.pubsub.assert_called_once_with(ignore_subscribe_messages=True)
        [pattern] = pubsub.psubscribe.call_args.kwargs
        assert pattern == "test:collection:*"
        pubsub.run_in_thread.assert_called_once()
        assert relay.channel_for(9) == "test:collection:9"
    finally:
        relay.close()
    pubsub.run_in_thread.return_value.stop.assert_called_once()
    pubsub.close.assert_called_once()


def test_redis_feed_publishes_json(redis_client) -> None:
    relay = RedisChangeFeed(redis_client, channel_prefix="test", max_workers=1)
    try:
        relay.publish(_event(collection_id=3, sequence_number=7))
        channel, payload = redis_client.publish.call_args.args
        assert channel == "test:collection:3"
        assert json.loads(payload)["sequence_number"] == 7
    finally:
        relay.close()


def test_redis_publish_failure_is_unavailable(redis_client) -> None:
    redis_client.publish.side_effect = redis.ConnectionError("down")
    relay = RedisChangeFeed(redis_client, channel_prefix="test", max_workers=1)
    try:
        with pytest.raises(FeedUnavailableError):
            relay.publish(_event())
    finally:
        relay.close()


def test_redis_messages_reach_local_subscribers(redis_client, caplog) -> None:
    relay = RedisChangeFeed(redis_client, channel_prefix="test", max_workers=1)
    received = []
    relay.subscribe(3, received.append)
    try:
        relay._on_message(
            {
                "channel": b"test:collection:3",
                "data": json.dumps(_event(collection_id=3, sequence_number=2).to_dict()),
            }
        )
        relay._on_message({"channel": b"test:collection:3", "data": b"not json"})
        assert relay.drain(timeout=5)
    finally:
        relay.close()

    assert [event.sequence_number for event in received] == [2]
    assert "Ignoring malformed change event" in caplog.text


def test_redis_client_is_built_with_socket_timeouts(mocker) -> None:
    from_url = mocker.patch("encore_stage.services.feed.redis.Redis.from_url")
    from_url.return_value.pubsub.return_value.run_in_thread.return_value = mocker.MagicMock()
    mocker.patch.object(settings, "redis_socket_timeout_seconds", 0.5)
    mocker.patch.object(settings, "redis_connect_timeout_seconds", 0.25)

    relay = RedisChangeFeed(url="redis://cache:6379/2", channel_prefix="test", max_workers=1)
    relay.close()

    from_url.assert_called_once_with(
        "redis://cache:6379/2",
        socket_timeout=0.5,
        socket_connect_timeout=0.25,
    )


def test_redis_timeout_is_unavailable(redis_client) -> None:
    redis_client.publish.side_effect = redis.TimeoutError("Timeout reading from socket")
    relay = RedisChangeFeed(redis_client, channel_prefix="test", max_workers=1)
    try:
        with pytest.raises(FeedUnavailableError):
            relay.publish(_event())
    finally:
        relay.close()
