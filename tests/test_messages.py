"""Test suite for message append and live delivery."""

import asyncio

import pytest

from pair_chat.domain.errors import ErrorCode
from pair_chat.domain.models import CONVERSATIONS, messages_collection
from pair_chat.services.messages import MessageStore, MonotonicClock


async def _conversation(resolver, register) -> str:
    await register()
    result = await resolver.resolve("u1", "u2")
    return result.data


@pytest.mark.asyncio
async def test_append_persists_message(store, messages, resolver, register):
    """Test append writes the documented field layout."""
    conversation_id = await _conversation(resolver, register)

    result = await messages.append(conversation_id, "u1", "  hi  ")

    assert result.success
    message = result.data
    assert message.id
    assert message.body == "hi"
    doc = await store.get(messages_collection(conversation_id), message.id)
    assert set(doc.data) == {"senderId", "message", "timestamp"}
    assert doc.data["senderId"] == "u1"
    assert doc.data["message"] == "hi"


@pytest.mark.asyncio
@pytest.mark.parametrize("body", ["", "   ", "\n\t"])
async def test_blank_message_rejected(store, messages, resolver, register, body):
    """Test blank bodies are rejected without a write."""
    conversation_id = await _conversation(resolver, register)

    result = await messages.append(conversation_id, "u1", body)

    assert result.error_code == ErrorCode.EMPTY_MESSAGE
    assert store.count(messages_collection(conversation_id)) == 0


@pytest.mark.asyncio
async def test_append_by_outsider_rejected(store, messages, resolver, register):
    """Test only participants can post."""
    conversation_id = await _conversation(resolver, register)

    result = await messages.append(conversation_id, "u3", "let me in")

    assert result.error_code == ErrorCode.NOT_A_PARTICIPANT
    assert store.count(messages_collection(conversation_id)) == 0


@pytest.mark.asyncio
async def test_append_to_missing_conversation(messages):
    """Test appending to an unknown conversation fails."""
    result = await messages.append("nope", "u1", "hello")
    assert result.error_code == ErrorCode.CONVERSATION_NOT_FOUND


@pytest.mark.asyncio
async def test_append_write_failure(store, messages, resolver, register):
    """Test a failed store write surfaces as STORE_WRITE_FAILED."""
    conversation_id = await _conversation(resolver, register)
    store.fail_writes = True

    result = await messages.append(conversation_id, "u1", "hello")

    assert result.error_code == ErrorCode.STORE_WRITE_FAILED


def test_clock_never_goes_backwards():
    """Test stamps never drop below the sender's or the conversation's last stamp."""
    clock = MonotonicClock(source=iter([100, 90, 80, 95, 120]).__next__)

    assert clock.stamp("c1", "u1") == 100
    assert clock.stamp("c1", "u1") == 100
    assert clock.stamp("c2", "u2") == 80
    assert clock.stamp("c1", "u2") == 100
    assert clock.stamp("c2", "u3") == 120


@pytest.mark.asyncio
async def test_subscribe_orders_by_timestamp(store, resolver, register, eventually):
    """Test existing messages arrive in timestamp order, not write order."""
    conversation_id = await _conversation(resolver, register)
    collection = messages_collection(conversation_id)
    for sender, body, timestamp in (("u1", "first", 10), ("u2", "second", 20), ("u1", "third", 15)):
        await store.add(collection, {"senderId": sender, "message": body, "timestamp": timestamp})
    messages = MessageStore(store)

    received = []
    subscription = (await messages.subscribe(conversation_id, on_message=received.append)).data
    await eventually(lambda: len(received) == 3)

    assert [m.timestamp for m in received] == [10, 15, 20]
    assert [m.body for m in received] == ["first", "third", "second"]
    subscription.close()


@pytest.mark.asyncio
async def test_live_and_late_subscribers_agree(store, resolver, register, eventually):
    """Test a subscriber present during appends sees the same order as a later one."""
    conversation_id = await _conversation(resolver, register)
    messages = MessageStore(store, MonotonicClock(source=iter([10, 20, 15]).__next__))
    live = []
    live_subscription = (await messages.subscribe(conversation_id, on_message=live.append)).data

    await messages.append(conversation_id, "u1", "first")
    await messages.append(conversation_id, "u2", "second")
    await messages.append(conversation_id, "u1", "third")
    await eventually(lambda: len(live) == 3)

    late = []
    late_subscription = (await messages.subscribe(conversation_id, on_message=late.append)).data
    await eventually(lambda: len(late) == 3)

    assert [m.id for m in live] == [m.id for m in late]
    assert [m.body for m in live] == ["first", "second", "third"]
    timestamps = [m.timestamp for m in live]
    assert timestamps == sorted(timestamps) == [10, 20, 20]
    live_subscription.close()
    late_subscription.close()


@pytest.mark.asyncio
async def test_equal_timestamps_keep_insertion_order(store, resolver, register, eventually):
    """Test ties are broken by insertion order."""
    conversation_id = await _conversation(resolver, register)
    messages = MessageStore(store, MonotonicClock(source=lambda: 5))
    for body in ["a", "b", "c"]:
        await messages.append(conversation_id, "u1", body)

    received = []
    subscription = (await messages.subscribe(conversation_id, on_message=received.append)).data
    await eventually(lambda: len(received) == 3)

    assert [m.body for m in received] == ["a", "b", "c"]
    subscription.close()


@pytest.mark.asyncio
async def test_live_messages_follow_snapshot(messages, resolver, register, eventually):
    """Test messages appended after subscribing arrive once, in order."""
    conversation_id = await _conversation(resolver, register)
    await messages.append(conversation_id, "u1", "before")

    received = []
    subscription = (await messages.subscribe(conversation_id, on_message=received.append)).data
    await eventually(lambda: len(received) == 1)

    await messages.append(conversation_id, "u2", "after 1")
    await messages.append(conversation_id, "u1", "after 2")
    await eventually(lambda: len(received) == 3)

    assert [m.body for m in received] == ["before", "after 1", "after 2"]
    assert received[1].sender_id == "u2"
    assert received[1].conversation_id == conversation_id
    subscription.close()


@pytest.mark.asyncio
async def test_no_delivery_after_close(messages, resolver, register, eventually):
    """Test a torn-down subscription receives nothing further."""
    conversation_id = await _conversation(resolver, register)
    received = []
    subscription = (await messages.subscribe(conversation_id, on_message=received.append)).data

    await messages.append(conversation_id, "u1", "one")
    await eventually(lambda: len(received) == 1)

    subscription.close()
    subscription.close()
    await messages.append(conversation_id, "u1", "two")
    await asyncio.sleep(0.05)

    assert [m.body for m in received] == ["one"]
    assert subscription.closed
    assert subscription.error is None


@pytest.mark.asyncio
async def test_close_from_inside_callback(messages, resolver, register, eventually):
    """Test closing during delivery stops the remaining deliveries."""
    conversation_id = await _conversation(resolver, register)
    for body in ["a", "b", "c"]:
        await messages.append(conversation_id, "u1", body)

    received = []
    holder = {}

    def on_message(message):
        received.append(message)
        holder["subscription"].close()

    holder["subscription"] = (
        await messages.subscribe(conversation_id, on_message=on_message)
    ).data
    await eventually(lambda: holder["subscription"].closed)
    await holder["subscription"].wait_closed()

    assert [m.body for m in received] == ["a"]


@pytest.mark.asyncio
async def test_async_callback_is_awaited(messages, resolver, register, eventually):
    """Test coroutine callbacks are supported."""
    conversation_id = await _conversation(resolver, register)
    received = []

    async def on_message(message):
        await asyncio.sleep(0)
        received.append(message.body)

    subscription = (await messages.subscribe(conversation_id, on_message=on_message)).data
    await messages.append(conversation_id, "u2", "hey")
    await eventually(lambda: received == ["hey"])
    subscription.close()


@pytest.mark.asyncio
async def test_updates_and_removals_are_ignored(store, messages, resolver, register, eventually):
    """Test only additions reach subscribers."""
    conversation_id = await _conversation(resolver, register)
    sent = (await messages.append(conversation_id, "u1", "original")).data

    received = []
    subscription = (await messages.subscribe(conversation_id, on_message=received.append)).data
    await eventually(lambda: len(received) == 1)

    await store.set(
        messages_collection(conversation_id),
        sent.id,
        {"senderId": "u1", "message": "edited", "timestamp": sent.timestamp},
    )
    await messages.append(conversation_id, "u2", "reply")
    await eventually(lambda: len(received) == 2)

    assert [m.body for m in received] == ["original", "reply"]
    subscription.close()


@pytest.mark.asyncio
async def test_store_error_ends_subscription(store, messages, resolver, register, eventually):
    """Test a store-reported error surfaces as SUBSCRIPTION_ERROR."""
    conversation_id = await _conversation(resolver, register)
    errors = []
    subscription = (
        await messages.subscribe(conversation_id, on_message=lambda m: None, on_error=errors.append)
    ).data

    await store.close()
    await eventually(lambda: subscription.closed)
    await subscription.wait_closed()

    assert subscription.error is not None
    assert subscription.error.code == ErrorCode.SUBSCRIPTION_ERROR
    assert [e.code for e in errors] == [ErrorCode.SUBSCRIPTION_ERROR]


@pytest.mark.asyncio
async def test_iterate_messages(messages, resolver, register):
    """Test the buffered async iteration interface."""
    conversation_id = await _conversation(resolver, register)
    await messages.append(conversation_id, "u1", "one")
    subscription = (await messages.subscribe(conversation_id)).data

    seen = []
    async for message in subscription.messages():
        seen.append(message.body)
        if len(seen) == 1:
            await messages.append(conversation_id, "u2", "two")
        else:
            subscription.close()

    assert seen == ["one", "two"]
    assert subscription.error is None


@pytest.mark.asyncio
async def test_subscribe_on_closed_store(store, messages):
    """Test opening a subscription on a failed store is reported."""
    await store.close()
    result = await messages.subscribe("any")
    assert result.error_code == ErrorCode.SUBSCRIPTION_ERROR


@pytest.mark.asyncio
async def test_history_is_ordered(store, resolver, register):
    """Test one-shot history uses delivery order."""
    conversation_id = await _conversation(resolver, register)
    collection = messages_collection(conversation_id)
    for sender, body, timestamp in (("u1", "c", 30), ("u2", "a", 10), ("u2", "b", 20)):
        await store.add(collection, {"senderId": sender, "message": body, "timestamp": timestamp})
    messages = MessageStore(store)

    history = await messages.history(conversation_id)

    assert [m.body for m in history.data] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_malformed_conversation_is_reported(store, messages, register):
    """Test a conversation document that is not a valid pair fails the lookup."""
    await register()
    conversation_id = await store.add(CONVERSATIONS, {"participants": ["u1", "u2", "u3"]})

    result = await messages.append(conversation_id, "u1", "hello")

    assert result.error_code == ErrorCode.LOOKUP_FAILED
    assert store.count(messages_collection(conversation_id)) == 0
    assert (await messages.conversation(conversation_id)).error_code == ErrorCode.LOOKUP_FAILED
