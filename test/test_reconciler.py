import asyncio
import json
from datetime import timedelta

import pytest

from conftest import settle
from tableside.errors import ErrorKind, RemoteError
from tableside.models import (
    ChangeType,
    EntityType,
    NotificationType,
    Order,
    OrderStatus,
    SessionStatus,
    TableStatus,
    utcnow,
)
from tableside.reconciler import ChangeEvent, ChangeFeedReconciler


def notification_insert(notification_id, table_id, notification_type="bill_request", status="pending"):
    return ChangeEvent(
        table=EntityType.notifications,
        event_type=ChangeType.insert,
        new={
            "id": notification_id,
            "table_id": table_id,
            "type": notification_type,
            "status": status,
            "created_at": "2026-10-17T12:00:00Z",
        },
    )


def test_change_event_parses_json_payload():
    payload = json.dumps({"eventType": "UPDATE", "new": {"id": 5, "status": "producing"}, "old": {"id": 5}})

    event = ChangeEvent.from_payload("tables", payload.encode())

    assert event.table == EntityType.tables
    assert event.event_type == ChangeType.update
    assert event.entity_id == "5"


def test_change_event_delete_uses_old_record():
    event = ChangeEvent.from_payload("table_notifications", {"type": "DELETE", "new": {}, "old": {"id": "n1"}})

    assert event.new is None
    assert event.entity_id == "n1"


@pytest.mark.anyio
async def test_refetch_all_loads_every_collection(reconciler, cache, gateway, state):
    table = gateway.add_table(2, status=TableStatus.occupied, guests=2)
    session = gateway.add_session(table.id)
    gateway.orders.append(Order(id="o1", table_id=table.id, status=OrderStatus.delivered, total=12.5))
    gateway.add_notification(table.id, NotificationType.waiter_call)

    await reconciler.refetch_all()

    assert cache.get(EntityType.tables, table.id).session_start == session.start_time
    assert [s.id for s in cache.all(EntityType.sessions)] == [session.id]
    assert [o.id for o in cache.all(EntityType.orders)] == ["o1"]
    assert len(cache.all(EntityType.notifications)) == 1
    assert state.has_alert(table.id)
    for entity_type in EntityType:
        assert not cache.is_stale(entity_type)


@pytest.mark.anyio
async def test_table_update_refetches_and_is_idempotent(reconciler, cache, gateway):
    table = gateway.add_table(3)
    await reconciler.refetch_all()
    gateway.tables[table.id] = table.model_copy(update={"status": TableStatus.delivered, "guests": 4})
    event = ChangeEvent(EntityType.tables, ChangeType.update, new={"id": table.id})

    await reconciler.handle(event)
    once = cache.all(EntityType.tables)
    await reconciler.handle(event)

    assert cache.get(EntityType.tables, table.id).status == TableStatus.delivered
    assert cache.all(EntityType.tables) == once


@pytest.mark.anyio
async def test_table_delete_and_vanished_table_are_removed(reconciler, cache, gateway):
    a = gateway.add_table(1)
    b = gateway.add_table(2)
    await reconciler.refetch_all()

    await reconciler.handle(ChangeEvent(EntityType.tables, ChangeType.delete, old={"id": a.id}))
    del gateway.tables[b.id]
    await reconciler.handle(ChangeEvent(EntityType.tables, ChangeType.update, new={"id": b.id}))

    assert cache.all(EntityType.tables) == []


@pytest.mark.anyio
async def test_session_events_keep_session_start_in_sync(reconciler, cache, gateway):
    table = gateway.add_table(4, status=TableStatus.occupied)
    await reconciler.refetch_all()
    session = gateway.add_session(table.id, utcnow() - timedelta(minutes=20))

    await reconciler.handle(ChangeEvent(
        EntityType.sessions, ChangeType.insert, new={"id": session.id, "table_id": table.id}
    ))

    assert cache.get(EntityType.tables, table.id).session_start == session.start_time

    gateway.sessions[session.id] = session.model_copy(update={"status": SessionStatus.closed, "end_time": utcnow()})
    await reconciler.handle(ChangeEvent(
        EntityType.sessions, ChangeType.update, new={"id": session.id, "table_id": table.id}
    ))

    assert cache.get(EntityType.tables, table.id).session_start is None


@pytest.mark.anyio
async def test_table_order_event_reloads_that_tables_orders(reconciler, cache, gateway):
    a = gateway.add_table(1)
    b = gateway.add_table(2)
    gateway.orders.append(Order(id="o-b", table_id=b.id))
    await reconciler.refetch_all()
    gateway.orders.append(Order(id="o-a", table_id=a.id))
    gateway.orders.append(Order(id="o-b2", table_id=b.id))

    await reconciler.handle(ChangeEvent(EntityType.orders, ChangeType.insert, new={"id": 1, "table_id": a.id}))

    assert {o.id for o in cache.all(EntityType.orders)} == {"o-b", "o-a"}


@pytest.mark.anyio
async def test_bill_request_insert_adds_message_and_alert(reconciler, cache, gateway, state, announced):
    table = gateway.add_table(12)
    await reconciler.refetch_all()

    await reconciler.handle(notification_insert("n1", table.id))

    [notification] = cache.all(EntityType.notifications)
    assert notification.type == NotificationType.bill_request
    assert "Table 12" in notification.message
    assert state.has_alert(table.id)
    assert announced == [notification]


@pytest.mark.anyio
async def test_repeated_notification_insert_is_idempotent(reconciler, cache, gateway, announced):
    table = gateway.add_table(12)
    await reconciler.refetch_all()
    event = notification_insert("n1", table.id)

    await reconciler.handle(event)
    once = cache.all(EntityType.notifications)
    await reconciler.handle(event)

    assert cache.all(EntityType.notifications) == once
    assert len(announced) == 1


@pytest.mark.anyio
async def test_dismissed_notification_stays_dismissed(reconciler, coordinator, cache, gateway, state, announced):
    table = gateway.add_table(12)
    notification = gateway.add_notification(table.id, NotificationType.bill_request)
    await reconciler.refetch_all()

    coordinator.dismiss_notification(notification.id)
    await reconciler.refetch_all()
    await reconciler.handle(notification_insert(notification.id, table.id))

    assert cache.get(EntityType.notifications, notification.id).dismissed
    assert not state.has_alert(table.id)
    assert announced == []


@pytest.mark.anyio
async def test_resolved_update_removes_notification_and_alert(reconciler, cache, gateway, state):
    table = gateway.add_table(12)
    await reconciler.refetch_all()
    await reconciler.handle(notification_insert("n1", table.id))

    resolved = notification_insert("n1", table.id, status="resolved")
    await reconciler.handle(ChangeEvent(EntityType.notifications, ChangeType.update, new=resolved.new))

    assert cache.all(EntityType.notifications) == []
    assert not state.has_alert(table.id)


@pytest.mark.anyio
async def test_worker_applies_events_of_one_type_in_arrival_order(reconciler, cache, gateway):
    table = gateway.add_table(12)
    await reconciler.refetch_all()
    reconciler.start(listen=False, poll=False)
    try:
        reconciler.publish(notification_insert("n1", table.id))
        reconciler.publish(ChangeEvent(EntityType.notifications, ChangeType.delete, old={"id": "n1"}))
        reconciler.publish(notification_insert("n2", table.id, "waiter_call"))
        await reconciler.drain()
    finally:
        await reconciler.stop()

    assert [n.id for n in cache.all(EntityType.notifications)] == ["n2"]


@pytest.mark.anyio
async def test_worker_reports_expired_credentials(reconciler, gateway, auth_errors):
    table = gateway.add_table(1)
    gateway.fail("get_table", ErrorKind.auth_expired)
    reconciler.start(listen=False, poll=False)
    try:
        reconciler.publish(ChangeEvent(EntityType.tables, ChangeType.update, new={"id": table.id}))
        await reconciler.drain()
    finally:
        await reconciler.stop()

    assert auth_errors == ["auth"]


@pytest.mark.anyio
async def test_notification_for_uncached_table_reports_expired_credentials(
    reconciler, cache, gateway, state, auth_errors
):
    table = gateway.add_table(12)
    gateway.fail("get_table", ErrorKind.auth_expired)
    reconciler.start(listen=False, poll=False)
    try:
        reconciler.publish(notification_insert("n1", table.id))
        await reconciler.drain()
    finally:
        await reconciler.stop()

    assert auth_errors == ["auth"]
    assert cache.all(EntityType.notifications) == []
    assert not state.has_alert(table.id)


@pytest.mark.anyio
async def test_notification_is_not_cached_without_its_table_number(reconciler, cache, gateway):
    table = gateway.add_table(12)
    gateway.fail("get_table", ErrorKind.network)

    with pytest.raises(RemoteError):
        await reconciler.handle(notification_insert("n1", table.id))
    assert cache.all(EntityType.notifications) == []

    await reconciler.handle(notification_insert("n1", table.id))
    assert cache.get(EntityType.notifications, "n1").message == "Table 12 requested the bill"


@pytest.mark.anyio
async def test_notification_for_removed_table_is_ignored(reconciler, cache):
    await reconciler.handle(notification_insert("n1", "table-gone"))

    assert cache.all(EntityType.notifications) == []


@pytest.mark.anyio
async def test_paused_reconciler_leaves_the_cache_alone(reconciler, cache, gateway, state, announced):
    table = gateway.add_table(12)
    gateway.add_notification(table.id, NotificationType.waiter_call)
    reconciler.pause()

    await reconciler.handle(notification_insert("n1", table.id))
    await reconciler.handle(ChangeEvent(EntityType.tables, ChangeType.update, new={"id": table.id}))
    await reconciler.refetch_all()

    assert cache.all(EntityType.tables) == []
    assert cache.all(EntityType.notifications) == []
    assert not state.has_alert(table.id)
    assert announced == []
    assert gateway.calls == []

    reconciler.resume()
    await reconciler.refetch_all()
    assert [t.id for t in cache.all(EntityType.tables)] == [table.id]


@pytest.mark.anyio
async def test_pause_during_a_refetch_discards_its_results(reconciler, cache, gateway):
    gateway.add_table(12)
    release = gateway.hold("list_tables")

    refetch = asyncio.create_task(reconciler.refetch_all())
    await settle()
    reconciler.pause()
    release.set()
    await refetch

    assert cache.all(EntityType.tables) == []


@pytest.mark.anyio
async def test_refetch_keeps_optimistic_state_of_busy_tables(reconciler, coordinator, cache, gateway):
    table = gateway.add_table(5)
    other = gateway.add_table(6)
    await reconciler.refetch_all()
    gate = gateway.hold("update_table_status")

    task = asyncio.create_task(coordinator.change_table_status(table.id, TableStatus.producing))
    await settle()
    gateway.tables[other.id] = other.model_copy(update={"status": TableStatus.paid})
    await reconciler.refetch_all()

    assert cache.get(EntityType.tables, table.id).status == TableStatus.producing
    assert cache.get(EntityType.tables, other.id).status == TableStatus.paid

    gate.set()
    assert (await task).ok
    assert cache.get(EntityType.tables, table.id).status == TableStatus.producing


class FakePubSub:
    def __init__(self, messages, fail=False):
        self.messages = messages
        self.fail = fail
        self.channels = []
        self.closed = False

    async def subscribe(self, *channels):
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.channels.extend(channels)

    async def listen(self):
        for message in self.messages:
            yield message
        await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


class FakeRedis:
    def __init__(self, pubsub):
        self._pubsub = pubsub

    def pubsub(self):
        return self._pubsub

    async def aclose(self):
        pass


@pytest.mark.anyio
async def test_listen_feeds_pubsub_messages_into_the_cache(cache, gateway, state, config, coordinator):
    table = gateway.add_table(12)
    messages = [
        {"type": "subscribe", "channel": b"realtime:table_notifications", "data": 1},
        {"type": "message", "channel": b"realtime:table_notifications", "data": b"not json"},
        {
            "type": "message",
            "channel": b"realtime:table_notifications",
            "data": json.dumps({
                "eventType": "INSERT",
                "new": {"id": "n1", "table_id": table.id, "type": "waiter_call", "status": "pending"},
            }).encode(),
        },
    ]
    pubsub = FakePubSub(messages)
    reconciler = ChangeFeedReconciler(
        cache, gateway, state, config=config,
        lock_for=coordinator.lock_for, busy=coordinator.busy,
        redis_factory=lambda: FakeRedis(pubsub),
    )
    reconciler.start(listen=True, poll=False)
    try:
        for _ in range(100):
            if cache.get(EntityType.notifications, "n1") is not None:
                break
            await asyncio.sleep(0.01)
        assert reconciler.connected
    finally:
        await reconciler.stop()

    assert "realtime:tables" in pubsub.channels
    assert "Table 12" in cache.get(EntityType.notifications, "n1").message


@pytest.mark.anyio
async def test_lost_feed_triggers_refetch_and_resubscribe(cache, gateway, state, config):
    gateway.add_table(1)
    attempts = []

    def factory():
        attempts.append(1)
        return FakeRedis(FakePubSub([], fail=True))

    reconciler = ChangeFeedReconciler(cache, gateway, state, config=config, redis_factory=factory)
    reconciler.start(listen=True, poll=False)
    try:
        for _ in range(100):
            if len(attempts) >= 2 and cache.ids(EntityType.tables):
                break
            await asyncio.sleep(0.01)
    finally:
        await reconciler.stop()

    assert len(attempts) >= 2
    assert not reconciler.connected
    assert len(cache.ids(EntityType.tables)) == 1
