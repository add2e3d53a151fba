import asyncio

import pytest

from pymakr.store import ReactiveStore


def test_store_get_set():
    store = ReactiveStore(1)
    assert store.get() == 1
    store.set(2)
    assert store.get() == 2


def test_store_notifies_in_subscription_order():
    store = ReactiveStore(0)
    calls = []
    store.subscribe(lambda v: calls.append(("a", v)))
    store.subscribe(lambda v: calls.append(("b", v)))
    store.set(5)
    assert calls == [("a", 5), ("b", 5)]


def test_store_late_subscriber_doesnt_see_earlier_values():
    store = ReactiveStore("first")
    store.set("second")
    calls = []
    store.subscribe(calls.append)
    assert calls == []
    store.set("third")
    assert calls == ["third"]


def test_store_unsubscribe():
    store = ReactiveStore(0)
    calls = []
    unsubscribe = store.subscribe(calls.append)
    store.set(1)
    unsubscribe()
    unsubscribe()  # second call is harmless
    store.set(2)
    assert calls == [1]


def test_store_unsubscribe_during_notification():
    store = ReactiveStore(0)
    calls = []

    def once(value):
        calls.append(("once", value))
        unsubscribe_once()

    unsubscribe_once = store.subscribe(once)
    store.subscribe(lambda v: calls.append(("always", v)))

    store.set(1)
    store.set(2)
    assert calls == [("once", 1), ("always", 1), ("always", 2)]


def test_store_update():
    store = ReactiveStore((1,))
    store.update(lambda v: (*v, 2))
    assert store.get() == (1, 2)


@pytest.mark.asyncio
async def test_store_next():
    store = ReactiveStore(0)
    waiter = asyncio.ensure_future(store.next())
    await asyncio.sleep(0)
    store.set(7)
    assert await waiter == 7
    assert store._subscribers == []
