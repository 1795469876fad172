"""
Tests for the event emitter and the observable contract
"""

import asyncio

import pytest

from unification.events import Emitting, EventEmitter, ListenerHandle, Observable, maybe_await


def test_subscribe_returns_handle_and_emit_delivers():
    """Test subscribe returns a handle and emit reaches the handler"""
    emitter = EventEmitter()
    received = []

    handle = emitter.subscribe("task:complete", received.append)

    assert isinstance(handle, ListenerHandle)
    assert emitter.emit("task:complete", {"id": 1}) == 1
    assert received == [{"id": 1}]


def test_unsubscribe_detaches_exactly_once():
    """Test unsubscribe removes the listener and reports a second attempt"""
    emitter = EventEmitter()
    received = []
    handle = emitter.subscribe("ping", received.append)

    assert emitter.unsubscribe(handle) is True
    assert emitter.unsubscribe(handle) is False
    assert emitter.emit("ping", 1) == 0
    assert emitter.listener_count() == 0


def test_same_handler_twice_gets_distinct_handles():
    """Test the same callable can be attached twice and removed one at a time"""
    emitter = EventEmitter()
    received = []
    first = emitter.subscribe("ping", received.append)
    emitter.subscribe("ping", received.append)

    emitter.unsubscribe(first)
    emitter.emit("ping", "x")

    assert received == ["x"]
    assert emitter.listener_count("ping") == 1


def test_wildcard_pattern():
    """Test fnmatch patterns match canonical event names"""
    emitter = EventEmitter()
    received = []
    emitter.subscribe("unified:sysA:*", received.append)

    emitter.emit("unified:sysA:ping", 1)
    emitter.emit("unified:sysB:ping", 2)

    assert received == [1]


def test_failing_listener_does_not_stop_others():
    """Test a raising listener is logged and delivery continues"""
    emitter = EventEmitter()
    received = []

    def broken(payload):
        raise ValueError("boom")

    emitter.subscribe("evt", broken)
    emitter.subscribe("evt", received.append)

    assert emitter.emit("evt", "payload") == 1
    assert received == ["payload"]


@pytest.mark.asyncio
async def test_async_listener_is_scheduled():
    """Test coroutine listeners run on the running loop"""
    emitter = EventEmitter()
    received = []

    async def handler(payload):
        received.append(payload)

    emitter.subscribe("evt", handler)
    emitter.emit("evt", 42)
    await asyncio.sleep(0)

    assert received == [42]


def test_async_listener_without_loop_is_dropped():
    """Test coroutine listeners are dropped when no loop is running"""
    emitter = EventEmitter()
    received = []

    async def handler(payload):
        received.append(payload)

    emitter.subscribe("evt", handler)
    emitter.emit("evt", 42)

    assert received == []


def test_remove_all_listeners():
    """Test every listener can be removed at once"""
    emitter = EventEmitter()
    emitter.subscribe("a", print)
    emitter.subscribe("b", print)

    emitter.remove_all_listeners()

    assert emitter.listener_count() == 0


def test_emitter_satisfies_contracts():
    """Test the emitter is observable and can re-emit"""
    emitter = EventEmitter()
    assert isinstance(emitter, Observable)
    assert isinstance(emitter, Emitting)
    assert not isinstance(object(), Observable)


@pytest.mark.asyncio
async def test_maybe_await():
    """Test maybe_await handles plain values and awaitables"""
    async def value():
        return "async"

    assert await maybe_await("plain") == "plain"
    assert await maybe_await(value()) == "async"
