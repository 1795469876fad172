"""
Tests for the context broker
"""

import asyncio
import time

import pytest

from unification.adapters import MemoryAdapter
from unification.integration import ContextBroker
from unification.integration.broker import PendingHandoff

from tests.conftest import KeyValueMemory, StubMemory


@pytest.fixture
def broker(broker_settings):
    broker = ContextBroker(settings=broker_settings)
    broker.enable()
    yield broker
    broker.disable()


@pytest.mark.asyncio
async def test_disabled_broker_returns_none(broker_settings):
    """Test a disabled broker creates and resolves nothing"""
    broker = ContextBroker(settings=broker_settings)

    assert await broker.create_context("agentA", "task1") is None
    assert await broker.get_context("agentA", "task1") is None
    assert await broker.transfer_context("agentA", "agentB", "task1") is None
    assert broker.metrics["handoffs_failed"] == 1


@pytest.mark.asyncio
async def test_create_and_get_context(broker):
    """Test a created context is found again by agent and task"""
    created_events = []
    broker.subscribe("context:created", created_events.append)

    context = await broker.create_context("agentA", "task1", {"step": 1})
    found = await broker.get_context("agentA", "task1")

    assert found is context
    assert context.id.startswith("agentA:task1:")
    assert context.metadata.access_count == 1
    assert broker.is_active(context.id)
    assert len(broker.get_snapshots(context.id)) == 1
    assert created_events[0]["context_id"] == context.id


@pytest.mark.asyncio
async def test_get_context_creates_empty_on_miss(broker):
    """Test an unknown pair gets a fresh empty context"""
    context = await broker.get_context("agentA", "task9")

    assert context.data == {}
    assert broker.metrics["contexts_created"] == 1
    assert broker.metrics["contexts_preserved"] == 0


@pytest.mark.asyncio
async def test_get_context_materializes_from_memory(broker):
    """Test a context stored in the primary memory is materialized"""
    memory = StubMemory({"context:agentX:task1": {"k": "v"}})
    broker.register_memory_system("main", memory, primary=True)

    context = await broker.get_context("agentX", "task1")

    assert context.data == {"k": "v"}
    assert broker.metrics["contexts_preserved"] == 1
    assert broker.metrics["memory_reads"] == 1
    assert broker.metrics["contexts_created"] == 0
    assert memory.data == {"context:agentX:task1": {"k": "v"}}


@pytest.mark.asyncio
async def test_memory_read_failure_falls_back_to_empty(broker):
    """Test a failing memory read is logged and a new context is created"""
    class BrokenMemory:
        def get(self, key):
            raise ConnectionError("memory offline")

        def set(self, key, value):
            pass

    broker.register_memory_system("main", BrokenMemory())

    context = await broker.get_context("agentA", "task1")

    assert context.data == {}
    assert broker.metrics["errors"] == 1


@pytest.mark.asyncio
async def test_memory_adapter_as_primary(broker, memory_system):
    """Test a memory adapter can serve as the primary memory"""
    adapter = MemoryAdapter(memory_system)
    await adapter.store("context:agentA:task1", {"from": "adapter"})
    broker.register_memory_system("main", adapter)

    context = await broker.get_context("agentA", "task1")

    assert context.data == {"from": "adapter"}


def test_register_memory_system(broker):
    """Test the first or marked registration becomes primary"""
    assert broker.register_memory_system("stm", KeyValueMemory()) is True
    assert broker.primary_memory == "stm"
    assert broker.register_memory_system("main", KeyValueMemory(), primary=True) is True
    assert broker.primary_memory == "main"
    assert broker.register_memory_system("ghost", None) is False
    assert broker.get_memory_status("main") == {
        "name": "main",
        "primary": True,
        "healthy": True,
        "readable": True,
    }
    assert broker.get_memory_status("ghost") is None


@pytest.mark.asyncio
async def test_read_from_memory(broker):
    """Test direct reads go to the named memory system"""
    broker.register_memory_system("wm", KeyValueMemory({"k": "v"}))

    assert await broker.read_from_memory("wm", "k") == "v"
    assert await broker.read_from_memory("missing", "k") is None


@pytest.mark.asyncio
async def test_update_context_auto_snapshots(broker):
    """Test every fifth modification takes a snapshot"""
    context = await broker.create_context("agentA", "task1", {"a": 1})
    updated = []
    broker.subscribe("context:updated", updated.append)

    for i in range(10):
        await broker.update_context(context.id, {"i": i})

    assert context.data == {"a": 1, "i": 9}
    assert context.metadata.modification_count == 10
    assert len(broker.get_snapshots(context.id)) == 3
    assert len(updated) == 10
    assert await broker.update_context("missing", {"x": 1}) is None


@pytest.mark.asyncio
async def test_transfer_with_retain_rule(broker):
    """Test retain keeps only the listed keys and the chain records the source"""
    source = await broker.create_context("agentA", "task1", {"step": 1, "scratch": "x"})
    transferred = []
    broker.subscribe("context:transferred", transferred.append)

    destination = await broker.transfer_context(
        "agentA", "agentB", "task1", rules=[{"type": "retain", "include": ["step"]}]
    )

    assert destination.data == {"step": 1}
    assert destination.chain == [source.id]
    assert destination.agent_id == "agentB"
    assert source.metadata.handoff_count == 1
    assert source.data == {"step": 1, "scratch": "x"}
    assert not broker.is_active(source.id)
    assert broker.is_active(destination.id)
    assert transferred[0]["applied_rules"] == ["retain"]
    assert broker.metrics["handoffs_completed"] == 1


@pytest.mark.asyncio
async def test_transfer_rules_apply_in_order(broker):
    """Test filter and transform rules run in the given order"""
    await broker.create_context("agentA", "task1", {"a": 1, "b": 2, "secret": 3})

    destination = await broker.transfer_context(
        "agentA",
        "agentB",
        "task1",
        rules=[
            {"type": "filter", "exclude": ["secret"]},
            {"type": "transform", "fn": lambda data: {k: v * 10 for k, v in data.items()}},
            {"type": "bogus"},
        ],
    )

    assert destination.data == {"a": 10, "b": 20}


@pytest.mark.asyncio
async def test_failing_transform_is_skipped(broker):
    """Test a raising transform leaves the data as it was"""
    await broker.create_context("agentA", "task1", {"a": 1})

    def broken(data):
        raise ValueError("bad transform")

    destination = await broker.transfer_context(
        "agentA", "agentB", "task1", rules=[{"type": "transform", "fn": broken}]
    )

    assert destination.data == {"a": 1}
    assert broker.metrics["errors"] == 1


@pytest.mark.asyncio
async def test_transform_with_non_string_keys_is_skipped(broker):
    """Test a transform producing non-string keys is skipped like any failing rule"""
    await broker.create_context("agentA", "task1", {"a": 1})

    destination = await broker.transfer_context(
        "agentA", "agentB", "task1", rules=[{"type": "transform", "fn": lambda data: {1: "x"}}]
    )

    assert destination.data == {"a": 1}
    assert broker.metrics["errors"] == 1
    assert broker.get_handoff_history()[0].applied_rules == []


@pytest.mark.asyncio
async def test_destination_is_independent_copy(broker):
    """Test changing the destination never changes the source"""
    source = await broker.create_context("agentA", "task1", {"items": [1]})
    destination = await broker.transfer_context("agentA", "agentB", "task1")

    destination.data["items"].append(2)

    assert source.data == {"items": [1]}


@pytest.mark.asyncio
async def test_enrichers(broker):
    """Test enrichers add data, honour conditions and contain errors"""
    await broker.create_context("agentA", "task1", {"lang": "py"})

    def broken(context):
        raise RuntimeError("enricher down")

    assert broker.add_enricher("agent", lambda ctx: ctx.agent_id)
    assert broker.add_enricher("never", lambda ctx: 1, condition=lambda ctx: False)
    assert broker.add_enricher("broken", broken)
    assert broker.add_enricher("bad", "not callable") is False

    destination = await broker.transfer_context("agentA", "agentB", "task1", enrich=True)

    assert destination.data == {"lang": "py", "enriched_agent": "agentB"}
    assert broker.metrics["enrichments_applied"] == 1
    assert broker.remove_enricher("broken") is True


@pytest.mark.asyncio
async def test_handoff_chain_growth(broker):
    """Test K sequential handoffs give a chain of K and K+1 chain entries"""
    agents = [f"agent{i}" for i in range(5)]
    first = await broker.create_context(agents[0], "task1", {"n": 0})

    context = first
    for src, dst in zip(agents, agents[1:]):
        context = await broker.transfer_context(src, dst, "task1")

    handoffs = len(agents) - 1
    chain = broker.get_context_chain(context.id)
    assert len(context.chain) == handoffs
    assert len(chain) == handoffs + 1
    assert [c.agent_id for c in chain] == agents
    assert chain[0] is first
    assert len(broker.get_handoff_history()) == handoffs
    assert len(broker.get_handoff_history(agent_id="agent2")) == 2
    assert len(broker.get_handoff_history(limit=1)) == 1


@pytest.mark.asyncio
async def test_snapshot_ring_is_bounded(broker_settings):
    """Test fifteen snapshots leave the ten most recent"""
    broker = ContextBroker(settings=broker_settings.model_copy(update={"snapshot_every": 1000}))
    broker.enable()
    context = await broker.create_context("agentA", "task1")

    for i in range(15):
        await broker.update_context(context.id, {"i": i})
        broker.take_snapshot(context.id)

    snapshots = broker.get_snapshots(context.id)
    assert len(snapshots) == 10
    assert [s.data["i"] for s in snapshots] == list(range(5, 15))
    broker.disable()


@pytest.mark.asyncio
async def test_restore_snapshot(broker):
    """Test restoring replaces live data with a snapshot copy"""
    context = await broker.create_context("agentA", "task1", {"v": 1})
    await broker.update_context(context.id, {"v": 2})
    restored = []
    broker.subscribe("context:restored", restored.append)

    assert broker.restore_snapshot(context.id, 0) is True
    assert context.data == {"v": 1}

    context.data["v"] = 3
    assert broker.get_snapshots(context.id)[0].data == {"v": 1}
    assert broker.restore_snapshot(context.id, 5) is False
    assert broker.restore_snapshot("missing") is False
    assert len(restored) == 1


@pytest.mark.asyncio
async def test_cleanup_evicts_idle_inactive_contexts(broker, broker_settings):
    """Test the sweep evicts idle released contexts and keeps active ones"""
    idle = await broker.create_context("agentA", "task1")
    active = await broker.create_context("agentB", "task1")
    broker.release_context(idle.id)

    later = time.time() + broker_settings.max_context_age + 1
    assert broker.cleanup_inactive_contexts(now=later) == 1

    assert broker.get_context_by_id(idle.id) is None
    assert broker.get_snapshots(idle.id) == []
    assert broker.get_context_by_id(active.id) is active
    assert broker.metrics["contexts_evicted"] == 1
    assert broker.release_context(idle.id) is False


@pytest.mark.asyncio
async def test_cleanup_keeps_recent_contexts(broker):
    """Test released contexts younger than the max age survive"""
    context = await broker.create_context("agentA", "task1")
    broker.release_context(context.id)

    assert broker.cleanup_inactive_contexts() == 0
    assert broker.get_context_by_id(context.id) is context


def test_cleanup_drops_stale_handoffs(broker, broker_settings):
    """Test pending handoffs past the timeout count as failed"""
    broker._pending["h1"] = PendingHandoff("h1", "agentA", "agentB", "task1", started_at=0.0)
    broker._pending["h2"] = PendingHandoff("h2", "agentA", "agentC", "task1", started_at=time.time())

    broker.cleanup_inactive_contexts()

    assert broker.pending_handoffs == 1
    assert broker.metrics["handoffs_failed"] == 1


class BlockingMemory(StubMemory):
    """Memory whose reads wait until released."""

    def __init__(self, data):
        super().__init__(data)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def retrieve(self, key, options):
        self.entered.set()
        await self.release.wait()
        return await super().retrieve(key, options)


@pytest.mark.asyncio
async def test_timed_out_handoff_is_not_committed(broker, broker_settings):
    """Test a handoff swept while waiting on memory is counted failed only"""
    memory = BlockingMemory({"context:agentA:task1": {"plan": "draft"}})
    broker.register_memory_system("main", memory)

    handoff = asyncio.create_task(broker.transfer_context("agentA", "agentB", "task1"))
    await memory.entered.wait()
    broker.cleanup_inactive_contexts(now=time.time() + broker_settings.handoff_timeout + 1)
    memory.release.set()

    assert await handoff is None
    assert broker.metrics["handoffs_failed"] == 1
    assert broker.metrics["handoffs_completed"] == 0
    assert broker.get_handoff_history() == []
    assert broker.context_count == 1
    assert broker.pending_handoffs == 0


def test_monitor_starts_once_a_loop_runs(broker_settings):
    """Test a broker enabled outside any loop starts sweeping on its first context call"""
    broker = ContextBroker(settings=broker_settings)
    broker.enable()
    assert not broker.monitoring_active

    async def run():
        await broker.create_context("agentA", "task1")
        assert broker.monitoring_active
        await broker.shutdown()

    asyncio.run(run())

    assert not broker.monitoring_active


@pytest.mark.asyncio
async def test_health(broker_settings):
    """Test health reports the monitor and context capacity"""
    broker = ContextBroker(settings=broker_settings.model_copy(update={"max_contexts": 1}))
    broker.register_memory_system("main", KeyValueMemory())
    broker.enable()

    health = broker.is_healthy()
    assert health["monitoring_active"] is True
    assert health["primary_memory"] == "main"
    assert health["healthy"] is True

    await broker.create_context("agentA", "task1")
    await broker.create_context("agentB", "task1")
    assert broker.is_healthy()["context_health"] is False

    await broker.shutdown()
    assert broker.is_healthy()["monitoring_active"] is False


@pytest.mark.asyncio
async def test_rollback_is_idempotent(broker):
    """Test rollback twice yields the same pristine state as once"""
    broker.register_memory_system("main", KeyValueMemory())
    broker.add_enricher("agent", lambda ctx: ctx.agent_id)
    await broker.create_context("agentA", "task1", {"a": 1})
    await broker.transfer_context("agentA", "agentB", "task1")

    broker.rollback()
    once = broker.get_metrics()
    broker.rollback()

    assert broker.get_metrics() == once
    assert once["contexts"] == 0
    assert once["memory_systems"] == 0
    assert once["enrichers"] == 0
    assert once["handoffs_completed"] == 0
    assert broker.primary_memory is None
    assert broker.get_handoff_history() == []
