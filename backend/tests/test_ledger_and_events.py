"""Tests for the cost ledger, event broadcaster and cancellation registry."""

import asyncio
from types import SimpleNamespace

import pytest

from renderflow.orchestrator.ledger import ArtifactLedger
from renderflow.orchestrator.state import RunStep
from renderflow.schemas.run_state import LogEntry, dump_logs
from renderflow.services.cancellation import CancellationRegistry
from renderflow.services.events import (
    InMemoryBroadcaster,
    RunEvent,
    log_event,
    progress_event,
    snapshot_event,
)


# ---------------------------------------------------------------------------
# ArtifactLedger
# ---------------------------------------------------------------------------

def test_cost_estimate_rounds_total_to_cents():
    ledger = ArtifactLedger()
    ledger.add_cost(RunStep.TTS_GENERATE, 0.0151)
    ledger.add_cost(RunStep.TTS_GENERATE, 0.0151)
    ledger.add_cost(RunStep.IMAGES_GENERATE, 0.04)

    estimate = ledger.cost_estimate()
    assert estimate.estimated_usd == 0.07
    assert estimate.by_step == {"tts_generate": 0.0302, "images_generate": 0.04}


def test_sub_cent_spend_survives_reseeding():
    first = ArtifactLedger()
    first.add_cost(RunStep.TTS_GENERATE, 0.004)
    first.add_cost(RunStep.ASR_ALIGN, 0.004)
    first.record_cost_estimate()
    assert first.get("costEstimate") == {
        "estimatedUsd": 0.01,
        "byStep": {"tts_generate": 0.004, "asr_align": 0.004},
    }

    second = ArtifactLedger(first.snapshot())
    second.add_cost(RunStep.IMAGES_GENERATE, 0.12)
    assert second.cost_estimate().estimated_usd == 0.13


def test_negative_cost_rejected():
    with pytest.raises(ValueError):
        ArtifactLedger().add_cost(RunStep.ASR_ALIGN, -1)


def test_ledger_keeps_spend_from_previous_attempt():
    previous = {"imagesDir": "p/r/images", "costEstimate": {"estimatedUsd": 0.3, "byStep": {"tts_generate": 0.3}}}
    ledger = ArtifactLedger(previous)
    ledger.add_cost(RunStep.IMAGES_GENERATE, 0.12)
    ledger.record_cost_estimate()

    snapshot = ledger.snapshot()
    assert snapshot["imagesDir"] == "p/r/images"
    assert snapshot["costEstimate"] == {
        "estimatedUsd": 0.42,
        "byStep": {"tts_generate": 0.3, "images_generate": 0.12},
    }


def test_ledger_does_not_mutate_input():
    original = {"a": 1}
    ledger = ArtifactLedger(original)
    ledger.record("b", 2)
    assert original == {"a": 1}
    assert ledger.get("b") == 2


# ---------------------------------------------------------------------------
# InMemoryBroadcaster
# ---------------------------------------------------------------------------

async def test_subscribers_receive_only_their_run():
    broadcaster = InMemoryBroadcaster()
    mine = broadcaster.subscribe("run-a")
    other = broadcaster.subscribe("run-b")

    broadcaster.publish(progress_event("run-a", 20))

    assert (await mine.get()).data == {"progress": 20}
    assert other.empty()


async def test_full_subscriber_queue_drops_events():
    broadcaster = InMemoryBroadcaster(max_queue_size=1)
    queue = broadcaster.subscribe("run-a")

    broadcaster.publish(progress_event("run-a", 10))
    broadcaster.publish(progress_event("run-a", 20))

    assert queue.qsize() == 1
    assert (await queue.get()).data["progress"] == 10


def test_unsubscribe_and_history():
    broadcaster = InMemoryBroadcaster(keep_history=True)
    queue = broadcaster.subscribe("run-a")
    broadcaster.unsubscribe("run-a", queue)
    assert broadcaster.subscriber_count("run-a") == 0

    broadcaster.publish(RunEvent(kind="done", run_id="run-a", data={}))
    broadcaster.publish(log_event("run-b", LogEntry(message="hi")))
    assert [e.kind for e in broadcaster.events_for("run-a")] == ["done"]
    assert broadcaster.events_for("run-b", "log")[0].data["log"]["message"] == "hi"


def test_snapshot_event_includes_logs():
    run = SimpleNamespace(
        id="run-a",
        status="running",
        progress=35,
        current_step="images_generate",
        logs_json=dump_logs([LogEntry(message="Generating scene images...")]),
    )
    event = snapshot_event(run)
    assert event.kind == "state"
    assert event.data["currentStep"] == "images_generate"
    assert event.data["logs"][0]["message"] == "Generating scene images..."


# ---------------------------------------------------------------------------
# CancellationRegistry
# ---------------------------------------------------------------------------

def test_cancellation_registry_flags():
    registry = CancellationRegistry()
    assert registry.is_active("run-a") is False

    assert registry.activate("run-a") is True
    assert registry.is_active("run-a") is True

    registry.cancel("run-a")
    assert registry.is_active("run-a") is False

    registry.discard("run-a")
    assert registry.activate("run-a") is True


def test_pending_cancel_survives_activation():
    registry = CancellationRegistry()
    registry.cancel("run-a")
    assert registry.activate("run-a") is False


async def test_registry_is_safe_across_threads():
    registry = CancellationRegistry()
    ids = [f"run-{i}" for i in range(50)]
    await asyncio.gather(*[asyncio.to_thread(registry.activate, rid) for rid in ids])
    assert all(registry.is_active(rid) for rid in ids)
