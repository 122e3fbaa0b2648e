"""Tests for the run scheduler: FIFO single-slot execution, retry, cancel and recovery."""

import asyncio
import json

import pytest

from renderflow.orchestrator.pipeline import RenderFlags
from renderflow.orchestrator.scheduler import (
    RECOVERY_MESSAGE,
    RenderingDisabledError,
    RunInProgressError,
    RunNotActiveError,
    RunNotFoundError,
    RunNotRetryableError,
)
from renderflow.orchestrator.state import STEPS, RunStatus, RunStep
from renderflow.schemas.run_state import parse_logs, parse_resume_state


def _completed(run):
    return parse_resume_state(run.resume_state_json).completed_steps


# ---------------------------------------------------------------------------
# Single active run and FIFO promotion
# ---------------------------------------------------------------------------

async def test_second_run_waits_queued_until_first_terminates(make_scheduler, fake_steps, store, plan):
    scheduler = make_scheduler(steps=fake_steps.library())
    first = await store.create_run(plan.project_id, plan.id)
    second = await store.create_run(plan.project_id, plan.id)
    entered, release = fake_steps.gate(first.id, RunStep.TTS_GENERATE)

    await scheduler.submit(first.id)
    await entered.wait()
    await scheduler.submit(second.id)

    assert (await store.find(first.id)).status == RunStatus.RUNNING.value
    waiting = await store.find(second.id)
    assert waiting.status == RunStatus.QUEUED.value
    assert waiting.current_step == ""
    assert scheduler.active_run_id == first.id
    assert scheduler.queued_run_ids() == [second.id]

    release.set()
    await scheduler.wait_idle()

    assert (await store.find(first.id)).status == RunStatus.DONE.value
    assert (await store.find(second.id)).status == RunStatus.DONE.value


async def test_fifo_promotion_order(make_scheduler, fake_steps, store, plan):
    scheduler = make_scheduler(steps=fake_steps.library())
    a, b, c = [await store.create_run(plan.project_id, plan.id) for _ in range(3)]
    entered, release = fake_steps.gate(a.id, RunStep.TTS_GENERATE)

    await scheduler.submit(a.id)
    await entered.wait()
    await scheduler.submit(b.id)
    await scheduler.submit(c.id)
    release.set()
    await scheduler.wait_idle()

    assert fake_steps.run_order() == [a.id, b.id, c.id]


async def test_at_most_one_run_is_running(make_scheduler, fake_steps, store, plan):
    scheduler = make_scheduler(steps=fake_steps.library())
    runs = [await store.create_run(plan.project_id, plan.id) for _ in range(3)]
    observed = []

    async def sample(ctx):
        running = await store.list_runs([RunStatus.RUNNING])
        observed.append(len(running))

    fake_steps.extra[RunStep.IMAGES_GENERATE] = sample
    for run in runs:
        await scheduler.submit(run.id)
    await scheduler.wait_idle()

    assert observed == [1, 1, 1]


async def test_promotion_skips_missing_and_non_queued_runs(make_scheduler, fake_steps, store, plan):
    scheduler = make_scheduler(steps=fake_steps.library())
    first = await store.create_run(plan.project_id, plan.id)
    stale = await store.create_run(plan.project_id, plan.id)
    last = await store.create_run(plan.project_id, plan.id)
    entered, release = fake_steps.gate(first.id, RunStep.TTS_GENERATE)

    await scheduler.submit(first.id)
    await entered.wait()
    await scheduler.submit("vanished-run")
    await scheduler.submit(stale.id)
    await scheduler.submit(last.id)
    await store.update(stale.id, status=RunStatus.DONE)
    release.set()
    await scheduler.wait_idle()

    assert fake_steps.run_order() == [first.id, last.id]
    assert scheduler.active_run_id is None


async def test_submitting_only_a_missing_run_leaves_slot_free(make_scheduler, store):
    scheduler = make_scheduler()

    await scheduler.submit("vanished-run")
    await asyncio.wait_for(scheduler.wait_idle(), timeout=5)

    assert scheduler.active_run_id is None


async def test_request_render_rejected_in_test_mode(make_scheduler, plan):
    scheduler = make_scheduler(RenderFlags(test_mode=True))

    with pytest.raises(RenderingDisabledError):
        await scheduler.request_render(plan.id)


async def test_request_render_unknown_plan(make_scheduler):
    scheduler = make_scheduler()

    with pytest.raises(ValueError):
        await scheduler.request_render("no-such-plan")


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

async def test_retry_from_step_resumes_after_failure(make_scheduler, fake_steps, store, plan):
    fake_steps.costs = {RunStep.TTS_GENERATE: 0.20, RunStep.IMAGES_GENERATE: 0.12}
    failing = make_scheduler(
        RenderFlags(dry_run=True, fail_step=RunStep.IMAGES_GENERATE),
        steps=fake_steps.library(),
    )
    run = await failing.request_render(plan.id)
    await failing.wait_idle()
    assert (await store.find(run.id)).status == RunStatus.FAILED.value

    scheduler = make_scheduler(steps=fake_steps.library())
    fake_steps.calls.clear()
    await scheduler.retry(run.id, "images_generate")
    await scheduler.wait_idle()

    run = await store.find(run.id)
    assert run.status == RunStatus.DONE.value
    assert _completed(run) == STEPS
    assert fake_steps.ran() == STEPS[2:]
    # Spend from the failed attempt is kept
    assert json.loads(run.artifacts_json)["costEstimate"]["estimatedUsd"] == 0.32
    assert "Retry requested from images_generate" in [e.message for e in parse_logs(run.logs_json)]


async def test_retry_truncates_completed_steps_regardless_of_history(make_scheduler, fake_steps, store, plan):
    run = await store.create_run(plan.project_id, plan.id)
    await store.update(
        run.id,
        status=RunStatus.QA_FAILED,
        resume_state_json=json.dumps({"completedSteps": [s.value for s in STEPS]}),
    )
    scheduler = make_scheduler(steps=fake_steps.library())
    entered, release = fake_steps.gate(run.id, RunStep.IMAGES_GENERATE)

    await scheduler.retry(run.id, "images_generate")
    await entered.wait()
    assert _completed(await store.find(run.id)) == [RunStep.TTS_GENERATE, RunStep.ASR_ALIGN]

    release.set()
    await scheduler.wait_idle()


async def test_retry_with_unknown_step_restarts_from_beginning(make_scheduler, fake_steps, store, plan):
    run = await store.create_run(plan.project_id, plan.id)
    await store.update(
        run.id,
        status=RunStatus.CANCELED,
        resume_state_json='{"completedSteps": ["tts_generate"]}',
    )
    scheduler = make_scheduler(steps=fake_steps.library())

    await scheduler.retry(run.id, "not_a_step")
    await scheduler.wait_idle()

    assert fake_steps.ran() == STEPS


@pytest.mark.parametrize("status", [RunStatus.RUNNING, RunStatus.QUEUED])
async def test_retry_rejected_while_in_progress(make_scheduler, store, plan, status):
    scheduler = make_scheduler()
    run = await store.create_run(plan.project_id, plan.id)
    await store.update(run.id, status=status)

    with pytest.raises(RunInProgressError, match="already in progress"):
        await scheduler.retry(run.id)


async def test_retry_rejected_for_done_and_missing_runs(make_scheduler, store, plan):
    scheduler = make_scheduler()
    run = await store.create_run(plan.project_id, plan.id)
    await store.update(run.id, status=RunStatus.DONE)

    with pytest.raises(RunNotRetryableError):
        await scheduler.retry(run.id)
    with pytest.raises(RunNotFoundError):
        await scheduler.retry("missing")


async def test_retry_rejected_in_test_mode(make_scheduler, store, plan):
    scheduler = make_scheduler(RenderFlags(test_mode=True))
    run = await store.create_run(plan.project_id, plan.id)
    await store.update(run.id, status=RunStatus.FAILED)

    with pytest.raises(RenderingDisabledError):
        await scheduler.retry(run.id)


async def test_concurrent_retries_have_exactly_one_winner(make_scheduler, fake_steps, store, plan):
    scheduler = make_scheduler(steps=fake_steps.library())
    run = await store.create_run(plan.project_id, plan.id)
    await store.update(run.id, status=RunStatus.FAILED)
    entered, release = fake_steps.gate(run.id, RunStep.TTS_GENERATE)

    results = await asyncio.gather(
        scheduler.retry(run.id),
        scheduler.retry(run.id),
        scheduler.retry(run.id),
        return_exceptions=True,
    )
    await entered.wait()
    release.set()
    await scheduler.wait_idle()

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 2
    assert all(isinstance(e, RunInProgressError) for e in errors)
    assert fake_steps.run_order() == [run.id]


async def test_canceled_run_can_be_retried(make_scheduler, fake_steps, store, plan):
    scheduler = make_scheduler(steps=fake_steps.library())
    run = await store.create_run(plan.project_id, plan.id)
    entered, release = fake_steps.gate(run.id, RunStep.ASR_ALIGN)

    await scheduler.submit(run.id)
    await entered.wait()
    await scheduler.cancel(run.id)
    release.set()
    await scheduler.wait_idle()
    assert (await store.find(run.id)).status == RunStatus.CANCELED.value

    await scheduler.retry(run.id, "asr_align")
    await scheduler.wait_idle()

    run = await store.find(run.id)
    assert run.status == RunStatus.DONE.value
    assert fake_steps.ran() == STEPS


async def test_retry_while_canceled_step_unwinds_keeps_truncation(make_scheduler, fake_steps, store, plan):
    scheduler = make_scheduler(steps=fake_steps.library())
    run = await store.create_run(plan.project_id, plan.id)
    entered, release = fake_steps.gate(run.id, RunStep.IMAGES_GENERATE, cooperative=False)

    await scheduler.submit(run.id)
    await entered.wait()
    await scheduler.cancel(run.id)
    await scheduler.retry(run.id, "tts_generate")
    assert _completed(await store.find(run.id)) == []

    # The canceled body finishes only after the retry re-queued the run
    release.set()
    await scheduler.wait_idle()

    run = await store.find(run.id)
    assert run.status == RunStatus.DONE.value
    assert _completed(run) == STEPS
    assert fake_steps.ran(run.id) == STEPS[:3] + STEPS
    assert fake_steps.ran(run.id).count(RunStep.TTS_GENERATE) == 2


async def test_retry_keeps_sub_cent_spend(make_scheduler, fake_steps, store, plan):
    fake_steps.costs = {
        RunStep.TTS_GENERATE: 0.004,
        RunStep.ASR_ALIGN: 0.004,
        RunStep.IMAGES_GENERATE: 0.12,
    }
    failing = make_scheduler(
        RenderFlags(dry_run=True, fail_step=RunStep.IMAGES_GENERATE),
        steps=fake_steps.library(),
    )
    run = await failing.request_render(plan.id)
    await failing.wait_idle()
    cost = json.loads((await store.find(run.id)).artifacts_json)["costEstimate"]
    assert cost == {"estimatedUsd": 0.01, "byStep": {"tts_generate": 0.004, "asr_align": 0.004}}

    scheduler = make_scheduler(steps=fake_steps.library())
    await scheduler.retry(run.id, "images_generate")
    await scheduler.wait_idle()

    cost = json.loads((await store.find(run.id)).artifacts_json)["costEstimate"]
    assert cost["estimatedUsd"] == 0.13
    assert cost["byStep"]["images_generate"] == 0.12


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------

async def test_cancel_queued_run_removes_it_from_queue(make_scheduler, fake_steps, store, plan, broadcaster):
    scheduler = make_scheduler(steps=fake_steps.library())
    first = await store.create_run(plan.project_id, plan.id)
    second = await store.create_run(plan.project_id, plan.id)
    entered, release = fake_steps.gate(first.id, RunStep.TTS_GENERATE)

    await scheduler.submit(first.id)
    await entered.wait()
    await scheduler.submit(second.id)
    await scheduler.cancel(second.id)

    assert scheduler.queued_run_ids() == []
    release.set()
    await scheduler.wait_idle()

    assert (await store.find(second.id)).status == RunStatus.CANCELED.value
    assert fake_steps.run_order() == [first.id]
    assert broadcaster.events_for(second.id)[-1].kind == "canceled"


async def test_cancel_queued_run_drops_its_cancel_flag(make_scheduler, fake_steps, store, plan):
    scheduler = make_scheduler(steps=fake_steps.library())
    first = await store.create_run(plan.project_id, plan.id)
    second = await store.create_run(plan.project_id, plan.id)
    entered, release = fake_steps.gate(first.id, RunStep.TTS_GENERATE)

    await scheduler.submit(first.id)
    await entered.wait()
    await scheduler.submit(second.id)
    await scheduler.cancel(second.id)

    assert second.id not in scheduler.cancellation
    assert first.id in scheduler.cancellation

    release.set()
    await scheduler.wait_idle()
    assert first.id not in scheduler.cancellation


async def test_cancel_rejects_missing_and_finished_runs(make_scheduler, store, plan):
    scheduler = make_scheduler()
    run = await store.create_run(plan.project_id, plan.id)
    await store.update(run.id, status=RunStatus.DONE)

    with pytest.raises(RunNotActiveError):
        await scheduler.cancel(run.id)
    with pytest.raises(RunNotFoundError):
        await scheduler.cancel("missing")
    assert not scheduler.cancellation.is_active(run.id)


# ---------------------------------------------------------------------------
# Restart recovery
# ---------------------------------------------------------------------------

async def test_recover_fails_running_runs_and_requeues_queued(make_scheduler, fake_steps, store, plan):
    stuck = await store.create_run(plan.project_id, plan.id)
    await store.update(stuck.id, status=RunStatus.RUNNING, current_step="images_generate", progress=40)
    waiting = await store.create_run(plan.project_id, plan.id)
    scheduler = make_scheduler(steps=fake_steps.library())

    report = await scheduler.recover()
    await scheduler.wait_idle()

    assert report.failed == [stuck.id]
    assert report.requeued == [waiting.id]

    stuck = await store.find(stuck.id)
    assert stuck.status == RunStatus.FAILED.value
    assert stuck.current_step == "error"
    last = parse_logs(stuck.logs_json)[-1]
    assert last.message == RECOVERY_MESSAGE
    assert last.level == "warn"

    assert (await store.find(waiting.id)).status == RunStatus.DONE.value
    assert fake_steps.run_order() == [waiting.id]


async def test_recovered_run_is_retryable(make_scheduler, fake_steps, store, plan):
    stuck = await store.create_run(plan.project_id, plan.id)
    await store.update(stuck.id, status=RunStatus.RUNNING)
    scheduler = make_scheduler(steps=fake_steps.library())

    await scheduler.recover()
    await scheduler.retry(stuck.id)
    await scheduler.wait_idle()

    assert (await store.find(stuck.id)).status == RunStatus.DONE.value
