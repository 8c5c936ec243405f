"""Tests for the escalation queue."""

import asyncio

import pytest

from storysmith.engine.escalation_queue import EscalationQueue
from storysmith.enums import EscalationStatus
from storysmith.exceptions import EscalationNotFoundError


async def _add(queue: EscalationQueue, workflow_id: str = "1-2-user-login", confidence: float = 0.6) -> str:
    return await queue.add(
        workflow_id=workflow_id,
        step="decide",
        question="Review gate failed. Proceed with the pull request?",
        ai_reasoning="Self-review confidence 0.60 below 0.85",
        confidence=confidence,
        context={"reasons": ["low confidence"]},
    )


class TestAdd:
    @pytest.mark.asyncio
    async def test_add_persists_pending_escalation(self, escalation_queue):
        esc_id = await _add(escalation_queue)

        assert esc_id.startswith("esc-")
        assert (escalation_queue.escalations_dir / f"{esc_id}.json").exists()

        escalation = await escalation_queue.get_by_id(esc_id)
        assert escalation.status == EscalationStatus.PENDING
        assert escalation.workflow_id == "1-2-user-login"
        assert escalation.context == {"reasons": ["low confidence"]}
        assert escalation.response is None

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, escalation_queue):
        ids = {await _add(escalation_queue) for _ in range(5)}
        assert len(ids) == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("confidence", [-0.1, 1.5])
    async def test_confidence_out_of_range(self, escalation_queue, confidence):
        with pytest.raises(ValueError, match="Invalid escalation"):
            await _add(escalation_queue, confidence=confidence)

    @pytest.mark.asyncio
    async def test_blank_question_rejected(self, escalation_queue):
        with pytest.raises(ValueError):
            await escalation_queue.add(
                workflow_id="1-2", step="decide", question="   ", ai_reasoning="", confidence=0.5
            )
        assert await escalation_queue.list_escalations() == []


class TestRespond:
    @pytest.mark.asyncio
    async def test_respond_resolves(self, escalation_queue):
        esc_id = await _add(escalation_queue)

        resolved = await escalation_queue.respond(esc_id, "  approve, ship it  ")

        assert resolved.status == EscalationStatus.RESOLVED
        assert resolved.response == "approve, ship it"
        assert resolved.resolved_at is not None
        assert resolved.resolution_time_ms >= 0

        stored = await escalation_queue.get_by_id(esc_id)
        assert stored.is_resolved

    @pytest.mark.asyncio
    async def test_respond_twice_fails(self, escalation_queue):
        esc_id = await _add(escalation_queue)
        await escalation_queue.respond(esc_id, "approve")

        with pytest.raises(EscalationNotFoundError, match="already resolved"):
            await escalation_queue.respond(esc_id, "reject")

        stored = await escalation_queue.get_by_id(esc_id)
        assert stored.response == "approve"

    @pytest.mark.asyncio
    async def test_respond_unknown_id(self, escalation_queue):
        with pytest.raises(EscalationNotFoundError):
            await escalation_queue.respond("esc-missing", "approve")

    @pytest.mark.asyncio
    async def test_blank_response_rejected(self, escalation_queue):
        esc_id = await _add(escalation_queue)
        with pytest.raises(ValueError, match="must not be empty"):
            await escalation_queue.respond(esc_id, "  ")

    @pytest.mark.asyncio
    async def test_path_like_ids_are_not_found(self, escalation_queue):
        with pytest.raises(EscalationNotFoundError):
            await escalation_queue.get_by_id("../esc-1")


class TestListAndMetrics:
    @pytest.mark.asyncio
    async def test_list_filters(self, escalation_queue):
        first = await _add(escalation_queue, workflow_id="1-1-signup")
        second = await _add(escalation_queue, workflow_id="1-2-user-login")
        await escalation_queue.respond(first, "approve")

        everything = await escalation_queue.list_escalations()
        assert [e.id for e in everything] == [first, second]

        pending = await escalation_queue.list_escalations(status=EscalationStatus.PENDING)
        assert [e.id for e in pending] == [second]

        resolved = await escalation_queue.list_escalations(status="resolved")
        assert [e.id for e in resolved] == [first]

        by_story = await escalation_queue.list_escalations(workflow_id="1-2-user-login")
        assert [e.id for e in by_story] == [second]

    @pytest.mark.asyncio
    async def test_list_skips_unreadable_files(self, escalation_queue):
        esc_id = await _add(escalation_queue)
        (escalation_queue.escalations_dir / "esc-broken.json").write_text("{")

        assert [e.id for e in await escalation_queue.list_escalations()] == [esc_id]

    @pytest.mark.asyncio
    async def test_metrics(self, escalation_queue):
        first = await _add(escalation_queue, workflow_id="1-1-signup")
        await _add(escalation_queue, workflow_id="1-1-signup")
        await _add(escalation_queue, workflow_id="1-2-user-login")
        await escalation_queue.respond(first, "approve")

        metrics = await escalation_queue.get_metrics()

        assert metrics.total == 3
        assert metrics.pending == 2
        assert metrics.resolved == 1
        assert metrics.average_resolution_time_ms >= 0
        assert metrics.by_workflow == {"1-1-signup": 2, "1-2-user-login": 1}

    @pytest.mark.asyncio
    async def test_metrics_empty_queue(self, escalation_queue):
        metrics = await escalation_queue.get_metrics()
        assert metrics.total == 0
        assert metrics.average_resolution_time_ms == 0.0


class TestWaitForResponse:
    @pytest.mark.asyncio
    async def test_zero_timeout_returns_none_when_pending(self, escalation_queue):
        esc_id = await _add(escalation_queue)
        assert await escalation_queue.wait_for_response(esc_id, timeout=0.0) is None

    @pytest.mark.asyncio
    async def test_returns_immediately_when_already_resolved(self, escalation_queue):
        esc_id = await _add(escalation_queue)
        await escalation_queue.respond(esc_id, "approve")

        escalation = await escalation_queue.wait_for_response(esc_id, timeout=0.0)
        assert escalation.response == "approve"

    @pytest.mark.asyncio
    async def test_wakes_on_in_process_response(self, escalation_queue):
        esc_id = await _add(escalation_queue)

        async def answer_later():
            await asyncio.sleep(0.05)
            await escalation_queue.respond(esc_id, "lgtm")

        waiter = asyncio.create_task(escalation_queue.wait_for_response(esc_id, timeout=5.0))
        await answer_later()
        escalation = await waiter

        assert escalation is not None
        assert escalation.response == "lgtm"

    @pytest.mark.asyncio
    async def test_picks_up_response_from_another_queue(self, escalation_queue):
        """A second queue on the same directory stands in for the CLI process."""
        esc_id = await _add(escalation_queue)
        other = EscalationQueue(escalation_queue.escalations_dir, poll_interval=0.01)

        waiter = asyncio.create_task(escalation_queue.wait_for_response(esc_id, timeout=5.0))
        await asyncio.sleep(0.03)
        await other.respond(esc_id, "approve")

        escalation = await waiter
        assert escalation.response == "approve"

    @pytest.mark.asyncio
    async def test_times_out(self, escalation_queue):
        esc_id = await _add(escalation_queue)
        assert await escalation_queue.wait_for_response(esc_id, timeout=0.05) is None

    @pytest.mark.asyncio
    async def test_wait_bookkeeping_is_dropped(self, escalation_queue):
        answered = await _add(escalation_queue)
        abandoned = await _add(escalation_queue)

        waiter = asyncio.create_task(escalation_queue.wait_for_response(answered, timeout=5.0))
        await asyncio.sleep(0.02)
        await escalation_queue.respond(answered, "approve")
        await waiter
        await escalation_queue.wait_for_response(abandoned, timeout=0.02)

        assert escalation_queue._events == {}

    @pytest.mark.asyncio
    async def test_unknown_id(self, escalation_queue):
        with pytest.raises(EscalationNotFoundError):
            await escalation_queue.wait_for_response("esc-missing", timeout=0.0)
