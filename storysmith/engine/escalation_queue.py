"""
Durable queue of questions handed to humans.

Each escalation is stored as ``<escalations_dir>/<id>.json`` and written
atomically. Escalations are never deleted; once resolved they are immutable.

Waiting:
    ``wait_for_response`` wakes immediately when ``respond`` is called in the
    same process (via an ``asyncio.Event``) and otherwise polls the file, so
    a response recorded by another process, e.g. the CLI, is picked up too.

Example:
    >>> queue = EscalationQueue(".storysmith/escalations")
    >>> esc_id = await queue.add(
    ...     workflow_id="1-2-user-login",
    ...     step="decide",
    ...     question="Review gate failed. Proceed with the pull request?",
    ...     ai_reasoning="Self-review confidence 0.62 below 0.85",
    ...     confidence=0.62,
    ... )
    >>> await queue.respond(esc_id, "approve")
"""

import asyncio
import json
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles
import structlog
from pydantic import ValidationError

from storysmith.enums import EscalationStatus
from storysmith.exceptions import EscalationError, EscalationNotFoundError
from storysmith.models.escalation import Escalation, EscalationMetrics

log = structlog.get_logger(__name__)


class EscalationQueue:
    """File-backed escalation queue.

    Attributes:
        escalations_dir: Directory holding one JSON file per escalation.
        poll_interval: Seconds between file checks while waiting.
    """

    def __init__(self, escalations_dir: str | Path, poll_interval: float = 1.0) -> None:
        self.escalations_dir = Path(escalations_dir)
        self.escalations_dir.mkdir(parents=True, exist_ok=True)
        self.poll_interval = poll_interval
        self._events: dict[str, asyncio.Event] = {}
        self._write_lock = asyncio.Lock()

    def _path(self, escalation_id: str) -> Path:
        if not escalation_id or "/" in escalation_id or "\\" in escalation_id or escalation_id.startswith("."):
            raise EscalationNotFoundError(escalation_id)
        return self.escalations_dir / f"{escalation_id}.json"

    def _event(self, escalation_id: str) -> asyncio.Event:
        if escalation_id not in self._events:
            self._events[escalation_id] = asyncio.Event()
        return self._events[escalation_id]

    async def add(
        self,
        workflow_id: str,
        step: str,
        question: str,
        ai_reasoning: str,
        confidence: float,
        context: dict[str, Any] | None = None,
    ) -> str:
        """File a new pending escalation.

        Args:
            workflow_id: Story (workflow) the question belongs to.
            step: Pipeline step that raised it.
            question: What the human is asked to decide.
            ai_reasoning: Why the system could not decide on its own.
            confidence: The system's confidence, 0.0-1.0.
            context: Extra JSON-serialisable details for the reviewer.

        Returns:
            The new escalation id (``esc-<uuid4>``).

        Raises:
            ValueError: If confidence is out of range or question/workflow id
                is blank.
        """
        escalation_id = f"esc-{uuid.uuid4()}"
        try:
            escalation = Escalation(
                id=escalation_id,
                workflow_id=workflow_id,
                step=step,
                question=question,
                ai_reasoning=ai_reasoning,
                confidence=confidence,
                context=context or {},
            )
        except ValidationError as e:
            raise ValueError(f"Invalid escalation: {e}") from e

        await self._write(escalation)
        log.info(
            "escalation_added",
            escalation_id=escalation_id,
            workflow_id=workflow_id,
            step=step,
            confidence=confidence,
        )
        return escalation_id

    async def respond(self, escalation_id: str, response: str) -> Escalation:
        """Record a human response and resolve the escalation.

        Raises:
            ValueError: If the response is blank.
            EscalationNotFoundError: If the id is unknown or already resolved.
        """
        if not response or not response.strip():
            raise ValueError("Response must not be empty")

        async with self._write_lock:
            escalation = await self.get_by_id(escalation_id)
            if escalation.is_resolved:
                raise EscalationNotFoundError(
                    escalation_id, f"Escalation not found or already resolved: {escalation_id}"
                )

            resolved_at = datetime.now(UTC)
            resolved = escalation.model_copy(
                update={
                    "status": EscalationStatus.RESOLVED,
                    "response": response.strip(),
                    "resolved_at": resolved_at,
                    "resolution_time_ms": int((resolved_at - escalation.created_at).total_seconds() * 1000),
                }
            )
            await self._write(resolved)

        # Waiters hold their own reference to the event.
        event = self._events.pop(escalation_id, None)
        if event is not None:
            event.set()
        log.info(
            "escalation_resolved",
            escalation_id=escalation_id,
            workflow_id=resolved.workflow_id,
            resolution_time_ms=resolved.resolution_time_ms,
        )
        return resolved

    async def list_escalations(
        self,
        status: EscalationStatus | str | None = None,
        workflow_id: str | None = None,
    ) -> list[Escalation]:
        """List escalations, oldest first, optionally filtered.

        Unreadable files are skipped with a warning rather than failing the
        whole listing.
        """
        wanted_status = EscalationStatus(status) if status is not None else None
        escalations: list[Escalation] = []
        for path in sorted(self.escalations_dir.glob("esc-*.json")):
            try:
                escalation = await self._read(path)
            except EscalationError as e:
                log.warning("escalation_unreadable", path=str(path), error=e.message)
                continue
            if wanted_status is not None and escalation.status != wanted_status:
                continue
            if workflow_id is not None and escalation.workflow_id != workflow_id:
                continue
            escalations.append(escalation)
        escalations.sort(key=lambda e: e.created_at)
        return escalations

    async def get_by_id(self, escalation_id: str) -> Escalation:
        """Load one escalation.

        Raises:
            EscalationNotFoundError: If no escalation has that id.
        """
        path = self._path(escalation_id)
        if not path.exists():
            raise EscalationNotFoundError(escalation_id)
        return await self._read(path)

    async def wait_for_response(self, escalation_id: str, timeout: float | None = None) -> Escalation | None:
        """Wait until the escalation is resolved.

        Args:
            escalation_id: Escalation to wait on.
            timeout: Maximum seconds to wait. None waits indefinitely; 0
                checks once without waiting.

        Returns:
            The resolved escalation, or None if the timeout elapsed first.

        Raises:
            EscalationNotFoundError: If no escalation has that id.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        event = self._event(escalation_id)

        try:
            while True:
                escalation = await self.get_by_id(escalation_id)
                if escalation.is_resolved:
                    return escalation

                if deadline is None:
                    wait_for = self.poll_interval
                else:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        log.info("escalation_wait_timeout", escalation_id=escalation_id, timeout=timeout)
                        return None
                    wait_for = min(self.poll_interval, remaining)

                try:
                    await asyncio.wait_for(event.wait(), timeout=wait_for)
                except TimeoutError:
                    pass
        finally:
            # Waiters still holding the event fall back to polling the file.
            if self._events.get(escalation_id) is event:
                del self._events[escalation_id]

    async def get_metrics(self) -> EscalationMetrics:
        """Summarise the queue: counts, mean resolution time, per-workflow totals."""
        escalations = await self.list_escalations()
        resolved = [e for e in escalations if e.is_resolved and e.resolution_time_ms is not None]
        by_workflow: dict[str, int] = {}
        for escalation in escalations:
            by_workflow[escalation.workflow_id] = by_workflow.get(escalation.workflow_id, 0) + 1

        average = sum(e.resolution_time_ms or 0 for e in resolved) / len(resolved) if resolved else 0.0
        return EscalationMetrics(
            total=len(escalations),
            pending=sum(1 for e in escalations if not e.is_resolved),
            resolved=len(resolved),
            average_resolution_time_ms=average,
            by_workflow=by_workflow,
        )

    async def _read(self, path: Path) -> Escalation:
        try:
            async with aiofiles.open(path) as f:
                content = await f.read()
            return Escalation.model_validate(json.loads(content))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise EscalationError(f"Cannot read escalation file {path.name}: {e}") from e

    async def _write(self, escalation: Escalation) -> None:
        path = self._path(escalation.id)
        tmp_path = path.with_suffix(".tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(escalation.model_dump_json(indent=2))
        tmp_path.replace(path)
