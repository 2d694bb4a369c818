"""Background continuation of sessions through an asyncio queue."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from flowforge.core.exceptions import SessionNotFoundError
from flowforge.orchestrator.orchestrator import Orchestrator
from flowforge.planning.error_handler import PhaseError, classify_error
from flowforge.session.models import Phase

logger = logging.getLogger(__name__)


@dataclass
class JobOutcome:
    """How one queued advance ended."""

    session_id: str
    phase: Optional[Phase]
    success: bool
    paused: bool = False
    phases_run: int = 0
    error: Optional[PhaseError] = None


class PipelineWorker:
    """Run ``orchestrator.advance`` for queued sessions with bounded concurrency.

    Usage:
        worker = PipelineWorker(orchestrator)
        worker.start(concurrency=2)
        worker.enqueue(session_id)
        await worker.join()
        await worker.stop()
    """

    def __init__(self, orchestrator: Orchestrator):
        self.orchestrator = orchestrator
        self.outcomes: list[JobOutcome] = []
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def enqueue(self, session_id: str) -> None:
        self._queue.put_nowait(session_id)
        logger.debug(f"Queued session {session_id}", extra={"session_id": session_id})

    def start(self, concurrency: int = 1) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self._tasks:
            raise RuntimeError("Worker already started")
        self._tasks = [asyncio.create_task(self._work(n)) for n in range(concurrency)]

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _work(self, worker_id: int) -> None:
        while True:
            session_id = await self._queue.get()
            try:
                self.outcomes.append(await self._advance(session_id))
            finally:
                self._queue.task_done()

    async def _advance(self, session_id: str) -> JobOutcome:
        try:
            results = await self.orchestrator.advance(session_id)
        except Exception as e:
            logger.exception(f"Advancing session {session_id} crashed", extra={"session_id": session_id})
            return JobOutcome(session_id=session_id, phase=None, success=False, error=classify_error(e))

        phase = self._current_phase(session_id)
        last = results[-1] if results else None
        outcome = JobOutcome(
            session_id=session_id,
            phase=phase,
            success=last is None or last.success,
            paused=bool(last and last.paused),
            phases_run=len(results),
            error=last.error if last else None,
        )
        logger.info(
            f"Session {session_id} stopped at {phase.value if phase else 'unknown'} "
            f"after {outcome.phases_run} phases",
            extra={"session_id": session_id},
        )
        return outcome

    def _current_phase(self, session_id: str) -> Optional[Phase]:
        try:
            return self.orchestrator.get_session(session_id).phase
        except SessionNotFoundError:
            logger.debug(f"Session {session_id} disappeared after advancing")
            return None
