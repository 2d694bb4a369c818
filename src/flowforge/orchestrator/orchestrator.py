"""Composition root: runs phase runners against stored sessions.

The orchestrator loads a session, hands it to the runner for its current
phase, checks the returned operations against the phase allowlist, applies
them and saves the result under the version it loaded. It knows nothing
about what any individual phase does.
"""

import logging
from typing import Any, Optional

from flowforge.core.exceptions import InvalidOperationError, SessionConflictError, SessionNotFoundError
from flowforge.orchestrator.phase_manager import PhaseManager
from flowforge.phases import (
    BuildingRunner,
    ConfigurationRunner,
    DiscoveryRunner,
    DocumentationRunner,
    PhaseContext,
    PhaseResult,
    PhaseRunner,
    ValidationRunner,
)
from flowforge.planning.error_handler import classify_error, client_error, validation_error
from flowforge.session.models import Phase
from flowforge.session.operations import SetPhase
from flowforge.session.state import SessionState, apply_operations
from flowforge.session.store import SessionStore

logger = logging.getLogger(__name__)


def default_runners() -> dict[Phase, PhaseRunner]:
    return {
        Phase.DISCOVERY: DiscoveryRunner(),
        Phase.CONFIGURATION: ConfigurationRunner(),
        Phase.BUILDING: BuildingRunner(),
        Phase.VALIDATION: ValidationRunner(),
        Phase.DOCUMENTATION: DocumentationRunner(),
    }


class Orchestrator:
    """Drive sessions through the pipeline one phase at a time."""

    def __init__(
        self,
        store: SessionStore,
        context: PhaseContext,
        phase_manager: Optional[PhaseManager] = None,
        runners: Optional[dict[Phase, PhaseRunner]] = None,
    ):
        self.store = store
        self.context = context
        self.phase_manager = phase_manager or PhaseManager()
        self.runners = runners or default_runners()

    def create_session(self, prompt: str) -> SessionState:
        state = self.store.create_session(prompt)
        logger.info(f"Created session {state.id}", extra={"session_id": state.id, "phase": state.phase.value})
        return state

    def get_session(self, session_id: str) -> SessionState:
        return self.store.load(session_id)

    def cancel(self, session_id: str) -> SessionState:
        """Deactivate a session; a running advance stops before its next phase."""
        state = self.store.load(session_id)
        stored = self.store.save(state.model_copy(update={"active": False}), expected_version=state.version)
        logger.info(f"Cancelled session {session_id}", extra={"session_id": session_id})
        return stored

    async def run_phase(self, session_id: str, phase: Optional[Phase] = None, **inputs: Any) -> PhaseResult:
        """Run the runner for the session's current phase and persist its operations.

        Args:
            session_id: Session to run
            phase: If given, the phase the caller expects the session to be in
            **inputs: Extra runner inputs, e.g. ``clarification_response``

        Returns:
            The runner's PhaseResult. On failure the session is left untouched.
        """
        expected = phase.value if phase else None
        try:
            state = self.store.load(session_id)
        except SessionNotFoundError as e:
            return PhaseResult.failed(phase or Phase.DISCOVERY, classify_error(e, expected))

        recomputed = False
        while True:
            refusal = self._refusal(state, phase)
            if refusal is not None:
                return refusal

            runner = self.runners[state.phase]
            result = await runner.execute(state, self.context, **inputs)
            if not result.success:
                return result

            allowed = self.phase_manager.allowed_operations(state.phase)
            disallowed = sorted({op.type for op in result.operations if op.type not in allowed})
            if disallowed:
                message = f"Phase '{state.phase.value}' emitted operations it may not: {', '.join(disallowed)}"
                logger.error(message, extra={"session_id": session_id, "phase": state.phase.value})
                return PhaseResult.failed(state.phase, validation_error(message, phase=state.phase.value))

            try:
                self._persist(state, result.operations)
                return result
            except InvalidOperationError as e:
                return PhaseResult.failed(state.phase, classify_error(e, state.phase.value))
            except SessionConflictError as e:
                if recomputed:
                    return PhaseResult.failed(state.phase, classify_error(e, state.phase.value))
                recomputed = True
                logger.warning(
                    f"Session {session_id} changed during {state.phase.value}, recomputing",
                    extra={"session_id": session_id, "phase": state.phase.value},
                )
                state = self.store.load(session_id)

    async def run_discovery(self, session_id: str, **inputs: Any) -> PhaseResult:
        return await self.run_phase(session_id, Phase.DISCOVERY, **inputs)

    async def run_configuration(self, session_id: str) -> PhaseResult:
        return await self.run_phase(session_id, Phase.CONFIGURATION)

    async def run_building(self, session_id: str) -> PhaseResult:
        return await self.run_phase(session_id, Phase.BUILDING)

    async def run_validation(self, session_id: str) -> PhaseResult:
        return await self.run_phase(session_id, Phase.VALIDATION)

    async def run_documentation(self, session_id: str) -> PhaseResult:
        return await self.run_phase(session_id, Phase.DOCUMENTATION)

    async def submit_clarification(self, session_id: str, question_id: str, response: str) -> PhaseResult:
        """Answer the pending clarification and re-run discovery."""
        return await self.run_discovery(
            session_id, clarification_response={"question_id": question_id, "response": response}
        )

    async def advance(self, session_id: str) -> list[PhaseResult]:
        """Run phases and transition until the session fails, pauses or completes.

        Returns:
            The result of every phase run, in order. The last one tells why
            the loop stopped; an empty list means nothing needed running.
        """
        results: list[PhaseResult] = []
        while True:
            try:
                state = self.store.load(session_id)
            except SessionNotFoundError as e:
                results.append(PhaseResult.failed(Phase.DISCOVERY, classify_error(e)))
                return results

            if not state.active:
                logger.info(f"Session {session_id} is inactive, stopping", extra={"session_id": session_id})
                return results
            if state.phase == Phase.COMPLETE:
                return results

            if state.pending_clarifications or not state.is_phase_completed(state.phase):
                result = await self.run_phase(session_id, state.phase)
                results.append(result)
                if not result.success or result.paused:
                    return results
                state = self.store.load(session_id)
                if not state.active:
                    logger.info(f"Session {session_id} is inactive, stopping", extra={"session_id": session_id})
                    return results

            check = self.phase_manager.can_transition(state)
            if not (check.can_progress and check.auto_transition) or check.next_phase is None:
                logger.warning(
                    f"Session {session_id} cannot leave {state.phase.value}: {check.reason}",
                    extra={"session_id": session_id, "phase": state.phase.value},
                )
                results.append(
                    PhaseResult.failed(state.phase, validation_error(check.reason or "", phase=state.phase.value))
                )
                return results

            try:
                self._persist(state, [SetPhase(phase=check.next_phase)])
            except SessionConflictError:
                # Someone else moved the session; re-evaluate from its latest state.
                logger.warning(
                    f"Session {session_id} changed before transition, reloading",
                    extra={"session_id": session_id, "phase": state.phase.value},
                )
                continue
            logger.info(
                f"Session {session_id}: {state.phase.value} -> {check.next_phase.value}",
                extra={"session_id": session_id, "phase": check.next_phase.value},
            )

    def _refusal(self, state: SessionState, phase: Optional[Phase]) -> Optional[PhaseResult]:
        current = state.phase
        if current == Phase.COMPLETE:
            return PhaseResult.failed(current, client_error("Workflow already complete", phase=current.value))
        if not state.active:
            return PhaseResult.failed(current, client_error("Session was cancelled", phase=current.value))
        if phase is not None and phase != current:
            return PhaseResult.failed(
                phase,
                client_error(
                    f"Session is in phase '{current.value}', not '{phase.value}'",
                    suggestion="Use 'flowforge resume' to continue from the current phase",
                    phase=phase.value,
                ),
            )
        return None

    def _persist(self, state: SessionState, operations: list[Any]) -> SessionState:
        new_state = apply_operations(state, operations)
        return self.store.save(new_state, expected_version=state.version)
