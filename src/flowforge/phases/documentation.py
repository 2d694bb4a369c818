"""Documentation: lay the workflow out by visual phase and annotate each phase."""

import logging
from typing import Any, Optional

from flowforge.core.exceptions import BuildError
from flowforge.phases.base import PhaseContext, PhaseResult, PhaseRunner
from flowforge.phases.layout import plan_layout
from flowforge.session.models import Phase
from flowforge.session.operations import AddStickyNote, CompletePhase, SetWorkflow
from flowforge.session.state import SessionState

logger = logging.getLogger(__name__)


class DocumentationRunner(PhaseRunner):
    """Reposition nodes and add one sticky note per active visual phase.

    Interface:
    - Reads: state.workflow
    - Operations: setWorkflow, addStickyNote, completePhase
    """

    phase = Phase.DOCUMENTATION

    async def run_phase(self, state: SessionState, context: Optional[PhaseContext] = None, **_: Any) -> PhaseResult:
        if not state.workflow.nodes:
            raise BuildError("There is no workflow to document")

        plan = plan_layout(state.workflow)
        operations: list[Any] = [SetWorkflow(workflow=plan.workflow)]
        for visual_phase, note, node_ids in plan.notes:
            operations.append(AddStickyNote(note=note, visual_phase=visual_phase, node_ids=node_ids))
        operations.append(CompletePhase(phase=self.phase))

        logger.info(
            f"DocumentationRunner: {len(plan.notes)} phase notes, pattern '{plan.hints['pattern']}'",
            extra={"phase": self.phase.value, "session_id": state.id},
        )
        return PhaseResult(
            phase=self.phase,
            operations=operations,
            layout_hints=plan.hints,
            metrics={"sticky_notes": len(plan.notes)},
        )
