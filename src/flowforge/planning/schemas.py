"""Structured-output schemas for the completion calls.

Each schema is passed to the model as its output schema and used again to
validate what comes back.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from flowforge.catalog.tasks import UnmatchedCapability
from flowforge.session.models import IntentStep
from flowforge.session.operations import FixOperation


class ClarificationRequest(BaseModel):
    """A question for the user when the request is too ambiguous to build."""

    question: str = Field(description="One specific question for the user")
    context: str = Field("", description="Why the answer matters for the workflow")
    suggestions: list[str] = Field(default_factory=list, description="Likely answers the user can pick from")


class IntentAnalysis(BaseModel):
    """Discovery output: the data flow and what covers each step."""

    intent: str = Field(description="One sentence summary of what the workflow does")
    steps: list[IntentStep] = Field(
        default_factory=list, description="Ordered steps; 'after' lists predecessor step ids"
    )
    matched_tasks: list[str] = Field(default_factory=list, description="Exact task template names to use")
    unmatched_capabilities: list[UnmatchedCapability] = Field(
        default_factory=list, description="Capabilities no task template covers, with search terms"
    )
    clarification_needed: bool = Field(False, description="True only if the request cannot be built as stated")
    clarification: Optional[ClarificationRequest] = Field(None, description="Question to ask when clarification is needed")


class NodeConfiguration(BaseModel):
    """Configuration output for a single node."""

    parameters: dict[str, Any] = Field(default_factory=dict, description="n8n node parameters")
    credentials: Optional[dict[str, Any]] = Field(None, description="Credential references by credential type")
    notes: Optional[str] = Field(None, description="Anything the user must fill in by hand")
    reasoning: str = Field("", description="Short rationale for the chosen parameters")


class WorkflowFixes(BaseModel):
    """Validation output: operations that fix the reported errors."""

    fixes: list[FixOperation] = Field(default_factory=list, description="Fix operations, applied in order")
    reasoning: str = Field("", description="What was wrong and how the fixes address it")
