"""Pydantic models for scripted procedures."""

import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class TriggerType(StrEnum):
    KEYWORD = "keyword"
    INTENT = "intent"
    MANUAL = "manual"


class StepType(StrEnum):
    MESSAGE = "message"
    API_CALL = "api_call"
    DATA_LOOKUP = "data_lookup"
    CONDITIONAL = "conditional"
    APPROVAL = "approval"


class ProcedureTrigger(BaseModel):
    """How a procedure is selected for a message.

    ``condition`` is a comma-separated keyword list for keyword triggers and
    a phrase for intent triggers.
    """

    type: TriggerType
    condition: str = ""


class ProcedureStep(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    type: StepType
    config: dict[str, Any] = Field(default_factory=dict)
    next_step: str | None = None


class Procedure(BaseModel):
    """A tenant-authored multi-step workflow."""

    id: str
    tenant_id: str
    name: str
    description: str = ""
    trigger: ProcedureTrigger | None = None
    steps: list[ProcedureStep] = Field(default_factory=list)
    enabled: bool = True
    version: int = 1

    @field_validator("trigger", "steps", mode="before")
    @classmethod
    def _parse_json(cls, value: Any) -> Any:
        """Stored rows may hold these fields as JSON strings."""
        if isinstance(value, str):
            return json.loads(value)
        return value


class ProcedureContext(BaseModel):
    tenant_id: str
    conversation_id: str
    user_id: str | None = None
    variables: dict[str, Any] = Field(
        default_factory=dict, description="Template variables for {{path}} interpolation"
    )
    dry_run: bool = False


class StepResult(BaseModel):
    step_id: str
    type: StepType
    success: bool
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class ProcedureResult(BaseModel):
    procedure_id: str
    procedure_name: str
    success: bool
    steps: list[StepResult] = Field(default_factory=list)
    final_message: str | None = None
    error: str | None = None
