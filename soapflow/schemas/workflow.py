"""Pydantic schemas for reusable workflows and their execution results."""

from datetime import datetime
from typing import Annotated, Literal, Any, Union
from pydantic import Field

from soapflow.schemas.base import CamelModel
from soapflow.schemas.api_assertions import Extractor
from soapflow.schemas.api_request import ApiRequest, ApiResponse


class BaseWorkflowStep(CamelModel):
    id: str
    name: str
    order: float = 0
    extractors: list[Extractor] = Field(default_factory=list)


class WorkflowRequestStep(BaseWorkflowStep):
    type: Literal["request"] = "request"
    request: ApiRequest | None = None


class WorkflowDelayStep(BaseWorkflowStep):
    type: Literal["delay"] = "delay"
    delay_ms: int | None = None


class WorkflowConditionStep(BaseWorkflowStep):
    type: Literal["condition"] = "condition"
    condition: dict[str, Any] | None = None


class WorkflowLoopStep(BaseWorkflowStep):
    type: Literal["loop"] = "loop"
    loop: dict[str, Any] | None = None


class WorkflowScriptStep(BaseWorkflowStep):
    type: Literal["script"] = "script"
    script: str | None = None


WorkflowStep = Annotated[
    Union[
        WorkflowRequestStep,
        WorkflowDelayStep,
        WorkflowConditionStep,
        WorkflowLoopStep,
        WorkflowScriptStep,
    ],
    Field(discriminator="type"),
]


class Workflow(CamelModel):
    """A reusable, independently invokable sequence of steps."""
    id: str
    name: str
    description: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    steps: list[WorkflowStep] = Field(default_factory=list)


class WorkflowStepResult(CamelModel):
    step_id: str
    step_name: str
    start_time: datetime
    end_time: datetime
    duration: int  # milliseconds
    status: Literal["success", "failed"]
    response: ApiResponse | None = None
    status_code: int | None = None
    extracted_values: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class WorkflowExecutionResult(CamelModel):
    workflow_id: str
    workflow_name: str
    start_time: datetime
    end_time: datetime
    status: Literal["completed", "failed"]
    step_results: list[WorkflowStepResult] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
