"""Workflow definition contracts consumed by the execution engine."""

from __future__ import annotations

import logging
import re
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")
_STATUS_RANGE = re.compile(r"^\s*(\d{3})\s*-\s*(\d{3})\s*$")


class StepType(str, Enum):
    """Closed set of step kinds understood by the engine."""

    API_CALL = "api_call"
    TRANSFORM = "transform"
    CONDITION = "condition"


def parse_status_ranges(values: List[Union[int, str]]) -> List[tuple[int, int]]:
    """Turn ``[200, "300-399"]`` into inclusive ``(low, high)`` pairs."""
    ranges: List[tuple[int, int]] = []
    for value in values:
        if isinstance(value, int):
            ranges.append((value, value))
            continue
        text = str(value).strip()
        if text.isdigit():
            ranges.append((int(text), int(text)))
            continue
        match = _STATUS_RANGE.match(text)
        if not match:
            raise ValueError(f"Invalid status range: {value!r}")
        low, high = int(match.group(1)), int(match.group(2))
        if low > high:
            raise ValueError(f"Invalid status range: {value!r}")
        ranges.append((low, high))
    return ranges


class ApiCallConfig(BaseModel):
    """HTTP request issued by an ``api_call`` step.

    Either ``url`` (absolute) or ``path`` (relative to the connection's base
    URL) must be given. The shorthand ``action: "GET /users"`` is accepted in
    place of ``method`` and ``path``. String values anywhere in ``url``,
    ``path``, ``headers``, ``query`` and ``body`` may contain templates.
    """

    method: str = "GET"
    url: Optional[str] = None
    path: Optional[str] = None
    headers: Dict[str, Any] = Field(default_factory=dict)
    query: Dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    accept_status: Optional[List[Union[int, str]]] = None

    @model_validator(mode="before")
    @classmethod
    def _expand_action(cls, data: Any) -> Any:
        if isinstance(data, dict) and "action" in data:
            data = dict(data)
            parts = str(data.pop("action")).split()
            if len(parts) != 2:
                raise ValueError(
                    f"Invalid action format: {' '.join(parts)!r}. Expected 'METHOD /path'"
                )
            data.setdefault("method", parts[0])
            data.setdefault("path", parts[1])
        return data

    @field_validator("method", mode="before")
    @classmethod
    def _normalize_method(cls, value: Any) -> str:
        method = str(value).upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method: {value}")
        return method

    @field_validator("accept_status")
    @classmethod
    def _check_status(cls, value: Optional[List[Union[int, str]]]):
        if value is not None:
            parse_status_ranges(value)
        return value

    @model_validator(mode="after")
    def _require_target(self) -> "ApiCallConfig":
        if bool(self.url) == bool(self.path):
            raise ValueError("exactly one of 'url' or 'path' is required")
        return self

    def status_ranges(self) -> List[tuple[int, int]]:
        if self.accept_status is None:
            return [(200, 299)]
        return parse_status_ranges(self.accept_status)


TransformOp = Literal[
    "set", "copy", "rename", "remove", "compute", "map", "filter", "aggregate"
]
AggregateFunction = Literal["sum", "count", "average", "min", "max"]


class TransformOperation(BaseModel):
    """One mapping operation applied by a ``transform`` step."""

    model_config = ConfigDict(populate_by_name=True)

    op: TransformOp
    field: str
    from_: Optional[str] = Field(default=None, alias="from")
    value: Any = None
    expression: Optional[str] = None
    where: Optional[str] = None
    fields: Optional[Dict[str, str]] = None
    function: Optional[AggregateFunction] = None
    key: Optional[str] = None

    @model_validator(mode="after")
    def _check_arguments(self) -> "TransformOperation":
        needs_from = {"copy", "rename", "map", "filter", "aggregate"}
        if self.op in needs_from and not self.from_:
            raise ValueError(f"'{self.op}' operation requires 'from'")
        if self.op == "compute" and not self.expression:
            raise ValueError("'compute' operation requires 'expression'")
        if self.op == "filter" and not self.where:
            raise ValueError("'filter' operation requires 'where'")
        if self.op == "map" and not self.fields:
            raise ValueError("'map' operation requires 'fields'")
        if self.op == "aggregate":
            if self.function is None:
                raise ValueError("'aggregate' operation requires 'function'")
            if self.function != "count" and not self.key:
                raise ValueError(f"'{self.function}' aggregate requires 'key'")
        return self


class TransformConfig(BaseModel):
    """Bounded data mapping: an optional starting object plus operations."""

    source: Any = None
    operations: List[TransformOperation] = Field(default_factory=list)


ConditionOperator = Literal[
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "greater_or_equal",
    "less_or_equal",
    "contains",
    "exists",
    "not_exists",
]


class ConditionRule(BaseModel):
    """Structured comparison of a context reference against a literal."""

    field: str
    operator: ConditionOperator = "equals"
    value: Any = None


class ConditionConfig(BaseModel):
    """Either an ``expression`` in the condition grammar or a structured ``rule``."""

    expression: Optional[str] = None
    rule: Optional[ConditionRule] = None

    @model_validator(mode="after")
    def _require_one(self) -> "ConditionConfig":
        if (self.expression is None) == (self.rule is None):
            raise ValueError("exactly one of 'expression' or 'rule' is required")
        return self


class _StepBase(BaseModel):
    index: Optional[int] = None
    name: str = Field(min_length=1)
    description: Optional[str] = None

    @property
    def display_number(self) -> int:
        """1-based position shown to users."""
        return (self.index or 0) + 1


class ApiCallStep(_StepBase):
    type: Literal["api_call"] = "api_call"
    config: ApiCallConfig


class TransformStep(_StepBase):
    type: Literal["transform"] = "transform"
    config: TransformConfig


class ConditionStep(_StepBase):
    type: Literal["condition"] = "condition"
    config: ConditionConfig


StepDefinition = Annotated[
    Union[ApiCallStep, TransformStep, ConditionStep], Field(discriminator="type")
]


class WorkflowDefinition(BaseModel):
    """Read-only workflow supplied by the authoring service."""

    id: str
    name: str
    description: Optional[str] = None
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    connection_id: Optional[str] = None
    steps: List[StepDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _assign_indices(self) -> "WorkflowDefinition":
        for position, step in enumerate(self.steps):
            if step.index is None:
                step.index = position
            elif step.index != position:
                raise ValueError(
                    f"step '{step.name}' has index {step.index} but is at position {position}"
                )
        return self

    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]

    @classmethod
    def from_yaml(cls, text: str) -> "WorkflowDefinition":
        """Parse a workflow from a YAML document."""
        data = yaml.safe_load(text) or {}
        return cls.model_validate(data)

    @classmethod
    def load(cls, path: str | Path) -> "WorkflowDefinition":
        """Load a workflow from a YAML or JSON file."""
        with open(path) as f:
            workflow = cls.from_yaml(f.read())
        logger.debug(f"Loaded workflow {workflow.id} from {path}")
        return workflow


__all__ = [
    "StepType",
    "ApiCallConfig",
    "TransformOperation",
    "TransformConfig",
    "ConditionRule",
    "ConditionConfig",
    "ApiCallStep",
    "TransformStep",
    "ConditionStep",
    "StepDefinition",
    "WorkflowDefinition",
    "parse_status_ranges",
    "HTTP_METHODS",
]
