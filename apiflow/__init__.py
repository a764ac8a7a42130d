"""apiflow: execution engine for multi-step HTTP API workflows."""

from .cancellation import CancellationController, CancellationToken
from .connections import (
    ConfigConnectionResolver,
    ConnectionAuth,
    ConnectionClient,
    InMemoryConnectionResolver,
)
from .contracts import StepType, WorkflowDefinition
from .dispatch import WorkflowEngine
from .execute import ExecutionOrchestrator
from .persistence import ExecutionRecord, ExecutionStatus, StepStatus, get_store
from .utils.retry import RetryDecision, RetryPolicy
from .workflows import DirectoryWorkflowSource, InMemoryWorkflowSource

__version__ = "0.1.0"
__all__ = [
    "CancellationController",
    "CancellationToken",
    "ConfigConnectionResolver",
    "ConnectionAuth",
    "ConnectionClient",
    "DirectoryWorkflowSource",
    "ExecutionOrchestrator",
    "ExecutionRecord",
    "ExecutionStatus",
    "InMemoryConnectionResolver",
    "InMemoryWorkflowSource",
    "RetryDecision",
    "RetryPolicy",
    "StepStatus",
    "StepType",
    "WorkflowDefinition",
    "WorkflowEngine",
    "get_store",
]
