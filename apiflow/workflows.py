"""Sources of workflow definitions and endpoint metadata."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from pydantic import BaseModel

from .contracts import WorkflowDefinition
from .errors import NotFoundError

logger = logging.getLogger(__name__)


class WorkflowSource(Protocol):
    """Read-only access to workflow definitions."""

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        """Return the workflow or raise ``NotFoundError``."""


class InMemoryWorkflowSource(WorkflowSource):
    def __init__(self, workflows: Iterable[WorkflowDefinition] = ()) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {w.id: w for w in workflows}

    def add(self, workflow: WorkflowDefinition) -> None:
        self._workflows[workflow.id] = workflow

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        try:
            return self._workflows[workflow_id].model_copy(deep=True)
        except KeyError:
            raise NotFoundError(f"Workflow not found: {workflow_id}") from None


class DirectoryWorkflowSource(WorkflowSource):
    """Workflows stored as ``*.yaml``/``*.yml``/``*.json`` files in a directory."""

    PATTERNS = ("*.yaml", "*.yml", "*.json")

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _files(self) -> List[Path]:
        files: List[Path] = []
        for pattern in self.PATTERNS:
            files.extend(sorted(self.directory.glob(pattern)))
        return files

    def list_workflows(self) -> List[WorkflowDefinition]:
        workflows = []
        for path in self._files():
            try:
                workflows.append(WorkflowDefinition.load(path))
            except Exception as exc:
                logger.warning(f"Skipping invalid workflow file {path}: {exc}")
        return workflows

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        for path in self._files():
            if path.stem == workflow_id:
                workflow = WorkflowDefinition.load(path)
                if workflow.id == workflow_id:
                    return workflow
        for workflow in self.list_workflows():
            if workflow.id == workflow_id:
                return workflow
        raise NotFoundError(f"Workflow not found: {workflow_id}")


# ----------------------------------------------------------------------
# Endpoint metadata


class Endpoint(BaseModel):
    """One operation exposed by a connection, e.g. from its OpenAPI document."""

    method: str
    path: str
    summary: Optional[str] = None

    def matches(self, method: str, path: str) -> bool:
        if self.method.upper() != method.upper():
            return False
        pattern = re.sub(r"\\\{[^}]+\\\}", r"[^/]+", re.escape(self.path.rstrip("/")))
        return re.fullmatch(pattern, path.split("?", 1)[0].rstrip("/")) is not None


class EndpointCatalog(Protocol):
    """Optional metadata used to reject calls to unknown endpoints up front."""

    async def get_endpoints(self, connection_id: str) -> List[Endpoint] | None:
        """Return known endpoints, or ``None`` when nothing is known."""


class InMemoryEndpointCatalog(EndpointCatalog):
    def __init__(self, endpoints: Optional[Dict[str, List[Endpoint]]] = None) -> None:
        self._endpoints = dict(endpoints or {})

    async def get_endpoints(self, connection_id: str) -> List[Endpoint] | None:
        return self._endpoints.get(connection_id)


async def check_endpoints(
    workflow: WorkflowDefinition, catalog: EndpointCatalog
) -> List[str]:
    """Return problems for relative ``api_call`` paths missing from the catalog.

    Paths that still contain templates are matched with each placeholder
    treated as a single path segment.
    """
    if not workflow.connection_id:
        return []
    endpoints = await catalog.get_endpoints(workflow.connection_id)
    if endpoints is None:
        return []
    problems = []
    for step in workflow.steps:
        if step.type != "api_call" or not step.config.path:
            continue
        path = re.sub(r"\{\{.*?\}\}", "x", step.config.path)
        if not any(e.matches(step.config.method, path) for e in endpoints):
            problems.append(
                f"Step {step.display_number} ({step.name}): {step.config.method} "
                f"{step.config.path} is not an endpoint of {workflow.connection_id}"
            )
    return problems


__all__ = [
    "WorkflowSource",
    "InMemoryWorkflowSource",
    "DirectoryWorkflowSource",
    "Endpoint",
    "EndpointCatalog",
    "InMemoryEndpointCatalog",
    "check_endpoints",
]
