"""Executor for ``api_call`` steps."""

from __future__ import annotations

import logging
from typing import Any, List, Sequence

import httpx

from ..context import ExecutionContext, Segment
from ..contracts import ApiCallConfig, ApiCallStep, StepType
from ..errors import status_error
from .base import StepExecutor, StepOutcome, StepRuntime

logger = logging.getLogger(__name__)

_TEMPLATED_FIELDS = ("url", "path", "headers", "query", "body")
_BODY_PREVIEW = 200


def parse_response(response: httpx.Response) -> Any:
    """JSON bodies become parsed data; anything else is returned as text."""
    content_type = response.headers.get("content-type", "")
    if not response.content:
        return None
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


class ApiCallExecutor(StepExecutor):
    step_type = StepType.API_CALL

    def validate(
        self, step: ApiCallStep, earlier_steps: Sequence[Segment], has_previous: bool
    ) -> List[str]:
        problems: List[str] = []
        for name in _TEMPLATED_FIELDS:
            problems.extend(
                f"{name}: {problem}"
                for problem in self.templates.check(
                    getattr(step.config, name), earlier_steps, has_previous
                )
            )
        return problems

    def resolve(self, step: ApiCallStep, context: ExecutionContext) -> ApiCallConfig:
        config = step.config
        return config.model_copy(
            update={
                name: self.templates.resolve(getattr(config, name), context)
                for name in _TEMPLATED_FIELDS
            }
        )

    async def execute(
        self,
        step: ApiCallStep,
        config: ApiCallConfig,
        context: ExecutionContext,
        runtime: StepRuntime,
    ) -> StepOutcome:
        client = runtime.client
        target = str(config.url or config.path)
        response = await client.request(
            config.method,
            target,
            headers=config.headers,
            params=config.query,
            json=config.body,
        )
        logger.debug(f"{config.method} {target} -> {response.status_code}")

        if not any(low <= response.status_code <= high for low, high in config.status_ranges()):
            preview = response.text[:_BODY_PREVIEW]
            message = f"{config.method} {target} returned {response.status_code}"
            if preview:
                message = f"{message}: {preview}"
            raise status_error(response.status_code, client.redact(message))

        return StepOutcome(output=parse_response(response))
