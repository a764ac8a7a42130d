"""Resolution of ``{{ reference }}`` placeholders against an execution context.

A placeholder is a path lookup, never an expression:

- ``{{ previous.data.id }}``: the most recent step output.
- ``{{ steps.fetch.items[0] }}`` or ``{{ steps.0.items.0 }}``: a named or
  0-based indexed step's output.
- ``{{ params.user_id }}``: a parameter supplied when the execution started.

A string consisting of exactly one placeholder resolves to the referenced
value with its type preserved. Otherwise each placeholder is rendered into the
surrounding text, with dicts and lists rendered as JSON. Unresolvable
references raise ``TemplateResolutionError``; nothing is silently replaced.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterator, List, Sequence

from ..context import (
    PARAM_ROOTS,
    PREVIOUS_ROOTS,
    STEP_ROOTS,
    ExecutionContext,
    Segment,
    parse_path,
)
from ..errors import TemplateResolutionError

PLACEHOLDER = re.compile(r"\{\{\s*(.*?)\s*\}\}")


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class TemplateResolver:
    """Resolve templates in strings and nested dict/list structures."""

    def resolve(self, template: Any, context: ExecutionContext) -> Any:
        if isinstance(template, str):
            return self._resolve_string(template, context)
        if isinstance(template, dict):
            return {key: self.resolve(value, context) for key, value in template.items()}
        if isinstance(template, (list, tuple)):
            return [self.resolve(item, context) for item in template]
        return template

    def _resolve_string(self, text: str, context: ExecutionContext) -> Any:
        whole = PLACEHOLDER.fullmatch(text)
        if whole and "{{" not in whole.group(1) and "}}" not in whole.group(1):
            return self._lookup(whole.group(1), context)

        def replace(match: re.Match) -> str:
            return _render(self._lookup(match.group(1), context))

        return PLACEHOLDER.sub(replace, text)

    def _lookup(self, reference: str, context: ExecutionContext) -> Any:
        return context.lookup(parse_path(reference))

    # ------------------------------------------------------------------
    # Static checks used by workflow validation
    def references(self, template: Any) -> Iterator[str]:
        """Yield the raw reference text of every placeholder in ``template``."""
        if isinstance(template, str):
            yield from PLACEHOLDER.findall(template)
        elif isinstance(template, dict):
            for value in template.values():
                yield from self.references(value)
        elif isinstance(template, (list, tuple)):
            for item in template:
                yield from self.references(item)

    def check(
        self, template: Any, earlier_steps: Sequence[Segment], has_previous: bool
    ) -> List[str]:
        """Return problems with references that can never resolve.

        ``earlier_steps`` holds the names and indices of steps that run before
        the one owning ``template``.
        """
        problems: List[str] = []
        known = {str(s) for s in earlier_steps}
        for reference in self.references(template):
            try:
                segments = parse_path(reference)
            except TemplateResolutionError as exc:
                problems.append(exc.message)
                continue
            problem = reference_problem(segments, known, has_previous)
            if problem:
                problems.append(f"'{reference}' {problem}")
        return problems


def reference_problem(
    segments: Sequence[Segment], known_steps: set[str], has_previous: bool
) -> str | None:
    """Describe why a parsed reference can never resolve, or return ``None``."""
    root = segments[0]
    if root in PREVIOUS_ROOTS:
        return None if has_previous else "refers to a previous step but none exists"
    if root in STEP_ROOTS:
        if len(segments) < 2:
            return "needs a step name"
        if str(segments[1]) not in known_steps:
            return f"refers to step '{segments[1]}' which does not run earlier"
        return None
    if root in PARAM_ROOTS:
        return None
    return f"has unknown root '{root}'"


def contains_template(value: Any) -> bool:
    return any(True for _ in TemplateResolver().references(value))


__all__ = ["TemplateResolver", "PLACEHOLDER", "contains_template"]
