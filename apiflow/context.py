"""Per-execution data shared between steps."""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import TemplateResolutionError

Segment = Union[str, int]

PREVIOUS_ROOTS = ("previous", "prev")
STEP_ROOTS = ("steps", "step")
PARAM_ROOTS = ("params", "param")
ROOTS = PREVIOUS_ROOTS + STEP_ROOTS + PARAM_ROOTS

_TOKEN = re.compile(r"\[(\d+)\]|\[\"([^\"]*)\"\]|\['([^']*)'\]|([^.\[\]\s]+)")
_PATH = re.compile(
    r"^[A-Za-z_][\w-]*(?:\.[^.\[\]\s]+|\[\d+\]|\[\"[^\"]*\"\]|\['[^']*'\])*$"
)


def parse_path(path: str) -> List[Segment]:
    """Split ``steps.fetch.items[0].id`` into ``["steps", "fetch", "items", 0, "id"]``."""
    text = path.strip()
    if not _PATH.match(text):
        raise TemplateResolutionError(f"Invalid reference syntax: {path!r}")
    segments: List[Segment] = []
    for index, dquoted, squoted, name in _TOKEN.findall(text):
        if index:
            segments.append(int(index))
        elif dquoted or squoted:
            segments.append(dquoted or squoted)
        else:
            segments.append(name)
    return segments


def format_path(segments: Iterable[Segment]) -> str:
    out = ""
    for segment in segments:
        if isinstance(segment, int):
            out += f"[{segment}]"
        else:
            out += f".{segment}" if out else segment
    return out


def walk(value: Any, segments: Sequence[Segment], origin: str) -> Any:
    """Follow ``segments`` into ``value``; any gap raises ``TemplateResolutionError``."""
    current = value
    walked = origin
    for segment in segments:
        if isinstance(current, Mapping):
            key = str(segment)
            if key not in current:
                raise TemplateResolutionError(f"Field '{key}' not found in {walked}")
            current = current[key]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            if isinstance(segment, int) or str(segment).isdigit():
                position = int(segment)
            else:
                raise TemplateResolutionError(
                    f"Cannot access field '{segment}' on a list at {walked}"
                )
            if position >= len(current):
                raise TemplateResolutionError(
                    f"Index {position} out of range at {walked} (length {len(current)})"
                )
            current = current[position]
        else:
            raise TemplateResolutionError(
                f"Cannot access '{segment}' on {type(current).__name__} value at {walked}"
            )
        walked = f"{walked}[{segment}]" if isinstance(segment, int) else f"{walked}.{segment}"
    return current


class ExecutionContext:
    """Ordered outputs of completed steps plus the execution's parameters.

    Outputs are addressable by step name or by 0-based step index. The context
    lives only as long as its execution is running.
    """

    def __init__(self, parameters: Optional[Dict[str, Any]] = None) -> None:
        self.parameters: Dict[str, Any] = dict(parameters or {})
        self._outputs: Dict[int, Any] = {}
        self._names: Dict[str, int] = {}
        self._order: List[int] = []

    def set_output(self, index: int, name: str, output: Any) -> None:
        if index not in self._outputs:
            self._order.append(index)
        self._outputs[index] = output
        self._names[name] = index

    def has_output(self, alias: Segment) -> bool:
        return self._index_for(alias) is not None

    def _index_for(self, alias: Segment) -> Optional[int]:
        if isinstance(alias, str) and alias in self._names:
            return self._names[alias]
        if isinstance(alias, int) or str(alias).isdigit():
            index = int(alias)
            return index if index in self._outputs else None
        return None

    def step_output(self, alias: Segment) -> Any:
        index = self._index_for(alias)
        if index is None:
            raise TemplateResolutionError(f"No output recorded for step '{alias}'")
        return self._outputs[index]

    def previous_output(self) -> Any:
        if not self._order:
            raise TemplateResolutionError("No previous step output is available")
        return self._outputs[self._order[-1]]

    def lookup(self, segments: Sequence[Segment]) -> Any:
        """Resolve a parsed reference rooted at ``previous``, ``steps`` or ``params``."""
        if not segments:
            raise TemplateResolutionError("Empty reference")
        root = segments[0]
        if root in PREVIOUS_ROOTS:
            return walk(self.previous_output(), segments[1:], str(root))
        if root in STEP_ROOTS:
            if len(segments) < 2:
                raise TemplateResolutionError(f"Reference '{root}' needs a step name")
            alias = segments[1]
            return walk(self.step_output(alias), segments[2:], f"{root}.{alias}")
        if root in PARAM_ROOTS:
            return walk(self.parameters, segments[1:], str(root))
        raise TemplateResolutionError(
            f"Unknown reference root '{root}'; expected one of {', '.join(ROOTS)}"
        )

    def snapshot(self) -> Dict[str, Any]:
        by_index = {index: name for name, index in self._names.items()}
        return {by_index[i]: self._outputs[i] for i in self._order}

    def __len__(self) -> int:
        return len(self._order)
