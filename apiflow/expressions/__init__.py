"""Template, condition and transform expression handling."""

from .conditions import CompiledCondition, ConditionEvaluator
from .templates import PLACEHOLDER, TemplateResolver, contains_template
from .transforms import TransformMapper

__all__ = [
    "CompiledCondition",
    "ConditionEvaluator",
    "PLACEHOLDER",
    "TemplateResolver",
    "TransformMapper",
    "contains_template",
]
