"""Rule contract and type-checked option configuration.

A rule declares its options as dataclass fields created with
:func:`option`. The engine only ever talks to a rule through
``visit``/``generate``; configuration only through
:meth:`Rule.settable_fields`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, fields
from datetime import timedelta
from functools import partial
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .errors import RuleFieldConfigurationFailure

if TYPE_CHECKING:
    from .engine import ExecutionContext
    from .models import SourceUnit

logger = logging.getLogger(__name__)

OPTION_TYPES = ("string", "boolean", "int", "long")

_INT_BOUNDS = {
    "int": (-(2 ** 31), 2 ** 31 - 1),
    "long": (-(2 ** 63), 2 ** 63 - 1),
}
_INTEGER = re.compile(r"[+-]?\d+")


def option(
    type_tag: str = "string",
    default: Any = None,
    description: str = "",
    required: bool = False,
) -> Any:
    """Declare a configurable rule field."""
    if type_tag not in OPTION_TYPES:
        raise ValueError(f"Unsupported option type '{type_tag}'")
    return field(
        default=default,
        metadata={"option_type": type_tag, "description": description, "required": required},
    )


@dataclass(frozen=True)
class SettableField:
    name: str
    type_tag: str
    setter: Callable[[Any], None]
    description: str = ""
    required: bool = False


@dataclass
class Rule:
    """Base class for every rule, built-in, declarative or loaded from an extension."""

    rule_id: ClassVar[str] = ""
    display_name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    time_saved_per_change: ClassVar[timedelta] = timedelta(minutes=5)

    @property
    def name(self) -> str:
        return self.rule_id or type(self).__name__

    def settable_fields(self) -> Dict[str, SettableField]:
        settable: Dict[str, SettableField] = {}
        for f in fields(self):
            type_tag = f.metadata.get("option_type")
            if type_tag is None:
                continue
            settable[f.name] = SettableField(
                name=f.name,
                type_tag=type_tag,
                setter=partial(setattr, self, f.name),
                description=f.metadata.get("description", ""),
                required=f.metadata.get("required", False),
            )
        return settable

    def validate(self) -> List[str]:
        """Constraint violations; reported as warnings, never fatal by default."""
        return [
            f"{self.name}: required option '{name}' is not set"
            for name, spec in self.settable_fields().items()
            if spec.required and getattr(self, name) in (None, "")
        ]

    def sub_rules(self) -> List["Rule"]:
        return []

    @property
    def is_composite(self) -> bool:
        return bool(self.sub_rules())

    def visit(self, unit: "SourceUnit", ctx: "ExecutionContext") -> Optional["SourceUnit"]:
        """Return the transformed unit, the same unit when untouched, or None to delete it."""
        return unit

    def generate(self, units: Sequence["SourceUnit"], ctx: "ExecutionContext") -> List["SourceUnit"]:
        """New units to create, given every ingested unit."""
        return []


class CompositeRule(Rule):
    """A named, ordered list of rules run one after another."""

    def __init__(
        self,
        rule_id: str,
        rules: Iterable[Rule],
        display_name: str = "",
        description: str = "",
    ) -> None:
        self.rule_id = rule_id  # type: ignore[misc]
        self.display_name = display_name or rule_id  # type: ignore[misc]
        self.description = description  # type: ignore[misc]
        self.rules = list(rules)

    def settable_fields(self) -> Dict[str, SettableField]:
        return {}

    def sub_rules(self) -> List[Rule]:
        return list(self.rules)

    def validate(self) -> List[str]:
        messages: List[str] = []
        for rule in self.rules:
            messages.extend(rule.validate())
        return messages

    def __repr__(self) -> str:
        return f"CompositeRule({self.rule_id!r}, {[r.name for r in self.rules]!r})"


def leaf_rules(rule: Rule) -> List[Rule]:
    """Depth-first list of the non-composite rules under *rule*."""
    subs = rule.sub_rules()
    if not subs:
        return [rule]
    leaves: List[Rule] = []
    for sub in subs:
        leaves.extend(leaf_rules(sub))
    return leaves


# ===================================================================
# Configuration
# ===================================================================

def parse_options(rule_id: str, options: Union[Mapping[str, Any], Sequence[str], None]) -> Dict[str, str]:
    """Normalise ``key=value`` strings (split on the first ``=``) or a mapping."""
    if not options:
        return {}
    if isinstance(options, Mapping):
        return {str(k).strip(): _as_text(v) for k, v in options.items()}
    values: Dict[str, str] = {}
    for item in options:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise RuleFieldConfigurationFailure(rule_id, f"Invalid rule option '{item}': expected key=value")
        values[key.strip()] = value.strip()
    return values


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def coerce_value(rule_id: str, key: str, type_tag: str, raw: str) -> Any:
    if type_tag == "string":
        return raw
    if type_tag == "boolean":
        lowered = raw.strip().lower()
        if lowered not in ("true", "false"):
            raise RuleFieldConfigurationFailure(
                rule_id, f"Invalid value '{raw}' for option '{key}': expected true or false"
            )
        return lowered == "true"
    if type_tag in _INT_BOUNDS:
        text = raw.strip()
        low, high = _INT_BOUNDS[type_tag]
        if not _INTEGER.fullmatch(text) or not low <= int(text) <= high:
            raise RuleFieldConfigurationFailure(
                rule_id, f"Invalid value '{raw}' for option '{key}': expected a {type_tag} integer"
            )
        return int(text)
    raise RuleFieldConfigurationFailure(rule_id, f"Option '{key}' has unsupported type '{type_tag}'")


def configure_rule(rule: Rule, options: Union[Mapping[str, Any], Sequence[str], None]) -> Rule:
    """Apply option overrides to *rule* in place and return it.

    Raises:
        RuleFieldConfigurationFailure: The rule is composite, a key is not
            a settable field, or a value cannot be coerced to its type.
    """
    values = parse_options(rule.name, options)
    if not values:
        return rule
    if rule.is_composite:
        raise RuleFieldConfigurationFailure(
            rule.name, f"Rule '{rule.name}' is composite; options cannot be applied to it"
        )

    settable = rule.settable_fields()
    unknown = [key for key in values if key not in settable]
    if unknown:
        raise RuleFieldConfigurationFailure(
            rule.name, f"Unknown rule options: {', '.join(unknown)}", unknown=unknown
        )

    coerced = {key: coerce_value(rule.name, key, settable[key].type_tag, raw) for key, raw in values.items()}
    for key, value in coerced.items():
        settable[key].setter(value)
        logger.debug("Set %s.%s = %r", rule.name, key, value)
    return rule
