"""Declarative rules defined in a YAML rule file (``rewrite.yml``).

Each document whose ``type`` ends with ``/recipe`` defines one composite rule::

    type: specs.openrewrite.org/v1beta/recipe
    name: com.example.Cleanup
    displayName: Tidy text files
    recipeList:
      - rewrite.text.TrailingWhitespace
      - rewrite.text.FindAndReplace:
          find: colour
          replace: color

Entries are resolved through the registry chain when the rule is
instantiated, so they may name built-in, extension or other declarative
rules.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from .errors import DeclarativeRulesInvalid, RuleSelectionFailure
from .registry import RegistryChain, RuleRegistry
from .rules import CompositeRule, configure_rule

logger = logging.getLogger(__name__)

RULE_TYPE_SUFFIX = "/recipe"


@dataclass
class DeclarativeRuleSpec:
    name: str
    display_name: str = ""
    description: str = ""
    entries: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)


def parse_rule_documents(text: str, origin: str) -> List[DeclarativeRuleSpec]:
    try:
        documents = [d for d in yaml.safe_load_all(text) if d is not None]
    except yaml.YAMLError as exc:
        raise DeclarativeRulesInvalid(origin, str(exc)) from exc

    specs: List[DeclarativeRuleSpec] = []
    for doc in documents:
        if not isinstance(doc, dict):
            raise DeclarativeRulesInvalid(origin, "every document must be a mapping")
        if not str(doc.get("type", "")).endswith(RULE_TYPE_SUFFIX):
            logger.debug("Ignoring document of type %r in %s", doc.get("type"), origin)
            continue
        name = doc.get("name")
        if not name:
            raise DeclarativeRulesInvalid(origin, "rule document without a name")
        specs.append(DeclarativeRuleSpec(
            name=str(name),
            display_name=str(doc.get("displayName") or ""),
            description=str(doc.get("description") or ""),
            entries=[_parse_entry(origin, name, e) for e in doc.get("recipeList") or []],
        ))
    return specs


def _parse_entry(origin: str, name: str, entry: Any) -> Tuple[str, Dict[str, Any]]:
    if isinstance(entry, str):
        return entry, {}
    if isinstance(entry, dict) and len(entry) == 1:
        rule_id, options = next(iter(entry.items()))
        if options is None:
            options = {}
        if not isinstance(options, dict):
            raise DeclarativeRulesInvalid(origin, f"options of {rule_id} in {name} must be a mapping")
        return str(rule_id), options
    raise DeclarativeRulesInvalid(origin, f"unsupported recipeList entry in {name}: {entry!r}")


class DeclarativeRuleSet:
    """Registry of declarative rules whose entries resolve through *chain*."""

    def __init__(self, specs: List[DeclarativeRuleSpec], chain: RegistryChain, origin: str = "") -> None:
        self.specs = {spec.name: spec for spec in specs}
        self.chain = chain
        self.origin = origin
        self._building: List[str] = []
        self.registry = RuleRegistry(f"declarative:{origin}" if origin else "declarative")
        for spec in specs:
            self.registry.register(spec.name, self._factory(spec.name))

    def _factory(self, name: str):
        return lambda: self.build(name)

    @property
    def names(self) -> List[str]:
        return list(self.specs)

    def build(self, name: str) -> CompositeRule:
        if name in self._building:
            cycle = " -> ".join(self._building + [name])
            raise RuleSelectionFailure(name, reason=f"Declarative rule cycle: {cycle}")
        spec = self.specs[name]
        self._building.append(name)
        try:
            rules = []
            for rule_id, options in spec.entries:
                rule = self.chain.select(rule_id)
                rules.append(configure_rule(rule, options))
        finally:
            self._building.pop()
        return CompositeRule(spec.name, rules, spec.display_name, spec.description)


def load_declarative_rules(path: Path, chain: RegistryChain) -> DeclarativeRuleSet:
    """Parse *path* and append its rules to *chain* as a secondary registry."""
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise DeclarativeRulesInvalid(str(path), str(exc)) from exc
    rule_set = DeclarativeRuleSet(parse_rule_documents(text, str(path)), chain, str(path))
    chain.add_secondary(rule_set.registry)
    logger.info("Loaded %d declarative rule(s) from %s", len(rule_set.specs), path)
    return rule_set
