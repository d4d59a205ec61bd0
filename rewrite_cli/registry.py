"""Rule registries: a primary registry plus secondaries, searched in order."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Type

from .errors import RuleSelectionFailure
from .models import ModuleIdentity
from .rules import Rule

logger = logging.getLogger(__name__)

RuleFactory = Callable[[], Rule]


@dataclass
class RuleDescription:
    rule_id: str
    display_name: str
    description: str
    registry: str
    options: List[Tuple[str, str]] = field(default_factory=list)


@dataclass
class RuleRegistry:
    """Named set of rule factories, with the module identities that supplied them."""
    name: str
    factories: Dict[str, RuleFactory] = field(default_factory=dict)
    identities: Set[ModuleIdentity] = field(default_factory=set)

    def register(self, rule_id: str, factory: RuleFactory) -> None:
        if rule_id in self.factories:
            logger.debug("Registry %s already has %s; keeping the first", self.name, rule_id)
            return
        self.factories[rule_id] = factory

    def register_class(self, rule_cls: Type[Rule]) -> None:
        if not rule_cls.rule_id:
            raise ValueError(f"{rule_cls.__name__} does not define a rule_id")
        self.register(rule_cls.rule_id, rule_cls)

    @classmethod
    def from_classes(
        cls,
        name: str,
        rule_classes: Iterable[Type[Rule]],
        identities: Iterable[ModuleIdentity] = (),
    ) -> "RuleRegistry":
        registry = cls(name, identities=set(identities))
        for rule_cls in rule_classes:
            registry.register_class(rule_cls)
        return registry

    def merge(self, other: "RuleRegistry") -> None:
        for rule_id, factory in other.factories.items():
            self.register(rule_id, factory)
        self.identities |= other.identities

    def get(self, rule_id: str) -> Optional[RuleFactory]:
        return self.factories.get(rule_id)

    def ids(self) -> List[str]:
        return list(self.factories)

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self.factories

    def __len__(self) -> int:
        return len(self.factories)


class RegistryChain:
    """Primary registry first, then secondaries in load order; first match wins."""

    def __init__(self, primary: RuleRegistry, secondaries: Iterable[RuleRegistry] = ()) -> None:
        self.primary = primary
        self.secondaries: List[RuleRegistry] = list(secondaries)

    @property
    def registries(self) -> List[RuleRegistry]:
        return [self.primary, *self.secondaries]

    def add_secondary(self, registry: RuleRegistry) -> None:
        self.secondaries.append(registry)

    def identities(self) -> Set[ModuleIdentity]:
        known: Set[ModuleIdentity] = set()
        for registry in self.registries:
            known |= registry.identities
        return known

    def find(self, rule_id: str) -> Optional[Tuple[RuleRegistry, RuleFactory]]:
        for registry in self.registries:
            factory = registry.get(rule_id)
            if factory is not None:
                return registry, factory
        return None

    def select(self, rule_id: str) -> Rule:
        """Instantiate *rule_id* from the first registry that has it.

        Raises:
            RuleSelectionFailure: No registry knows *rule_id*.
        """
        found = self.find(rule_id)
        if found is None:
            raise RuleSelectionFailure(rule_id, self.all_ids())
        registry, factory = found
        logger.debug("Selected %s from registry %s", rule_id, registry.name)
        return factory()

    def all_ids(self) -> List[str]:
        seen: Dict[str, None] = {}
        for registry in self.registries:
            for rule_id in registry.ids():
                seen.setdefault(rule_id, None)
        return list(seen)

    def describe(self) -> List[RuleDescription]:
        descriptions: List[RuleDescription] = []
        for rule_id in self.all_ids():
            found = self.find(rule_id)
            assert found is not None
            registry, factory = found
            try:
                rule = factory()
            except Exception as exc:
                logger.warning("Cannot describe %s: %s", rule_id, exc)
                continue
            descriptions.append(RuleDescription(
                rule_id=rule_id,
                display_name=rule.display_name or rule_id,
                description=rule.description,
                registry=registry.name,
                options=[(name, spec.type_tag) for name, spec in rule.settable_fields().items()],
            ))
        return descriptions
