"""Load rule classes from extension packages (``.whl``, ``.zip`` or ``.py``).

Extension code runs inside an import scope: ``sys.modules`` and
``sys.path`` are restored afterwards, so the host's module set is the same
before and after loading. Rule classes keep working because they hold
their own module globals.
"""

from __future__ import annotations

import importlib
import importlib.util
import inspect
import logging
import re
import sys
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Dict, Iterable, Iterator, List, Optional, Set, Type

from .classpath import ClasspathAssembler, looks_like_path
from .errors import ArtifactResolutionError
from .models import Coordinate, ModuleIdentity
from .registry import RegistryChain, RuleRegistry
from .rules import Rule

logger = logging.getLogger(__name__)

EXTENSION_SUFFIXES = (".whl", ".zip", ".py")

_VERSIONED_STEM = re.compile(r"^(?P<name>.+?)-(?P<version>\d[\w.+!]*)$")


@dataclass(frozen=True)
class ExtensionPackage:
    source: str
    path: Path
    identity: ModuleIdentity


@dataclass
class LoadedExtensions:
    packages: List[ExtensionPackage] = field(default_factory=list)
    registries: List[RuleRegistry] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def rule_ids(self) -> List[str]:
        return [rule_id for registry in self.registries for rule_id in registry.ids()]

    @property
    def is_empty(self) -> bool:
        return not self.packages


def identity_from_filename(path: Path) -> ModuleIdentity:
    """Version-stripped identity for a package given only by its file."""
    suffix = path.suffix.lower()
    stem = path.name[: -len(suffix)] if suffix else path.name
    if suffix == ".whl":
        # name-version(-build)?-python-abi-platform
        name = stem.split("-", 1)[0]
    else:
        match = _VERSIONED_STEM.match(stem)
        name = match.group("name") if match else stem
    return ModuleIdentity("file", name.replace("_", "-").lower(), None, suffix.lstrip("."))


@contextmanager
def isolated_imports(extra_path: Optional[Path] = None) -> Iterator[Dict[str, ModuleType]]:
    """Run imports whose effects on ``sys.modules``/``sys.path`` are undone on exit.

    Yields a dict that, on exit, holds the modules imported inside the scope.
    """
    modules_before = dict(sys.modules)
    path_before = list(sys.path)
    imported: Dict[str, ModuleType] = {}
    if extra_path is not None:
        sys.path.insert(0, str(extra_path))
    try:
        yield imported
    finally:
        for name, module in list(sys.modules.items()):
            if name not in modules_before:
                imported[name] = module
                del sys.modules[name]
            elif modules_before[name] is not module:
                imported[name] = module
                sys.modules[name] = modules_before[name]
        sys.path[:] = path_before
        importlib.invalidate_caches()


def _archive_top_level(path: Path) -> List[str]:
    names: Set[str] = set()
    with zipfile.ZipFile(path) as archive:
        for entry in archive.namelist():
            head = entry.split("/", 1)[0]
            if head.endswith((".dist-info", ".data")) or head.startswith(("_", ".")):
                continue
            if "/" in entry and entry.split("/", 1)[1] == "__init__.py":
                names.add(head)
            elif "/" not in entry and entry.endswith(".py"):
                names.add(entry[:-3])
    return sorted(names)


def _rule_classes(modules: Iterable[ModuleType]) -> List[Type[Rule]]:
    found: List[Type[Rule]] = []
    for module in modules:
        for _, obj in inspect.getmembers(module, inspect.isclass):
            if (
                issubclass(obj, Rule)
                and obj.__module__ == module.__name__
                and obj.rule_id
                and not inspect.isabstract(obj)
                and obj not in found
            ):
                found.append(obj)
    return found


class ExtensionLoader:
    """Turn extension entries (paths or coordinates) into secondary registries."""

    def __init__(
        self,
        assembler: Optional[ClasspathAssembler] = None,
        enabled: bool = True,
        extend_host_registry: bool = False,
    ) -> None:
        self.assembler = assembler
        self.enabled = enabled
        self.extend_host_registry = extend_host_registry
        self._counter = 0

    def load(self, entries: Iterable[str], chain: RegistryChain) -> LoadedExtensions:
        entries = [e.strip() for e in entries if e and e.strip()]
        loaded = LoadedExtensions()
        if not entries:
            return loaded
        if not self.enabled:
            logger.info("Extension loading is disabled by configuration; ignoring %d entr(ies)", len(entries))
            loaded.skipped.extend(entries)
            return loaded
        if getattr(sys, "frozen", False):
            logger.info("Extension loading is unavailable in a frozen interpreter; ignoring %d entr(ies)", len(entries))
            loaded.skipped.extend(entries)
            return loaded

        known = chain.identities()
        for entry in entries:
            package = self._locate(entry)
            if package is None:
                loaded.skipped.append(entry)
                continue
            if package.identity in known:
                logger.info("Extension %s is already loaded; skipping %s", package.identity, entry)
                loaded.skipped.append(entry)
                continue
            known.add(package.identity)

            try:
                rule_classes = self._load_rule_classes(package.path)
            except Exception as exc:
                logger.warning("Failed to load extension %s: %s", entry, exc)
                loaded.skipped.append(entry)
                continue

            registry = RuleRegistry.from_classes(f"extension:{package.path.name}", rule_classes, [package.identity])
            chain.add_secondary(registry)
            if self.extend_host_registry:
                chain.primary.merge(registry)
                logger.info("Merged %d rule(s) from %s into the host registry", len(registry), package.path.name)
            else:
                logger.debug("Not merging %s into the host registry (extend_host_registry is off)", package.path.name)
            loaded.packages.append(package)
            loaded.registries.append(registry)
            logger.info("Loaded %d rule(s) from %s", len(registry), package.path.name)
        return loaded

    def _locate(self, entry: str) -> Optional[ExtensionPackage]:
        identity: Optional[ModuleIdentity] = None
        if looks_like_path(entry):
            path = Path(entry).expanduser()
        else:
            try:
                coordinate = Coordinate.parse(entry)
            except ValueError as exc:
                logger.warning("Skipping extension %s: %s", entry, exc)
                return None
            if self.assembler is None:
                logger.warning("Skipping extension %s: no artifact resolver configured", entry)
                return None
            try:
                path = self.assembler.resolver.resolve(coordinate)
            except ArtifactResolutionError as exc:
                logger.warning("Skipping extension %s: %s", entry, exc.message)
                return None
            identity = coordinate.identity

        if not path.is_file():
            logger.warning("Skipping extension %s: file does not exist", entry)
            return None
        if path.suffix.lower() not in EXTENSION_SUFFIXES:
            logger.warning(
                "Skipping extension %s: expected one of %s", entry, ", ".join(EXTENSION_SUFFIXES)
            )
            return None
        return ExtensionPackage(entry, path, identity or identity_from_filename(path))

    def _load_rule_classes(self, path: Path) -> List[Type[Rule]]:
        if path.suffix.lower() == ".py":
            self._counter += 1
            module_name = f"_rewrite_extension_{self._counter}_{path.stem}"
            with isolated_imports(path.parent) as imported:
                spec = importlib.util.spec_from_file_location(module_name, path)
                if spec is None or spec.loader is None:
                    raise ImportError(f"cannot create a module spec for {path}")
                module = importlib.util.module_from_spec(spec)
                sys.modules[module_name] = module
                spec.loader.exec_module(module)
            return _rule_classes(imported.values())

        top_level = _archive_top_level(path)
        if not top_level:
            logger.warning("Extension %s contains no importable modules", path.name)
            return []
        with isolated_imports(path) as imported:
            for name in top_level:
                importlib.import_module(name)
        return _rule_classes(imported.values())
