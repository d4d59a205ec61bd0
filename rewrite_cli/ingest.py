"""Source ingestion: walk a project tree and parse every file into a unit."""

from __future__ import annotations

import fnmatch
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import config
from .errors import ParseFailure
from .markers import ProvenanceBundle
from .models import SourceUnit
from .parser import (
    JVM_LANGUAGES,
    LANGUAGE_MAP,
    PLAIN_TEXT_KIND,
    RESOURCE_MAP,
    SourceParser,
    TreeSitterSourceParser,
    TypeContext,
    build_parsers,
    opaque_unit,
)

logger = logging.getLogger(__name__)


def glob_match(rel_path: str, pattern: str) -> bool:
    """Match a relative posix path against a glob where ``**`` spans directories."""
    return _match_segments(rel_path.split("/"), pattern.strip("/").split("/"))


def _match_segments(parts: Sequence[str], pattern: Sequence[str]) -> bool:
    if not pattern:
        return not parts
    head = pattern[0]
    if head == "**":
        # Zero or more whole segments.
        return any(_match_segments(parts[i:], pattern[1:]) for i in range(len(parts) + 1))
    if not parts:
        return False
    return fnmatch.fnmatchcase(parts[0], head) and _match_segments(parts[1:], pattern[1:])


def matches_any(rel_path: str, patterns: Iterable[str]) -> bool:
    return any(glob_match(rel_path, p) for p in patterns)


def has_compiled_sources(root: Path, exclusion_globs: Iterable[str] = ()) -> bool:
    """True when the tree holds at least one Java or Kotlin file."""
    jvm_suffixes = {ext for ext, lang in LANGUAGE_MAP.items() if lang in JVM_LANGUAGES}
    return any(p.suffix in jvm_suffixes for p, _ in discover_files(root, exclusion_globs))


def discover_files(root: Path, exclusion_globs: Iterable[str] = ()) -> List[Tuple[Path, str]]:
    """Files under *root* in a stable order, with their relative posix paths."""
    exclusions = list(exclusion_globs)
    found: List[Tuple[Path, str]] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames
            if d not in config.SKIP_DIRS and not d.startswith(".")
        )
        for name in sorted(filenames):
            path = Path(dirpath) / name
            rel = path.relative_to(root).as_posix()
            if exclusions and matches_any(rel, exclusions):
                logger.debug("Excluded %s", rel)
                continue
            if path.is_symlink() and not path.exists():
                continue
            found.append((path, rel))
    return found


class SourceIngestion:
    """Turn a project tree into an ordered list of stamped source units.

    Args:
        root: Project root; unit paths are relative to it.
        exclusion_globs: Relative-path globs that are never ingested.
        plain_text_masks: Globs of files ingested as plain text when no
            language or resource parser claims them.
        type_context: Classpath symbols for compiled-language parsers.
        provenance: Markers stamped on every unit.
    """

    def __init__(
        self,
        root: Path,
        exclusion_globs: Iterable[str] = (),
        plain_text_masks: Optional[Iterable[str]] = None,
        size_threshold_mb: int = config.DEFAULT_SIZE_THRESHOLD_MB,
        type_context: Optional[TypeContext] = None,
        provenance: Optional[ProvenanceBundle] = None,
        workers: int = config.PARSER_WORKERS,
        parsers: Optional[Dict[str, SourceParser]] = None,
    ) -> None:
        self.root = Path(root)
        self.exclusion_globs = list(exclusion_globs)
        masks = list(plain_text_masks) if plain_text_masks else []
        self.plain_text_masks = masks or list(config.DEFAULT_PLAIN_TEXT_MASKS)
        self.size_threshold_bytes = size_threshold_mb * 1024 * 1024
        self.type_context = type_context or TypeContext()
        self.provenance = provenance
        self.workers = max(1, workers)
        self.parsers = parsers or build_parsers(self.type_context, self.size_threshold_bytes)
        self.failures: List[ParseFailure] = []

    def classify(self, rel_path: str) -> Optional[str]:
        """Kind of parser responsible for *rel_path*, or None to skip it."""
        suffix = Path(rel_path).suffix
        language = LANGUAGE_MAP.get(suffix)
        if language and language in self.parsers:
            return language
        resource = RESOURCE_MAP.get(suffix)
        if resource and resource in self.parsers:
            return resource
        if matches_any(rel_path, self.plain_text_masks):
            return PLAIN_TEXT_KIND
        return None

    def ingest(self) -> List[SourceUnit]:
        groups: Dict[str, List[Tuple[int, Path, str]]] = {}
        files = discover_files(self.root, self.exclusion_globs)
        for index, (path, rel) in enumerate(files):
            kind = self.classify(rel)
            if kind is None:
                continue
            groups.setdefault(kind, []).append((index, path, rel))

        self.failures = []
        parsed: List[Tuple[int, SourceUnit]] = []
        jvm_units: List[Tuple[int, SourceUnit]] = []
        for kind, members in groups.items():
            results = self._parse_group(self.parsers[kind], members)
            if kind in JVM_LANGUAGES:
                jvm_units.extend(results)
            else:
                parsed.extend(results)
        parsed.extend(self._attach_missing_types(jvm_units))
        for parser in self.parsers.values():
            self.failures.extend(parser.drain_failures())
        self.failures.sort(key=lambda f: f.source_path)

        parsed.sort(key=lambda item: item[0])
        units = [unit for _, unit in parsed]
        if self.provenance is not None:
            units = [self.provenance.stamp(u) for u in units]
        logger.info("Ingested %d source file(s) from %s", len(units), self.root)
        return units

    def _parse_group(
        self,
        parser: SourceParser,
        members: List[Tuple[int, Path, str]],
    ) -> List[Tuple[int, SourceUnit]]:
        def _one(member: Tuple[int, Path, str]) -> Tuple[int, SourceUnit]:
            index, path, rel = member
            try:
                return index, parser.parse_file(path, rel)
            except Exception as exc:
                parser.record_failure(ParseFailure(rel, f"{exc}; kept opaque"))
                return index, opaque_unit(rel, kind=parser.kind or PLAIN_TEXT_KIND)

        with ThreadPoolExecutor(max_workers=min(self.workers, max(1, len(members)))) as pool:
            return list(pool.map(_one, members))

    def _attach_missing_types(self, units: List[Tuple[int, SourceUnit]]) -> List[Tuple[int, SourceUnit]]:
        for _, unit in units:
            parser = self.parsers.get(unit.kind)
            if isinstance(parser, TreeSitterSourceParser):
                for fqcn in parser.declared_types(unit):
                    self.type_context.add(fqcn)

        result: List[Tuple[int, SourceUnit]] = []
        unresolved = 0
        for index, unit in units:
            parser = self.parsers.get(unit.kind)
            if isinstance(parser, TreeSitterSourceParser) and unit.tree is not None:
                missing = parser.missing_types(unit)
                if missing:
                    unresolved += 1
                    logger.debug("%s: unresolved imports %s", unit.source_path, ", ".join(missing))
                    unit = replace(unit, missing_types=missing)
            result.append((index, unit))
        if unresolved:
            logger.warning(
                "%d compiled source file(s) reference types missing from the classpath; "
                "type information is incomplete",
                unresolved,
            )
        return result


def ingest(
    root: Path,
    exclusion_globs: Iterable[str] = (),
    plain_text_masks: Optional[Iterable[str]] = None,
    **kwargs,
) -> List[SourceUnit]:
    return SourceIngestion(root, exclusion_globs, plain_text_masks, **kwargs).ingest()
