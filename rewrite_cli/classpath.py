"""Classpath assembly: effective model in, ordered artifact paths out."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Union

from .descriptor import BuildDescriptorLoader, EffectiveModel
from .errors import ArtifactResolutionError
from .models import Coordinate, ResolvedClasspath
from .resolver import ArtifactResolver

logger = logging.getLogger(__name__)


def looks_like_path(entry: str) -> bool:
    """True when *entry* should be treated as a filesystem path, not G:A:V."""
    if "/" in entry or "\\" in entry or entry.startswith((".", "~")):
        return True
    if Path(entry).exists():
        return True
    # Windows drive letters ("C:...") split like a coordinate.
    return len(entry) > 1 and entry[1] == ":" and entry[0].isalpha() and entry.count(":") == 1


class ClasspathAssembler:
    def __init__(self, resolver: ArtifactResolver, loader: Optional[BuildDescriptorLoader] = None) -> None:
        self.resolver = resolver
        self.loader = loader or BuildDescriptorLoader(resolver=resolver)

    def assemble(self, descriptor_path: Union[str, Path]) -> ResolvedClasspath:
        """Load *descriptor_path* and resolve its dependencies transitively.

        ``DescriptorInvalid`` propagates; per-artifact failures only leave
        holes in the classpath.
        """
        return self.assemble_model(self.loader.load(Path(descriptor_path)))

    def assemble_model(self, model: EffectiveModel) -> ResolvedClasspath:
        logger.info(
            "Resolving %d dependencies of %s:%s:%s",
            len(model.dependencies), model.group_id, model.artifact_id, model.version,
        )
        classpath = self.resolver.resolve_transitive(model.dependencies, model.managed_versions)
        logger.info("Resolved %d classpath entries (%d missing)", len(classpath), len(classpath.missing))
        return classpath

    def resolve_extra(self, entries: Iterable[str]) -> List[Path]:
        """Resolve user-supplied paths or coordinates; unusable entries are skipped."""
        paths: List[Path] = []
        for entry in entries:
            entry = entry.strip()
            if not entry:
                continue
            if looks_like_path(entry):
                path = Path(entry).expanduser()
                if path.exists():
                    paths.append(path)
                else:
                    logger.warning("Skipping %s: file does not exist", entry)
                continue
            try:
                coordinate = Coordinate.parse(entry)
            except ValueError as exc:
                logger.warning("Skipping %s: %s", entry, exc)
                continue
            try:
                paths.append(self.resolver.resolve(coordinate))
            except ArtifactResolutionError as exc:
                logger.warning("Skipping %s: %s", entry, exc.message)
        return paths
