"""Artifact resolution against a Maven-layout local cache and remote repositories."""

from __future__ import annotations

import hashlib
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

import requests

from . import config
from .errors import ArtifactCorrupt, ArtifactNotFound, ArtifactResolutionError, DescriptorInvalid
from .fileio import atomic_write
from .models import Coordinate, DependencyEdge, ModuleIdentity, ResolvedArtifact, ResolvedClasspath

logger = logging.getLogger(__name__)

# Scopes never followed from the project's own dependency list.
ROOT_SKIPPED_SCOPES = {"test", "import"}
# Scopes never followed below the first level.
TRANSITIVE_SKIPPED_SCOPES = {"test", "provided", "import"}


@dataclass(frozen=True)
class RemoteRepository:
    id: str
    url: str

    def artifact_url(self, coordinate: Coordinate) -> str:
        return self.url.rstrip("/") + "/" + coordinate.layout_path()

    @classmethod
    def from_config(cls, entries: Iterable[Mapping[str, str]]) -> List["RemoteRepository"]:
        return [cls(id=e.get("id", e["url"]), url=e["url"]) for e in entries]


@dataclass(frozen=True)
class _Pending:
    edge: DependencyEdge
    exclusions: FrozenSet[Tuple[str, str]]

    def excludes(self, coordinate: Coordinate) -> bool:
        return DependencyEdge(coordinate, exclusions=self.exclusions).excludes(coordinate)


@dataclass(frozen=True)
class _Outcome:
    path: Optional[Path]
    children: Tuple[DependencyEdge, ...] = ()
    pom_missing: bool = False
    on_classpath: bool = True


class ArtifactResolver:
    """Resolve coordinates to files in the local cache, downloading on demand.

    The resolver is safe to share between threads: every coordinate has its
    own lock, so concurrent requests for the same artifact download it once.
    """

    def __init__(
        self,
        local_repository: Path = config.LOCAL_REPOSITORY,
        remotes: Sequence[RemoteRepository] = (),
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
        workers: int = config.RESOLVER_WORKERS,
        session: Optional[requests.Session] = None,
        loader=None,
    ) -> None:
        self.local_repository = Path(local_repository)
        self.remotes = list(remotes)
        self.timeout = timeout
        self.workers = max(1, workers)
        self.session = session or requests.Session()
        self._loader = loader
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def loader(self):
        if self._loader is None:
            from .descriptor import BuildDescriptorLoader

            self._loader = BuildDescriptorLoader(resolver=self)
        return self._loader

    @loader.setter
    def loader(self, value) -> None:
        self._loader = value

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "ArtifactResolver":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Single artifacts
    # ------------------------------------------------------------------

    def cache_path(self, coordinate: Coordinate) -> Path:
        return self.local_repository / coordinate.layout_path()

    def _lock_for(self, coordinate: Coordinate) -> threading.Lock:
        key = str(coordinate)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def resolve(self, coordinate: Coordinate) -> Path:
        """Return the cached file for *coordinate*, fetching it if needed.

        Raises:
            ArtifactNotFound: Neither the cache nor any remote has the file.
            ArtifactCorrupt: The cached or downloaded bytes fail verification.
        """
        target = self.cache_path(coordinate)
        with self._lock_for(coordinate):
            if target.exists():
                self._verify_cached(coordinate, target)
                return target

            tried: List[str] = []
            for remote in self.remotes:
                tried.append(remote.url)
                if self._download(remote, coordinate, target):
                    logger.debug("Downloaded %s from %s", coordinate, remote.id)
                    return target
            raise ArtifactNotFound(str(coordinate), tried)

    def _verify_cached(self, coordinate: Coordinate, target: Path) -> None:
        if not target.is_file():
            raise ArtifactCorrupt(str(coordinate), f"cache entry {target} is not a regular file")
        checksum_file = target.with_name(target.name + ".sha1")
        if not checksum_file.is_file():
            return
        try:
            expected = _parse_checksum(checksum_file.read_text(encoding="ascii", errors="replace"))
            actual = _sha1_file(target)
        except OSError as exc:
            raise ArtifactCorrupt(str(coordinate), f"unreadable cache entry: {exc}") from exc
        if expected and actual != expected:
            raise ArtifactCorrupt(str(coordinate), f"sha1 {actual} does not match published {expected}")

    def _download(self, remote: RemoteRepository, coordinate: Coordinate, target: Path) -> bool:
        url = remote.artifact_url(coordinate)
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Could not reach %s for %s: %s", remote.id, coordinate, exc)
            return False
        if response.status_code == 404:
            return False
        if response.status_code != 200:
            logger.warning("%s returned HTTP %s for %s", remote.id, response.status_code, coordinate)
            return False

        data = response.content
        expected = self._fetch_checksum(url)
        if expected:
            actual = hashlib.sha1(data).hexdigest()
            if actual != expected:
                raise ArtifactCorrupt(str(coordinate), f"sha1 {actual} from {remote.id} does not match published {expected}")

        try:
            atomic_write(target, data)
            if expected:
                atomic_write(target.with_name(target.name + ".sha1"), expected)
        except OSError as exc:
            raise ArtifactCorrupt(str(coordinate), f"cannot store in local cache: {exc}") from exc
        return True

    def _fetch_checksum(self, url: str) -> Optional[str]:
        try:
            response = self.session.get(url + ".sha1", timeout=self.timeout)
        except requests.RequestException as exc:
            logger.debug("No checksum for %s: %s", url, exc)
            return None
        if response.status_code != 200:
            return None
        return _parse_checksum(response.text)

    # ------------------------------------------------------------------
    # Transitive closure
    # ------------------------------------------------------------------

    def resolve_transitive(
        self,
        edges: Iterable[DependencyEdge],
        managed_versions: Optional[Mapping[ModuleIdentity, str]] = None,
    ) -> ResolvedClasspath:
        """Breadth-first closure of *edges* with nearest-wins deduplication.

        Each level is fetched concurrently and merged in discovery order, so
        the classpath order does not depend on thread scheduling. Failures
        are logged and listed in ``missing``; the walk continues.
        """
        managed = dict(managed_versions or {})
        seen: set = set()
        entries: List[ResolvedArtifact] = []
        missing: List[Coordinate] = []

        level = [
            _Pending(edge, edge.exclusions)
            for edge in edges
            if edge.scope not in ROOT_SKIPPED_SCOPES
        ]
        depth = 0
        while level:
            batch: List[Tuple[_Pending, Coordinate]] = []
            for pending in level:
                coordinate = pending.edge.coordinate
                identity = coordinate.identity
                if depth > 0 and identity in managed:
                    coordinate = coordinate.with_version(managed[identity])
                if identity in seen:
                    continue
                seen.add(identity)
                batch.append((pending, coordinate))
            if not batch:
                break

            with ThreadPoolExecutor(max_workers=min(self.workers, len(batch))) as pool:
                outcomes = list(pool.map(lambda item: self._fetch_node(item[0].edge, item[1]), batch))

            next_level: List[_Pending] = []
            for (pending, coordinate), outcome in zip(batch, outcomes):
                if outcome.path is None:
                    missing.append(coordinate)
                    continue
                if outcome.on_classpath:
                    entries.append(ResolvedArtifact(coordinate, outcome.path, depth))
                if outcome.pom_missing:
                    missing.append(coordinate.pom())
                for child in outcome.children:
                    if child.scope in TRANSITIVE_SKIPPED_SCOPES or child.optional:
                        continue
                    if pending.excludes(child.coordinate):
                        logger.debug("%s excluded below %s", child.coordinate, coordinate)
                        continue
                    next_level.append(_Pending(child, pending.exclusions | child.exclusions))
            level = next_level
            depth += 1

        if missing:
            logger.warning("Classpath is incomplete: %d artifact(s) could not be resolved", len(missing))
        return ResolvedClasspath(tuple(entries), tuple(missing))

    def _fetch_node(self, edge: DependencyEdge, coordinate: Coordinate) -> _Outcome:
        if edge.scope == "system":
            path = Path(edge.system_path) if edge.system_path else None
            if path is None or not path.is_file():
                logger.warning("System dependency %s points to missing file %s", coordinate, edge.system_path)
                return _Outcome(None)
            return _Outcome(path)

        try:
            path = self.resolve(coordinate)
        except ArtifactResolutionError as exc:
            logger.warning("%s", exc.message)
            return _Outcome(None)
        except OSError as exc:
            logger.warning("I/O error resolving %s: %s", coordinate, exc)
            return _Outcome(None)

        on_classpath = coordinate.type != "pom"
        try:
            children = tuple(self.loader.load_coordinate(coordinate).dependencies)
        except DescriptorInvalid as exc:
            logger.warning("No dependency information for %s: %s", coordinate, exc.message)
            # A pom-typed dependency without a readable descriptor contributes nothing.
            return _Outcome(path if on_classpath else None, pom_missing=on_classpath)
        return _Outcome(path, children, on_classpath=on_classpath)


def _parse_checksum(text: str) -> Optional[str]:
    # Published checksum files may carry a trailing file name.
    parts = text.strip().split()
    return parts[0].lower() if parts else None


def _sha1_file(path: Path) -> str:
    digest = hashlib.sha1()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def resolver_from_config(repositories: Mapping[str, Any], session: Optional[requests.Session] = None) -> ArtifactResolver:
    """Build a resolver from :func:`config_manager.load_repository_config` output."""
    return ArtifactResolver(
        local_repository=Path(repositories["local"]),
        remotes=RemoteRepository.from_config(repositories.get("remotes", [])),
        timeout=float(repositories.get("timeout", config.HTTP_TIMEOUT_SECONDS)),
        workers=int(repositories.get("workers", config.RESOLVER_WORKERS)),
        session=session,
    )
