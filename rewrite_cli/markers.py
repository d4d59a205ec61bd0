"""Provenance markers attached to every ingested source unit.

A :class:`ProvenanceBundle` is built once per run and passed explicitly to
the ingestion stage. Stamping is idempotent: a unit that already carries a
marker of a given kind keeps it.
"""

from __future__ import annotations

import os
import platform
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterator, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from .descriptor import EffectiveModel
    from .models import SourceUnit


@dataclass(frozen=True)
class Marker:
    @property
    def kind(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class BuildEnvironment(Marker):
    vendor: str = "local"
    build_id: Optional[str] = None
    build_url: Optional[str] = None


@dataclass(frozen=True)
class OperatingSystemProvenance(Marker):
    name: str = ""
    release: str = ""
    machine: str = ""
    user: Optional[str] = None
    hostname: Optional[str] = None

    @classmethod
    def current(cls, environ: Mapping[str, str] = os.environ) -> "OperatingSystemProvenance":
        uname = platform.uname()
        return cls(
            name=uname.system,
            release=uname.release,
            machine=uname.machine,
            user=environ.get("USER") or environ.get("USERNAME"),
            hostname=uname.node or None,
        )


@dataclass(frozen=True)
class BuildTool(Marker):
    type: str = "standalone"
    version: str = "standalone"


@dataclass(frozen=True)
class ProjectIdentity(Marker):
    project_name: str = ""
    group: str = "standalone"
    artifact: str = "standalone"
    version: str = "1.0.0"


@dataclass(frozen=True)
class LanguageRuntime(Marker):
    runtime: str = ""
    version: str = ""
    source_compatibility: Optional[str] = None
    target_compatibility: Optional[str] = None


@dataclass(frozen=True)
class SourceSet(Marker):
    name: str = "main"


@dataclass(frozen=True)
class Markers:
    """Immutable, ordered collection of markers keyed by kind."""
    items: Tuple[Marker, ...] = ()

    def add_if_absent(self, marker: Marker) -> "Markers":
        if self.find(marker.kind) is not None:
            return self
        return Markers(self.items + (marker,))

    def find(self, kind: str) -> Optional[Marker]:
        for item in self.items:
            if item.kind == kind:
                return item
        return None

    def __iter__(self) -> Iterator[Marker]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


# CI vendors keyed by the environment variable that identifies them.
_CI_VENDORS = (
    ("GITHUB_ACTIONS", "github", "GITHUB_RUN_ID", None),
    ("GITLAB_CI", "gitlab", "CI_PIPELINE_ID", "CI_PIPELINE_URL"),
    ("JENKINS_URL", "jenkins", "BUILD_NUMBER", "BUILD_URL"),
    ("TRAVIS", "travis", "TRAVIS_BUILD_ID", "TRAVIS_BUILD_WEB_URL"),
    ("CIRCLECI", "circleci", "CIRCLE_BUILD_NUM", "CIRCLE_BUILD_URL"),
    ("TF_BUILD", "azure-devops", "BUILD_BUILDID", None),
    ("CI", "generic-ci", None, None),
)


def detect_build_environment(environ: Mapping[str, str]) -> BuildEnvironment:
    for flag, vendor, id_var, url_var in _CI_VENDORS:
        if environ.get(flag):
            build_id = environ.get(id_var) if id_var else None
            build_url = environ.get(url_var) if url_var else None
            if vendor == "github" and build_id:
                server = environ.get("GITHUB_SERVER_URL", "https://github.com")
                repo = environ.get("GITHUB_REPOSITORY", "")
                build_url = f"{server}/{repo}/actions/runs/{build_id}"
            return BuildEnvironment(vendor=vendor, build_id=build_id, build_url=build_url)
    return BuildEnvironment()


@dataclass(frozen=True)
class ProvenanceBundle:
    """Run-scoped provenance facts, attached to every source unit."""
    markers: Tuple[Marker, ...] = field(default_factory=tuple)

    @classmethod
    def build(
        cls,
        project_root: Path,
        model: Optional["EffectiveModel"] = None,
        environ: Mapping[str, str] = os.environ,
    ) -> "ProvenanceBundle":
        properties: Dict[str, str] = dict(model.properties) if model else {}
        release = properties.get("maven.compiler.release")
        if model is not None:
            tool = BuildTool(type="maven", version=properties.get("maven.version", "unknown"))
            identity = ProjectIdentity(
                project_name=project_root.resolve().name,
                group=model.group_id,
                artifact=model.artifact_id,
                version=model.version,
            )
        else:
            tool = BuildTool()
            identity = ProjectIdentity(project_name=project_root.resolve().name)

        runtime = LanguageRuntime(
            runtime=platform.python_implementation(),
            version=".".join(str(v) for v in sys.version_info[:3]),
            source_compatibility=release or properties.get("maven.compiler.source"),
            target_compatibility=release or properties.get("maven.compiler.target"),
        )
        return cls((
            detect_build_environment(environ),
            OperatingSystemProvenance.current(environ),
            tool,
            identity,
            runtime,
            SourceSet("main"),
        ))

    def stamp(self, unit: "SourceUnit") -> "SourceUnit":
        markers = unit.markers
        for marker in self.markers:
            markers = markers.add_if_absent(marker)
        if markers is unit.markers:
            return unit
        return unit.with_markers(markers)
