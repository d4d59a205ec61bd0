"""Build descriptor (``pom.xml``) loader producing an effective model.

The effective model is computed the way Maven does it, restricted to what
classpath assembly needs:

1. profile activation and injection, per descriptor of the lineage
2. inheritance through the parent chain
3. property interpolation
4. ``import``-scoped BOMs merged into dependency management
5. management injection (missing versions and scopes)

Does NOT handle plugins, reporting, repositories declared in the POM or
version ranges.
"""

from __future__ import annotations

import logging
import os
import re
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import ArtifactResolutionError, DescriptorInvalid
from .models import Coordinate, DependencyEdge, ModuleIdentity

if TYPE_CHECKING:
    from .resolver import ArtifactResolver

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")

ManagementKey = Tuple[str, str, str, str]


# ===================================================================
# Raw (per-file) model
# ===================================================================

@dataclass
class RawDependency:
    group_id: str
    artifact_id: str
    version: Optional[str] = None
    type: Optional[str] = None
    classifier: Optional[str] = None
    scope: Optional[str] = None
    optional: Optional[str] = None
    system_path: Optional[str] = None
    exclusions: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def management_key(self) -> ManagementKey:
        return (self.group_id, self.artifact_id, self.type or "jar", self.classifier or "")


@dataclass
class ParentRef:
    group_id: str
    artifact_id: str
    version: str
    relative_path: Optional[str] = None

    def coordinate(self) -> Coordinate:
        return Coordinate(self.group_id, self.artifact_id, self.version, type="pom")


@dataclass
class Profile:
    id: str
    active_by_default: bool = False
    property_name: Optional[str] = None
    property_value: Optional[str] = None
    jdk: Optional[str] = None
    file_exists: Optional[str] = None
    file_missing: Optional[str] = None
    properties: Dict[str, str] = field(default_factory=dict)
    dependencies: List[RawDependency] = field(default_factory=list)
    dependency_management: List[RawDependency] = field(default_factory=list)


@dataclass
class RawModel:
    origin: str
    path: Optional[Path] = None
    parent: Optional[ParentRef] = None
    group_id: Optional[str] = None
    artifact_id: Optional[str] = None
    version: Optional[str] = None
    packaging: str = "jar"
    properties: Dict[str, str] = field(default_factory=dict)
    dependencies: List[RawDependency] = field(default_factory=list)
    dependency_management: List[RawDependency] = field(default_factory=list)
    profiles: List[Profile] = field(default_factory=list)

    @property
    def effective_group_id(self) -> Optional[str]:
        return self.group_id or (self.parent.group_id if self.parent else None)

    @property
    def effective_version(self) -> Optional[str]:
        return self.version or (self.parent.version if self.parent else None)

    @property
    def key(self) -> str:
        return f"{self.effective_group_id}:{self.artifact_id}:{self.effective_version}"


@dataclass
class EffectiveModel:
    """A descriptor after inheritance, interpolation and profile activation."""
    group_id: str
    artifact_id: str
    version: str
    packaging: str
    origin: str
    properties: Dict[str, str] = field(default_factory=dict)
    dependencies: List[DependencyEdge] = field(default_factory=list)
    managed: List[RawDependency] = field(default_factory=list)

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.group_id, self.artifact_id, self.version, type="pom")

    @property
    def managed_versions(self) -> Dict[ModuleIdentity, str]:
        versions: Dict[ModuleIdentity, str] = {}
        for dep in self.managed:
            if dep.version and (dep.scope or "") != "import":
                identity = ModuleIdentity(dep.group_id, dep.artifact_id, dep.classifier or None, dep.type or "jar")
                versions.setdefault(identity, dep.version)
        return versions


# ===================================================================
# XML helpers (namespace agnostic)
# ===================================================================

def _strip_namespace(tag: str) -> str:
    if tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag


def _find(element: Optional[ET.Element], name: str) -> Optional[ET.Element]:
    if element is None:
        return None
    for child in element:
        if _strip_namespace(child.tag) == name:
            return child
    return None


def _findall(element: Optional[ET.Element], name: str) -> List[ET.Element]:
    if element is None:
        return []
    return [child for child in element if _strip_namespace(child.tag) == name]


def _text(element: Optional[ET.Element], name: str) -> Optional[str]:
    child = _find(element, name)
    if child is None or child.text is None:
        return None
    value = child.text.strip()
    return value or None


def _parse_dependencies(container: Optional[ET.Element]) -> List[RawDependency]:
    deps: List[RawDependency] = []
    for node in _findall(container, "dependency"):
        group_id = _text(node, "groupId")
        artifact_id = _text(node, "artifactId")
        if not group_id or not artifact_id:
            logger.warning("Skipping dependency without groupId/artifactId")
            continue
        exclusions = []
        for excl in _findall(_find(node, "exclusions"), "exclusion"):
            exclusions.append((_text(excl, "groupId") or "*", _text(excl, "artifactId") or "*"))
        deps.append(RawDependency(
            group_id=group_id,
            artifact_id=artifact_id,
            version=_text(node, "version"),
            type=_text(node, "type"),
            classifier=_text(node, "classifier"),
            scope=_text(node, "scope"),
            optional=_text(node, "optional"),
            system_path=_text(node, "systemPath"),
            exclusions=exclusions,
        ))
    return deps


def _parse_properties(element: Optional[ET.Element]) -> Dict[str, str]:
    if element is None:
        return {}
    return {_strip_namespace(child.tag): (child.text or "").strip() for child in element}


def _parse_profile(node: ET.Element) -> Profile:
    activation = _find(node, "activation")
    prop = _find(activation, "property")
    file_node = _find(activation, "file")
    return Profile(
        id=_text(node, "id") or "default",
        active_by_default=(_text(activation, "activeByDefault") or "").lower() == "true",
        property_name=_text(prop, "name"),
        property_value=_text(prop, "value"),
        jdk=_text(activation, "jdk"),
        file_exists=_text(file_node, "exists"),
        file_missing=_text(file_node, "missing"),
        properties=_parse_properties(_find(node, "properties")),
        dependencies=_parse_dependencies(_find(node, "dependencies")),
        dependency_management=_parse_dependencies(_find(_find(node, "dependencyManagement"), "dependencies")),
    )


def parse_descriptor(text: str, origin: str, path: Optional[Path] = None) -> RawModel:
    """Parse a single descriptor without resolving anything."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise DescriptorInvalid(f"Unparsable build descriptor {origin}: {exc}", origin) from exc
    if _strip_namespace(root.tag) != "project":
        raise DescriptorInvalid(f"{origin} is not a build descriptor (root element <{root.tag}>)", origin)

    parent = None
    parent_node = _find(root, "parent")
    if parent_node is not None:
        p_group, p_artifact, p_version = (
            _text(parent_node, "groupId"), _text(parent_node, "artifactId"), _text(parent_node, "version"),
        )
        if not (p_group and p_artifact and p_version):
            raise DescriptorInvalid(f"Incomplete <parent> in {origin}", origin)
        relative = _find(parent_node, "relativePath")
        parent = ParentRef(
            p_group, p_artifact, p_version,
            relative_path=(relative.text or "").strip() if relative is not None else None,
        )

    return RawModel(
        origin=origin,
        path=path,
        parent=parent,
        group_id=_text(root, "groupId"),
        artifact_id=_text(root, "artifactId"),
        version=_text(root, "version"),
        packaging=_text(root, "packaging") or "jar",
        properties=_parse_properties(_find(root, "properties")),
        dependencies=_parse_dependencies(_find(root, "dependencies")),
        dependency_management=_parse_dependencies(_find(_find(root, "dependencyManagement"), "dependencies")),
        profiles=[_parse_profile(p) for p in _findall(_find(root, "profiles"), "profile")],
    )


# ===================================================================
# Interpolation
# ===================================================================

class _Interpolator:
    def __init__(self, values: Mapping[str, str], environ: Mapping[str, str]) -> None:
        self.values = values
        self.environ = environ

    def lookup(self, key: str) -> Optional[str]:
        if key.startswith("env."):
            return self.environ.get(key[4:])
        if key.startswith("pom."):
            key = "project." + key[4:]
        return self.values.get(key)

    def resolve(self, value: Optional[str], _seen: Tuple[str, ...] = ()) -> Optional[str]:
        if value is None or "${" not in value:
            return value

        def _sub(match: "re.Match[str]") -> str:
            key = match.group(1)
            if key in _seen:
                logger.warning("Recursive property reference ${%s}", key)
                return match.group(0)
            found = self.lookup(key)
            if found is None:
                return match.group(0)
            return self.resolve(found, _seen + (key,)) or ""

        return _PLACEHOLDER.sub(_sub, value)


# ===================================================================
# Loader
# ===================================================================

class BuildDescriptorLoader:
    """Compute effective models from ``pom.xml`` files.

    Args:
        resolver: Used to fetch parent POMs absent from the source tree and
            imported BOMs. Without one, such lookups fail.
        system_properties: Properties visible to interpolation and profile
            activation; they take precedence over descriptor properties.
        active_profiles: Profile ids activated explicitly. A leading ``!``
            or ``-`` deactivates the profile instead.
    """

    def __init__(
        self,
        resolver: Optional["ArtifactResolver"] = None,
        system_properties: Optional[Mapping[str, str]] = None,
        active_profiles: Sequence[str] = (),
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.resolver = resolver
        self.system_properties = dict(system_properties or {})
        self.environ = dict(os.environ if environ is None else environ)
        self.active_profiles = {p for p in active_profiles if not p.startswith(("!", "-"))}
        self.inactive_profiles = {p[1:] for p in active_profiles if p.startswith(("!", "-"))}
        self._raw_cache: Dict[str, RawModel] = {}
        self._effective_cache: Dict[str, EffectiveModel] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load(self, descriptor_path: Path) -> EffectiveModel:
        path = Path(descriptor_path)
        if not path.is_file():
            raise DescriptorInvalid(f"Build descriptor not found: {path}", str(path))
        return self._build(self._read(path, local=True))

    def load_dependencies(self, descriptor_path: Path) -> List[DependencyEdge]:
        return self.load(descriptor_path).dependencies

    def load_text(self, text: str, origin: str) -> EffectiveModel:
        return self._build(parse_descriptor(text, origin))

    def load_coordinate(self, coordinate: Coordinate) -> EffectiveModel:
        """Effective model of a published artifact's POM."""
        pom = coordinate.pom()
        key = str(pom)
        with self._lock:
            cached = self._effective_cache.get(key)
        if cached is not None:
            return cached
        model = self._build(self._read_published(pom))
        with self._lock:
            self._effective_cache[key] = model
        return model

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _read(self, path: Path, local: bool) -> RawModel:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise DescriptorInvalid(f"Unable to read build descriptor {path}: {exc}", str(path)) from exc
        return parse_descriptor(text, str(path), path if local else None)

    def _read_published(self, pom: Coordinate) -> RawModel:
        key = str(pom)
        with self._lock:
            cached = self._raw_cache.get(key)
        if cached is not None:
            return cached
        if self.resolver is None:
            raise DescriptorInvalid(f"Cannot resolve {pom}: no artifact resolver configured", key)
        try:
            path = self.resolver.resolve(pom)
        except ArtifactResolutionError as exc:
            raise DescriptorInvalid(f"Cannot resolve descriptor {pom}: {exc.message}", key) from exc
        raw = self._read(path, local=False)
        with self._lock:
            self._raw_cache[key] = raw
        return raw

    def _load_parent(self, child: RawModel) -> RawModel:
        ref = child.parent
        assert ref is not None
        if child.path is not None and ref.relative_path != "":
            candidate = child.path.parent / (ref.relative_path or "../pom.xml")
            if candidate.is_dir():
                candidate = candidate / "pom.xml"
            if candidate.is_file():
                local = self._read(candidate.resolve(), local=True)
                if (
                    local.effective_group_id == ref.group_id
                    and local.artifact_id == ref.artifact_id
                    and local.effective_version == ref.version
                ):
                    return local
                logger.debug("%s does not match parent %s:%s:%s", candidate, ref.group_id, ref.artifact_id, ref.version)
        try:
            return self._read_published(ref.coordinate())
        except DescriptorInvalid as exc:
            raise DescriptorInvalid(
                f"Parent {ref.group_id}:{ref.artifact_id}:{ref.version} of {child.origin} "
                f"cannot be found: {exc.message}",
                child.origin,
            ) from exc

    def _lineage(self, raw: RawModel) -> List[RawModel]:
        chain = [raw]
        seen = {raw.key}
        current = raw
        while current.parent is not None:
            parent = self._load_parent(current)
            if parent.key in seen:
                raise DescriptorInvalid(f"Cycle in parent chain of {raw.origin} at {parent.key}", raw.origin)
            seen.add(parent.key)
            chain.append(parent)
            current = parent
        return chain

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def _condition_results(self, profile: Profile, raw: RawModel) -> List[bool]:
        results: List[bool] = []
        if profile.property_name:
            name = profile.property_name
            negated = name.startswith("!")
            name = name.lstrip("!")
            actual = self.system_properties.get(name)
            if profile.property_value is None:
                results.append((actual is None) if negated else (actual is not None))
            else:
                expected = profile.property_value
                if expected.startswith("!"):
                    results.append(actual != expected[1:])
                else:
                    results.append(actual == expected)
        if profile.jdk:
            java_version = self.system_properties.get("java.version")
            expected = profile.jdk.lstrip("!")
            matched = bool(java_version) and java_version.startswith(expected)
            results.append(not matched if profile.jdk.startswith("!") else matched)
        basedir = raw.path.parent if raw.path is not None else None
        for spec, want_exists in ((profile.file_exists, True), (profile.file_missing, False)):
            if not spec:
                continue
            if basedir is None:
                results.append(False)
                continue
            target = Path(spec.replace("${basedir}", str(basedir)).replace("${project.basedir}", str(basedir)))
            if not target.is_absolute():
                target = basedir / target
            results.append(target.exists() == want_exists)
        return results

    def _active_profiles(self, raw: RawModel) -> List[Profile]:
        active: List[Profile] = []
        for profile in raw.profiles:
            if profile.id in self.inactive_profiles:
                continue
            if profile.id in self.active_profiles:
                active.append(profile)
                continue
            conditions = self._condition_results(profile, raw)
            if conditions and all(conditions):
                active.append(profile)
        if not active:
            active = [
                p for p in raw.profiles
                if p.active_by_default and p.id not in self.inactive_profiles
            ]
        return active

    def _inject_profiles(self, raw: RawModel) -> RawModel:
        profiles = self._active_profiles(raw)
        if not profiles:
            return raw
        logger.debug("Active profiles for %s: %s", raw.origin, ", ".join(p.id for p in profiles))
        properties = dict(raw.properties)
        dependencies = list(raw.dependencies)
        management = list(raw.dependency_management)
        for profile in profiles:
            properties.update(profile.properties)
            dependencies = _merge_dependencies(dependencies, profile.dependencies)
            management = _merge_dependencies(management, profile.dependency_management)
        return replace(raw, properties=properties, dependencies=dependencies, dependency_management=management)

    # ------------------------------------------------------------------
    # Effective model
    # ------------------------------------------------------------------

    def _build(self, raw: RawModel) -> EffectiveModel:
        lineage = [self._inject_profiles(m) for m in self._lineage(raw)]

        properties: Dict[str, str] = {}
        dependencies: List[RawDependency] = []
        management: List[RawDependency] = []
        group_id = version = None
        for model in reversed(lineage):
            properties.update(model.properties)
            dependencies = _merge_dependencies(dependencies, model.dependencies)
            management = _merge_dependencies(management, model.dependency_management)
            group_id = model.group_id or group_id
            version = model.version or version

        child = lineage[0]
        group_id = group_id or (child.parent.group_id if child.parent else None)
        version = version or (child.parent.version if child.parent else None)
        if not child.artifact_id or not group_id or not version:
            raise DescriptorInvalid(f"{raw.origin} does not define groupId, artifactId and version", raw.origin)

        values: Dict[str, str] = dict(properties)
        values.update({
            "project.groupId": group_id,
            "project.artifactId": child.artifact_id,
            "project.version": version,
            "project.packaging": child.packaging,
        })
        if child.parent is not None:
            values.update({
                "project.parent.groupId": child.parent.group_id,
                "project.parent.artifactId": child.parent.artifact_id,
                "project.parent.version": child.parent.version,
            })
        if child.path is not None:
            values["project.basedir"] = values["basedir"] = str(child.path.parent)
        values.update(self.system_properties)
        interp = _Interpolator(values, self.environ)

        resolved_properties = {k: interp.resolve(v) or "" for k, v in properties.items()}
        management = [_interpolate_dependency(d, interp) for d in management]
        management = self._import_boms(management, raw.origin)
        dependencies = [_interpolate_dependency(d, interp) for d in dependencies]

        managed_by_key = {d.management_key: d for d in management}
        edges: List[DependencyEdge] = []
        for dep in dependencies:
            managed = managed_by_key.get(dep.management_key)
            if managed is not None:
                dep = replace(
                    dep,
                    version=dep.version or managed.version,
                    scope=dep.scope or managed.scope,
                    exclusions=dep.exclusions or managed.exclusions,
                )
            edge = _to_edge(dep, raw.origin)
            if edge is not None:
                edges.append(edge)

        return EffectiveModel(
            group_id=interp.resolve(group_id) or group_id,
            artifact_id=child.artifact_id,
            version=interp.resolve(version) or version,
            packaging=child.packaging,
            origin=raw.origin,
            properties=resolved_properties,
            dependencies=edges,
            managed=management,
        )

    def _import_boms(self, management: List[RawDependency], origin: str) -> List[RawDependency]:
        result: List[RawDependency] = []
        imported: List[RawDependency] = []
        for dep in management:
            if dep.scope != "import" or (dep.type or "jar") != "pom":
                result.append(dep)
                continue
            if not dep.version:
                logger.warning("Imported BOM %s:%s in %s has no version", dep.group_id, dep.artifact_id, origin)
                continue
            try:
                bom = self.load_coordinate(Coordinate(dep.group_id, dep.artifact_id, dep.version, type="pom"))
            except DescriptorInvalid as exc:
                logger.warning("Skipping imported BOM from %s: %s", origin, exc.message)
                continue
            imported.extend(bom.managed)
        # Declared entries win over imported ones.
        known = {d.management_key for d in result}
        for dep in imported:
            if dep.management_key not in known:
                known.add(dep.management_key)
                result.append(dep)
        return result


def _merge_dependencies(base: List[RawDependency], overrides: List[RawDependency]) -> List[RawDependency]:
    merged = list(base)
    index = {d.management_key: i for i, d in enumerate(merged)}
    for dep in overrides:
        position = index.get(dep.management_key)
        if position is None:
            index[dep.management_key] = len(merged)
            merged.append(dep)
        else:
            merged[position] = dep
    return merged


def _interpolate_dependency(dep: RawDependency, interp: _Interpolator) -> RawDependency:
    return RawDependency(
        group_id=interp.resolve(dep.group_id) or dep.group_id,
        artifact_id=interp.resolve(dep.artifact_id) or dep.artifact_id,
        version=interp.resolve(dep.version),
        type=interp.resolve(dep.type),
        classifier=interp.resolve(dep.classifier),
        scope=interp.resolve(dep.scope),
        optional=interp.resolve(dep.optional),
        system_path=interp.resolve(dep.system_path),
        exclusions=list(dep.exclusions),
    )


def _to_edge(dep: RawDependency, origin: str) -> Optional[DependencyEdge]:
    if not dep.version:
        logger.warning("Dependency %s:%s in %s has no version; skipping", dep.group_id, dep.artifact_id, origin)
        return None
    for value in (dep.group_id, dep.artifact_id, dep.version):
        if "${" in value:
            logger.warning("Unresolved property in dependency %s:%s:%s of %s; skipping",
                           dep.group_id, dep.artifact_id, dep.version, origin)
            return None
    coordinate = Coordinate(
        group=dep.group_id,
        name=dep.artifact_id,
        version=dep.version,
        classifier=dep.classifier or None,
        type=dep.type or "jar",
    )
    return DependencyEdge(
        coordinate=coordinate,
        scope=dep.scope or "compile",
        optional=(dep.optional or "").lower() == "true",
        exclusions=frozenset(dep.exclusions),
        system_path=dep.system_path,
    )
