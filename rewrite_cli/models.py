"""Core data models shared by resolution, ingestion and change application."""

from __future__ import annotations

import codecs
import difflib
import stat
from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, FrozenSet, Iterator, List, Optional, Tuple

from .markers import Marker, Markers

DEFAULT_CHARSET = "utf-8"

# Endian-specific codecs neither read nor write a byte-order mark themselves.
CHARSET_BOMS = {
    "utf-16-le": codecs.BOM_UTF16_LE,
    "utf-16-be": codecs.BOM_UTF16_BE,
    "utf-32-le": codecs.BOM_UTF32_LE,
    "utf-32-be": codecs.BOM_UTF32_BE,
}

# Packaging types whose files carry a different extension.
_TYPE_EXTENSIONS = {
    "test-jar": "jar",
    "maven-plugin": "jar",
    "ejb": "jar",
    "ejb-client": "jar",
    "bundle": "jar",
    "java-source": "jar",
    "javadoc": "jar",
}
_TYPE_CLASSIFIERS = {
    "test-jar": "tests",
    "ejb-client": "client",
    "java-source": "sources",
    "javadoc": "javadoc",
}


# ===================================================================
# Artifact coordinates
# ===================================================================

@dataclass(frozen=True)
class ModuleIdentity:
    """A coordinate with its version stripped; the key for deduplication."""
    group: str
    name: str
    classifier: Optional[str] = None
    type: str = "jar"

    def __str__(self) -> str:
        parts = [self.group, self.name, self.type]
        if self.classifier:
            parts.append(self.classifier)
        return ":".join(parts)


@dataclass(frozen=True)
class Coordinate:
    group: str
    name: str
    version: str
    classifier: Optional[str] = None
    type: str = "jar"

    @classmethod
    def parse(cls, text: str) -> "Coordinate":
        """Parse ``G:A:V``, ``G:A:T:V`` or ``G:A:T:C:V``."""
        parts = [p.strip() for p in text.strip().split(":")]
        if any(not p for p in parts):
            raise ValueError(f"Invalid coordinate '{text}': empty segment")
        if len(parts) == 3:
            group, name, version = parts
            return cls(group, name, version)
        if len(parts) == 4:
            group, name, type_, version = parts
            return cls(group, name, version, type=type_)
        if len(parts) == 5:
            group, name, type_, classifier, version = parts
            return cls(group, name, version, classifier=classifier, type=type_)
        raise ValueError(f"Invalid coordinate '{text}': expected G:A:V, G:A:T:V or G:A:T:C:V")

    @property
    def identity(self) -> ModuleIdentity:
        return ModuleIdentity(self.group, self.name, self.effective_classifier, self.type)

    @property
    def effective_classifier(self) -> Optional[str]:
        return self.classifier or _TYPE_CLASSIFIERS.get(self.type)

    @property
    def extension(self) -> str:
        return _TYPE_EXTENSIONS.get(self.type, self.type)

    @property
    def file_name(self) -> str:
        suffix = f"-{self.effective_classifier}" if self.effective_classifier else ""
        return f"{self.name}-{self.version}{suffix}.{self.extension}"

    def layout_path(self) -> str:
        """Path of the artifact relative to a repository root."""
        return "/".join([*self.group.split("."), self.name, self.version, self.file_name])

    def pom(self) -> "Coordinate":
        return Coordinate(self.group, self.name, self.version, type="pom")

    def with_version(self, version: str) -> "Coordinate":
        return replace(self, version=version)

    def __str__(self) -> str:
        if self.classifier:
            return f"{self.group}:{self.name}:{self.type}:{self.classifier}:{self.version}"
        if self.type != "jar":
            return f"{self.group}:{self.name}:{self.type}:{self.version}"
        return f"{self.group}:{self.name}:{self.version}"


@dataclass(frozen=True)
class DependencyEdge:
    coordinate: Coordinate
    scope: str = "compile"
    optional: bool = False
    exclusions: FrozenSet[Tuple[str, str]] = frozenset()
    system_path: Optional[str] = None

    def excludes(self, coordinate: Coordinate) -> bool:
        for group, name in self.exclusions:
            if group in ("*", coordinate.group) and name in ("*", coordinate.name):
                return True
        return False


@dataclass(frozen=True)
class ResolvedArtifact:
    coordinate: Coordinate
    path: Path
    depth: int = 0


@dataclass(frozen=True)
class ResolvedClasspath:
    """Ordered, duplicate-free list of resolved artifact paths."""
    entries: Tuple[ResolvedArtifact, ...] = ()
    missing: Tuple[Coordinate, ...] = ()

    @property
    def paths(self) -> List[Path]:
        return [e.path for e in self.entries]

    @property
    def is_complete(self) -> bool:
        return not self.missing

    def __iter__(self) -> Iterator[Path]:
        return iter(self.paths)

    def __len__(self) -> int:
        return len(self.entries)


# ===================================================================
# Source units
# ===================================================================

class PayloadKind(str, Enum):
    TEXT = "text"
    BINARY = "binary"
    REMOTE = "remote"
    OPAQUE = "opaque"


@dataclass(frozen=True)
class FileAttributes:
    readable: bool = True
    writable: bool = True
    executable: bool = False

    @classmethod
    def from_mode(cls, mode: int) -> "FileAttributes":
        return cls(
            readable=bool(mode & stat.S_IRUSR),
            writable=bool(mode & stat.S_IWUSR),
            executable=bool(mode & stat.S_IXUSR),
        )

    @classmethod
    def from_path(cls, path: Path) -> "FileAttributes":
        return cls.from_mode(path.stat().st_mode)

    @property
    def git_mode(self) -> str:
        return "100755" if self.executable else "100644"

    def apply_to_mode(self, mode: int) -> int:
        """Return *mode* with the owner read/write/execute bits reconciled."""
        for flag, enabled in (
            (stat.S_IRUSR, self.readable),
            (stat.S_IWUSR, self.writable),
            (stat.S_IXUSR, self.executable),
        ):
            mode = mode | flag if enabled else mode & ~flag
        return mode


@dataclass(frozen=True)
class SourceUnit:
    """One ingested file. Never mutated; transformations build new units."""
    source_path: str
    kind: str
    payload: PayloadKind = PayloadKind.TEXT
    text: Optional[str] = None
    data: Optional[bytes] = field(default=None, repr=False)
    url: Optional[str] = None
    charset: Optional[str] = DEFAULT_CHARSET
    file_attributes: Optional[FileAttributes] = None
    markers: Markers = field(default_factory=Markers)
    missing_types: Tuple[str, ...] = ()
    tree: Any = field(default=None, compare=False, repr=False)

    @property
    def is_text(self) -> bool:
        return self.payload is PayloadKind.TEXT

    def print_all(self) -> str:
        """Serialize the unit; used for both the diff and the write-back."""
        if self.payload is not PayloadKind.TEXT:
            raise ValueError(f"{self.source_path} has no textual payload ({self.payload.value})")
        return self.text or ""

    def with_text(self, text: str) -> "SourceUnit":
        if self.payload is not PayloadKind.TEXT:
            raise ValueError(f"{self.source_path} has no textual payload ({self.payload.value})")
        if text == self.text:
            return self
        # The parsed tree no longer matches the text.
        return replace(self, text=text, tree=None)

    def with_path(self, source_path: str) -> "SourceUnit":
        return replace(self, source_path=source_path)

    def with_attributes(self, attributes: FileAttributes) -> "SourceUnit":
        return replace(self, file_attributes=attributes)

    def with_markers(self, markers: Markers) -> "SourceUnit":
        return replace(self, markers=markers)

    def add_marker(self, marker: Marker) -> "SourceUnit":
        return replace(self, markers=self.markers.add_if_absent(marker))

    def _signature(self) -> Tuple[str, Any]:
        if self.payload is PayloadKind.TEXT:
            return ("text", self.text or "")
        if self.payload is PayloadKind.BINARY:
            return ("binary", self.data)
        if self.payload is PayloadKind.REMOTE:
            return ("remote", self.url)
        return ("opaque", None)


# ===================================================================
# Edit results
# ===================================================================

@dataclass(frozen=True)
class EditResult:
    before: Optional[SourceUnit]
    after: Optional[SourceUnit]
    rule_ids: Tuple[str, ...] = ()
    time_saved: timedelta = timedelta(0)

    @property
    def path(self) -> str:
        unit = self.after or self.before
        return unit.source_path if unit else ""

    def diff(self) -> str:
        """Git-style unified diff between before and after ("" when identical)."""
        before, after = self.before, self.after
        if before is None and after is None:
            return ""
        old_path = before.source_path if before else after.source_path  # type: ignore[union-attr]
        new_path = after.source_path if after else before.source_path  # type: ignore[union-attr]

        header: List[str] = []
        if before is None:
            header.append(f"new file mode {_mode(after)}")
        elif after is None:
            header.append(f"deleted file mode {_mode(before)}")
        else:
            if _mode(before) != _mode(after):
                header += [f"old mode {_mode(before)}", f"new mode {_mode(after)}"]
            if old_path != new_path:
                header += [f"rename from {old_path}", f"rename to {new_path}"]

        body = _content_diff(before, after, old_path, new_path)
        if not header and not body:
            return ""
        if old_path != new_path and before is not None and after is not None and not body:
            header.insert(len(header) - 2, "similarity index 100%")

        lines = [f"diff --git a/{old_path} b/{new_path}"] + header
        return "\n".join(lines) + "\n" + body


def _mode(unit: Optional[SourceUnit]) -> str:
    if unit is None or unit.file_attributes is None:
        return "100644"
    return unit.file_attributes.git_mode


def _content_diff(
    before: Optional[SourceUnit],
    after: Optional[SourceUnit],
    old_path: str,
    new_path: str,
) -> str:
    from_name = f"a/{old_path}" if before is not None else "/dev/null"
    to_name = f"b/{new_path}" if after is not None else "/dev/null"

    text_capable = all(u is None or u.is_text for u in (before, after))
    if not text_capable:
        if before is not None and after is not None and before._signature() == after._signature():
            return ""
        return f"Binary files {from_name} and {to_name} differ\n"

    old_text = before.print_all() if before is not None else ""
    new_text = after.print_all() if after is not None else ""
    if old_text == new_text and before is not None and after is not None:
        return ""

    out: List[str] = []
    for line in difflib.unified_diff(
        _patch_lines(old_text),
        _patch_lines(new_text),
        fromfile=from_name,
        tofile=to_name,
        n=3,
    ):
        if not line.endswith("\n"):
            line += "\n\\ No newline at end of file\n"
        out.append(line)
    if not out:
        # Created or deleted empty file.
        return ""
    return "".join(out)


def _patch_lines(text: str) -> List[str]:
    """Split on ``\\n`` only; form feeds and other breaks stay inside a line."""
    lines = [line + "\n" for line in text.split("\n")]
    lines[-1] = lines[-1][:-1]
    if not lines[-1]:
        lines.pop()
    return lines


def encode_text(text: str, charset: Optional[str] = None) -> bytes:
    """Encode *text* in *charset*, restoring the byte-order mark it was read with."""
    charset = charset or DEFAULT_CHARSET
    return CHARSET_BOMS.get(charset, b"") + text.encode(charset)
