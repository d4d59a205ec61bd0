"""Per-kind source parsers producing :class:`SourceUnit` values.

Three families:

- Tree-sitter parsers for compiled languages (Java, Kotlin) and Python.
  Trees are error tolerant; JVM imports are checked against a
  :class:`TypeContext` built from the resolved classpath.
- Resource parsers (XML, YAML, JSON, properties, TOML) that validate
  syntax and degrade to plain text when validation fails.
- The plain-text parser, the catch-all for files matching plain-text masks.

Every parser turns files above the size threshold into ``OPAQUE`` units
without reading them.
"""

from __future__ import annotations

import codecs
import importlib
import json
import logging
import threading
import xml.etree.ElementTree as ET
import zipfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import toml
import yaml

from .errors import ParseFailure
from .models import CHARSET_BOMS, FileAttributes, PayloadKind, SourceUnit

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File-extension mapping
# ---------------------------------------------------------------------------
LANGUAGE_MAP: Dict[str, str] = {
    ".java": "java",
    ".kt": "kotlin",
    ".kts": "kotlin",
    ".py": "python",
}

JVM_LANGUAGES = {"java", "kotlin"}

RESOURCE_MAP: Dict[str, str] = {
    ".xml": "xml",
    ".yml": "yaml",
    ".yaml": "yaml",
    ".json": "json",
    ".properties": "properties",
    ".toml": "toml",
}

PLAIN_TEXT_KIND = "plain_text"

# Packages provided by the runtime rather than the classpath.
PLATFORM_PACKAGES: Tuple[str, ...] = ("java.", "javax.", "jdk.", "sun.", "com.sun.", "org.w3c.", "org.xml.", "kotlin.")

_BOMS: Tuple[Tuple[bytes, str], ...] = (
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF32_LE, "utf-32-le"),
    (codecs.BOM_UTF32_BE, "utf-32-be"),
    (codecs.BOM_UTF16_LE, "utf-16-le"),
    (codecs.BOM_UTF16_BE, "utf-16-be"),
)


def detect_charset(data: bytes) -> str:
    """Charset implied by a byte-order mark, UTF-8 otherwise."""
    for bom, charset in _BOMS:
        if data.startswith(bom):
            return charset
    return "utf-8"


def decode_text(data: bytes) -> Tuple[str, str]:
    """Decode *data* with its detected charset.

    Raises:
        UnicodeDecodeError: The bytes are not text in that charset.
    """
    charset = detect_charset(data)
    bom = CHARSET_BOMS.get(charset, b"")
    return data[len(bom):].decode(charset), charset


# ===================================================================
# Type context (classpath-backed symbol table)
# ===================================================================

class TypeContext:
    """Fully qualified type names visible to compiled-language sources.

    Populated from classpath jars and class directories, then from the
    types the project declares itself.
    """

    def __init__(self) -> None:
        self.types: Set[str] = set()
        self.packages: Set[str] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_classpath(cls, paths: Iterable[Path]) -> "TypeContext":
        context = cls()
        for path in paths:
            context.index(path)
        return context

    def index(self, path: Path) -> None:
        if path.is_dir():
            names = [p.relative_to(path).as_posix() for p in path.rglob("*.class")]
        elif zipfile.is_zipfile(path):
            try:
                with zipfile.ZipFile(path) as archive:
                    names = archive.namelist()
            except (OSError, zipfile.BadZipFile) as exc:
                logger.warning("Cannot index classpath entry %s: %s", path, exc)
                return
        else:
            logger.debug("Classpath entry %s is not an archive; not indexed", path)
            return
        for name in names:
            fqcn = _class_name(name)
            if fqcn:
                self.add(fqcn)

    def add(self, fqcn: str) -> None:
        with self._lock:
            self.types.add(fqcn)
            package, _, _ = fqcn.rpartition(".")
            while package:
                self.packages.add(package)
                package, _, _ = package.rpartition(".")

    def knows_type(self, fqcn: str) -> bool:
        if fqcn.startswith(PLATFORM_PACKAGES):
            return True
        if fqcn in self.types:
            return True
        # Nested types imported through their outer class.
        outer, _, _ = fqcn.rpartition(".")
        return bool(outer) and outer in self.types

    def knows_package(self, package: str) -> bool:
        return (package + ".").startswith(PLATFORM_PACKAGES) or package in self.packages

    def __len__(self) -> int:
        return len(self.types)


def _class_name(entry: str) -> Optional[str]:
    if not entry.endswith(".class"):
        return None
    if entry.startswith("META-INF/versions/"):
        parts = entry.split("/", 3)
        if len(parts) < 4:
            return None
        entry = parts[3]
    if entry.startswith("META-INF/") or entry.endswith(("module-info.class", "package-info.class")):
        return None
    return entry[: -len(".class")].replace("/", ".").replace("$", ".")


# ===================================================================
# Abstract parser interface
# ===================================================================

class SourceParser(ABC):
    """Turns one file into one :class:`SourceUnit`."""

    kind: str = ""

    def __init__(self, size_threshold_bytes: Optional[int] = None) -> None:
        self.size_threshold_bytes = size_threshold_bytes
        self._failures: List[ParseFailure] = []
        self._failures_lock = threading.Lock()

    def record_failure(self, failure: ParseFailure) -> None:
        logger.warning("%s", failure.message)
        with self._failures_lock:
            self._failures.append(failure)

    def drain_failures(self) -> List[ParseFailure]:
        """Failures recorded since the last call."""
        with self._failures_lock:
            failures, self._failures = self._failures, []
        return failures

    def parse_file(self, file_path: Path, rel_path: str) -> SourceUnit:
        attributes = FileAttributes.from_path(file_path)
        size = file_path.stat().st_size
        if self.size_threshold_bytes is not None and size > self.size_threshold_bytes:
            logger.info("%s is larger than %d bytes; kept opaque", rel_path, self.size_threshold_bytes)
            return opaque_unit(rel_path, attributes, self.kind or PLAIN_TEXT_KIND)
        return self.parse_bytes(rel_path, file_path.read_bytes(), attributes)

    @abstractmethod
    def parse_bytes(self, rel_path: str, data: bytes, attributes: Optional[FileAttributes] = None) -> SourceUnit:
        ...


def opaque_unit(rel_path: str, attributes: Optional[FileAttributes] = None, kind: str = PLAIN_TEXT_KIND) -> SourceUnit:
    return SourceUnit(
        source_path=rel_path,
        kind=kind,
        payload=PayloadKind.OPAQUE,
        charset=None,
        file_attributes=attributes,
    )


# ===================================================================
# Plain text
# ===================================================================

class PlainTextParser(SourceParser):
    kind = PLAIN_TEXT_KIND

    def parse_bytes(self, rel_path: str, data: bytes, attributes: Optional[FileAttributes] = None) -> SourceUnit:
        try:
            text, charset = decode_text(data)
        except UnicodeDecodeError:
            logger.debug("%s is not decodable text; kept as binary", rel_path)
            return SourceUnit(
                source_path=rel_path,
                kind=self.kind,
                payload=PayloadKind.BINARY,
                data=data,
                charset=None,
                file_attributes=attributes,
            )
        return SourceUnit(
            source_path=rel_path,
            kind=self.kind,
            text=text,
            charset=charset,
            file_attributes=attributes,
        )


# ===================================================================
# Resources
# ===================================================================

def _validate_xml(text: str) -> None:
    # ElementTree rejects an encoding declaration on already-decoded str input.
    ET.fromstring(text.encode("utf-8"))


def _validate_yaml(text: str) -> None:
    list(yaml.safe_load_all(text))


def _validate_properties(text: str) -> None:
    # Every line of a .properties file is legal; only check it decodes.
    return None


RESOURCE_VALIDATORS: Dict[str, Callable[[str], Any]] = {
    "xml": _validate_xml,
    "yaml": _validate_yaml,
    "json": json.loads,
    "properties": _validate_properties,
    "toml": toml.loads,
}


class ResourceParser(SourceParser):
    """Validating parser for a structured resource format."""

    def __init__(self, kind: str, size_threshold_bytes: Optional[int] = None) -> None:
        super().__init__(size_threshold_bytes)
        self.kind = kind
        self._validate = RESOURCE_VALIDATORS[kind]
        self._fallback = PlainTextParser(size_threshold_bytes)

    def parse_bytes(self, rel_path: str, data: bytes, attributes: Optional[FileAttributes] = None) -> SourceUnit:
        try:
            text, charset = decode_text(data)
            self._validate(text)
        except Exception as exc:
            self.record_failure(ParseFailure(rel_path, f"invalid {self.kind}, treated as plain text: {exc}"))
            return self._fallback.parse_bytes(rel_path, data, attributes)
        return SourceUnit(
            source_path=rel_path,
            kind=self.kind,
            text=text,
            charset=charset,
            file_attributes=attributes,
        )


# ===================================================================
# Tree-sitter
# ===================================================================

class TreeSitterSourceParser(SourceParser):
    """Error-tolerant parser for one language, built on Tree-sitter.

    Tree-sitter produces a concrete syntax tree that preserves every token,
    so a file with syntax errors still yields a usable tree. The tree is
    attached to the unit; the text stays the source of truth.
    """

    # Map language name -> module that provides the tree-sitter Language
    _GRAMMAR_MODULES: Dict[str, str] = {
        "java": "tree_sitter_java",
        "kotlin": "tree_sitter_kotlin",
        "python": "tree_sitter_python",
    }

    def __init__(
        self,
        language: str,
        type_context: Optional[TypeContext] = None,
        size_threshold_bytes: Optional[int] = None,
    ) -> None:
        super().__init__(size_threshold_bytes)
        self.kind = language
        self.language = language
        self.type_context = type_context or TypeContext()
        self._ts_language = self._load_language(language)
        self._local = threading.local()

    @classmethod
    def _load_language(cls, language: str) -> Any:
        from tree_sitter import Language

        mod_name = cls._GRAMMAR_MODULES.get(language)
        if mod_name is None:
            raise ValueError(f"No grammar module mapped for language '{language}'")
        mod = importlib.import_module(mod_name)
        # tree-sitter >=0.22 per-language packages expose a
        # language() function that returns the Language capsule.
        return Language(mod.language())

    def _parser(self) -> Any:
        # tree-sitter parsers are not thread safe; keep one per worker thread.
        parser = getattr(self._local, "parser", None)
        if parser is None:
            from tree_sitter import Parser as TSParser

            parser = self._local.parser = TSParser(self._ts_language)
        return parser

    def parse_bytes(self, rel_path: str, data: bytes, attributes: Optional[FileAttributes] = None) -> SourceUnit:
        text, charset = decode_text(data)
        tree = self._parser().parse(text.encode("utf-8"))
        if tree.root_node.has_error:
            logger.debug("%s has syntax errors; tree is partial", rel_path)
        return SourceUnit(
            source_path=rel_path,
            kind=self.kind,
            text=text,
            charset=charset,
            file_attributes=attributes,
            tree=tree,
        )

    # ------------------------------------------------------------------
    # Symbols
    # ------------------------------------------------------------------

    def extract_imports(self, unit: SourceUnit) -> List[str]:
        """Import targets; wildcard imports end with ``.*``."""
        if unit.tree is None:
            return []
        if self.language == "python":
            return _python_imports(unit.tree.root_node)
        imports: List[str] = []
        for node in _top_level(unit.tree.root_node):
            if node.type in ("import_declaration", "import_header", "import"):
                target = _jvm_import_target(node.text.decode("utf-8"))
                if target:
                    imports.append(target)
        return imports

    def declared_types(self, unit: SourceUnit) -> List[str]:
        """Fully qualified names of the top-level types declared by *unit*."""
        if unit.tree is None or self.language not in JVM_LANGUAGES:
            return []
        package = ""
        names: List[str] = []
        for node in _top_level(unit.tree.root_node):
            if node.type in ("package_declaration", "package_header"):
                package = _package_name(node.text.decode("utf-8"))
            elif node.type in _TYPE_DECLARATIONS:
                name = _declaration_name(node)
                if name:
                    names.append(f"{package}.{name}" if package else name)
        return names

    def missing_types(self, unit: SourceUnit) -> Tuple[str, ...]:
        """Imports of *unit* the type context cannot account for."""
        if self.language not in JVM_LANGUAGES:
            return ()
        missing: List[str] = []
        for target in self.extract_imports(unit):
            if target.endswith(".*"):
                found = self.type_context.knows_package(target[:-2]) or self.type_context.knows_type(target[:-2])
            elif self.language == "kotlin":
                # Kotlin may import top-level functions by package.
                found = self.type_context.knows_type(target) or self.type_context.knows_package(target.rpartition(".")[0])
            else:
                found = self.type_context.knows_type(target)
            if not found:
                missing.append(target)
        return tuple(missing)


_TYPE_DECLARATIONS = {
    "class_declaration",
    "interface_declaration",
    "enum_declaration",
    "record_declaration",
    "annotation_type_declaration",
    "object_declaration",
}


def _top_level(root: Any) -> Iterable[Any]:
    for child in root.children:
        if child.type == "import_list":
            yield from child.children
        else:
            yield child


def _declaration_name(node: Any) -> Optional[str]:
    name = node.child_by_field_name("name")
    if name is None:
        for child in node.children:
            if child.type in ("identifier", "type_identifier", "simple_identifier"):
                name = child
                break
    return name.text.decode("utf-8") if name is not None else None


def _package_name(text: str) -> str:
    return text.strip().removeprefix("package").strip().rstrip(";").strip()


def _jvm_import_target(text: str) -> Optional[str]:
    target = text.strip().removeprefix("import").strip().rstrip(";").strip()
    if target.startswith("static "):
        # Static imports name a member; keep its declaring type.
        target = target[len("static "):].strip()
        if not target.endswith(".*"):
            target = target.rpartition(".")[0]
        else:
            target = target[:-2]
    if " as " in target:
        target = target.split(" as ", 1)[0].strip()
    target = "".join(target.split())
    return target or None


def _python_imports(root: Any) -> List[str]:
    modules: List[str] = []
    for child in root.children:
        if child.type == "import_statement":
            for sub in child.children:
                if sub.type == "dotted_name":
                    modules.append(sub.text.decode("utf-8"))
                elif sub.type == "aliased_import":
                    name_n = sub.child_by_field_name("name")
                    if name_n is not None:
                        modules.append(name_n.text.decode("utf-8"))
        elif child.type == "import_from_statement":
            mod_node = child.child_by_field_name("module_name")
            if mod_node is None:
                continue
            if mod_node.type == "relative_import":
                dotted: Optional[str] = None
                for sub in mod_node.children:
                    if sub.type == "dotted_name":
                        dotted = sub.text.decode("utf-8")
                mod = dotted or ""
            else:
                mod = mod_node.text.decode("utf-8")
            if mod:
                modules.append(mod)
    return modules


# ===================================================================
# Factory
# ===================================================================

def build_parsers(
    type_context: Optional[TypeContext] = None,
    size_threshold_bytes: Optional[int] = None,
    languages: Iterable[str] = ("java", "kotlin", "python"),
) -> Dict[str, SourceParser]:
    """Parsers keyed by kind.

    A language whose grammar package cannot be loaded is left out; its files
    then fall through to the plain-text masks.
    """
    context = type_context or TypeContext()
    parsers: Dict[str, SourceParser] = {}
    for lang in languages:
        try:
            parsers[lang] = TreeSitterSourceParser(lang, context, size_threshold_bytes)
            logger.debug("Loaded tree-sitter parser for %s", lang)
        except ImportError as exc:
            logger.warning(
                "Grammar package for '%s' is not installed (%s); its files are not parsed. "
                "Install with: pip install %s",
                lang, exc, TreeSitterSourceParser._GRAMMAR_MODULES[lang].replace("_", "-"),
            )
        except Exception as exc:
            logger.warning("Could not load tree-sitter grammar for %s: %s", lang, exc)
    for kind in sorted(set(RESOURCE_MAP.values())):
        parsers[kind] = ResourceParser(kind, size_threshold_bytes)
    parsers[PLAIN_TEXT_KIND] = PlainTextParser(size_threshold_bytes)
    return parsers
