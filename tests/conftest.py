"""Pytest configuration and fixtures for rewrite CLI tests."""

import hashlib
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Dict, Generator, Iterable, Optional, Sequence, Tuple

import pytest
import requests

from rewrite_cli.resolver import ArtifactResolver


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path_factory, monkeypatch):
    """Keep every test away from ~/.rewrite, ~/.m2 and REWRITE_* variables."""
    home = tmp_path_factory.mktemp("rewrite-home")
    monkeypatch.setattr("rewrite_cli.config_manager.BASE_DIR", home)
    monkeypatch.setattr("rewrite_cli.config_manager.CONFIG_FILE", home / "config.toml")
    monkeypatch.setattr("rewrite_cli.config.LOCAL_REPOSITORY", home / "m2")
    for name in (
        "REWRITE_SIZE_THRESHOLD_MB",
        "REWRITE_EXCLUSIONS",
        "REWRITE_PLAIN_TEXT_MASKS",
        "REWRITE_CONFIG_LOCATION",
        "REWRITE_FAIL_ON_INVALID_RULES",
    ):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


def pom_xml(
    group: str,
    artifact: str,
    version: str,
    dependencies: Sequence[str] = (),
    extra: str = "",
    packaging: str = "jar",
) -> str:
    """A minimal namespaced POM; *dependencies* are ``<dependency>`` bodies or G:A:V strings."""
    deps = []
    for dep in dependencies:
        if dep.lstrip().startswith("<"):
            deps.append(f"<dependency>{dep}</dependency>")
        else:
            g, a, v = dep.split(":")
            deps.append(f"<dependency><groupId>{g}</groupId><artifactId>{a}</artifactId><version>{v}</version></dependency>")
    block = f"<dependencies>{''.join(deps)}</dependencies>" if deps else ""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<project xmlns="http://maven.apache.org/POM/4.0.0">\n'
        "  <modelVersion>4.0.0</modelVersion>\n"
        f"  <groupId>{group}</groupId>\n"
        f"  <artifactId>{artifact}</artifactId>\n"
        f"  <version>{version}</version>\n"
        f"  <packaging>{packaging}</packaging>\n"
        f"  {extra}\n"
        f"  {block}\n"
        "</project>\n"
    )


class FakeRepository:
    """Writes POMs and jars into a Maven-layout directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _dir(self, group: str, artifact: str, version: str) -> Path:
        path = self.root.joinpath(*group.split("."), artifact, version)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def add_pom(self, group: str, artifact: str, version: str, text: Optional[str] = None, **kwargs) -> Path:
        target = self._dir(group, artifact, version) / f"{artifact}-{version}.pom"
        target.write_text(text if text is not None else pom_xml(group, artifact, version, **kwargs), encoding="utf-8")
        return target

    def add_jar(
        self,
        group: str,
        artifact: str,
        version: str,
        classes: Iterable[str] = (),
        with_checksum: bool = False,
    ) -> Path:
        target = self._dir(group, artifact, version) / f"{artifact}-{version}.jar"
        with zipfile.ZipFile(target, "w") as archive:
            archive.writestr("META-INF/MANIFEST.MF", "Manifest-Version: 1.0\n")
            for fqcn in classes:
                archive.writestr(fqcn.replace(".", "/") + ".class", b"\xca\xfe\xba\xbe")
        if with_checksum:
            digest = hashlib.sha1(target.read_bytes()).hexdigest()
            target.with_name(target.name + ".sha1").write_text(digest)
        return target

    def add_module(
        self,
        coordinate: str,
        dependencies: Sequence[str] = (),
        classes: Iterable[str] = (),
        extra: str = "",
    ) -> Path:
        group, artifact, version = coordinate.split(":")
        self.add_pom(group, artifact, version, dependencies=dependencies, extra=extra)
        return self.add_jar(group, artifact, version, classes)


@pytest.fixture
def local_repo(tmp_path: Path) -> FakeRepository:
    root = tmp_path / "m2"
    root.mkdir()
    return FakeRepository(root)


@pytest.fixture
def offline_resolver(local_repo: FakeRepository) -> Generator[ArtifactResolver, None, None]:
    """Resolver over the fake local repository with no remotes."""
    resolver = ArtifactResolver(local_repository=local_repo.root, remotes=[], workers=4)
    yield resolver
    resolver.close()


def write_tree(root: Path, files: Dict[str, str]) -> Path:
    for rel, content in files.items():
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    return root


class FakeResponse:
    """Just enough of ``requests.Response`` for the resolver and applier."""

    def __init__(self, status_code: int = 200, content: bytes = b"", chunks: Tuple[bytes, ...] = ()) -> None:
        self.status_code = status_code
        self.content = content
        self.text = content.decode("utf-8", errors="replace")
        self._chunks = chunks or (content,)

    def iter_content(self, chunk_size: int = 1):
        return iter(self._chunks)

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


class FakeSession:
    """Serves canned responses by URL; anything else is a 404."""

    def __init__(self, responses: Optional[Dict[str, FakeResponse]] = None) -> None:
        self.responses = dict(responses or {})
        self.requested = []
        self.closed = False

    def get(self, url: str, **kwargs) -> FakeResponse:
        self.requested.append(url)
        return self.responses.get(url, FakeResponse(404))

    def close(self) -> None:
        self.closed = True
