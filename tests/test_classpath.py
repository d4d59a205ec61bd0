"""Tests for classpath assembly from a project descriptor."""

from pathlib import Path

import pytest

from conftest import FakeRepository, pom_xml, write_tree
from rewrite_cli.classpath import ClasspathAssembler, looks_like_path
from rewrite_cli.errors import DescriptorInvalid


@pytest.mark.parametrize("entry,expected", [
    ("org.example:lib:1.0", False),
    ("./ext/rules.whl", True),
    ("/opt/rules.zip", True),
    ("~/rules.py", True),
    ("C:rules.whl", True),
])
def test_looks_like_path(entry, expected):
    assert looks_like_path(entry) is expected


def test_assemble_project(tmp_path: Path, local_repo: FakeRepository, offline_resolver):
    local_repo.add_module("g:a:1.0", dependencies=["g:b:2.0"])
    local_repo.add_module("g:b:2.0")
    local_repo.add_module("g:t:1.0")
    project = tmp_path / "project"
    write_tree(project, {"pom.xml": pom_xml("com.example", "app", "1", dependencies=[
        "g:a:1.0",
        "<groupId>g</groupId><artifactId>t</artifactId><version>1.0</version><scope>test</scope>",
    ])})

    classpath = ClasspathAssembler(offline_resolver).assemble(project / "pom.xml")

    assert [p.name for p in classpath.paths] == ["a-1.0.jar", "b-2.0.jar"]
    assert classpath.is_complete


def test_project_management_overrides_transitive_versions(
    tmp_path: Path, local_repo: FakeRepository, offline_resolver
):
    local_repo.add_module("g:a:1.0", dependencies=["g:b:1.0"])
    local_repo.add_module("g:b:1.0")
    local_repo.add_module("g:b:1.5")
    management = (
        "<dependencyManagement><dependencies><dependency>"
        "<groupId>g</groupId><artifactId>b</artifactId><version>1.5</version>"
        "</dependency></dependencies></dependencyManagement>"
    )
    write_tree(tmp_path, {"pom.xml": pom_xml("com.example", "app", "1", dependencies=["g:a:1.0"], extra=management)})

    classpath = ClasspathAssembler(offline_resolver).assemble(tmp_path / "pom.xml")
    assert [p.name for p in classpath.paths] == ["a-1.0.jar", "b-1.5.jar"]


def test_invalid_descriptor_propagates(tmp_path: Path, offline_resolver):
    write_tree(tmp_path, {"pom.xml": "<project><dependencies>"})
    with pytest.raises(DescriptorInvalid):
        ClasspathAssembler(offline_resolver).assemble(tmp_path / "pom.xml")


def test_resolve_extra(tmp_path: Path, local_repo: FakeRepository, offline_resolver):
    jar = local_repo.add_jar("g", "ext", "1")
    local_file = tmp_path / "local.jar"
    local_file.write_bytes(b"PK")

    paths = ClasspathAssembler(offline_resolver).resolve_extra([
        str(local_file),
        "g:ext:1",
        "g:absent:1",
        str(tmp_path / "missing.jar"),
        "not-a-coordinate",
        "",
    ])
    assert paths == [local_file, jar]
