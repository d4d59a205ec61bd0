"""Tests for loading rules from extension packages."""

import sys
import textwrap
import zipfile
from pathlib import Path

import pytest

from conftest import FakeRepository
from rewrite_cli.builtin_rules import builtin_registry
from rewrite_cli.classpath import ClasspathAssembler
from rewrite_cli.extensions import ExtensionLoader, identity_from_filename, isolated_imports
from rewrite_cli.models import ModuleIdentity, SourceUnit
from rewrite_cli.registry import RegistryChain

EXTENSION_SOURCE = textwrap.dedent('''\
    from dataclasses import dataclass

    from rewrite_cli.rules import Rule, option

    import shout_helper


    @dataclass
    class Shout(Rule):
        rule_id = "ext.Shout"
        description = "Upper-case every text file"

        suffix: str = option("string", default="")

        def visit(self, unit, ctx):
            if not unit.is_text:
                return unit
            return unit.with_text(shout_helper.loud(unit.print_all()) + self.suffix)


    class NotARule:
        rule_id = "ext.NotARule"
''')

HELPER_SOURCE = "def loud(text):\n    return text.upper()\n"


@pytest.fixture
def py_extension(tmp_path: Path) -> Path:
    folder = tmp_path / "ext"
    folder.mkdir()
    (folder / "shout_helper.py").write_text(HELPER_SOURCE)
    path = folder / "shout.py"
    path.write_text(EXTENSION_SOURCE)
    return path


def make_archive(path: Path) -> Path:
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("shoutpkg/__init__.py", "from shoutpkg.rules import Shout\n")
        archive.writestr("shoutpkg/rules.py", EXTENSION_SOURCE.replace("import shout_helper\n", "from shoutpkg import helper as shout_helper\n"))
        archive.writestr("shoutpkg/helper.py", HELPER_SOURCE)
        archive.writestr("shoutpkg-1.0.dist-info/METADATA", "Name: shoutpkg\n")
    return path


@pytest.mark.parametrize("filename,identity", [
    ("my_rules-1.2.3.zip", ModuleIdentity("file", "my-rules", None, "zip")),
    ("Rules-2.0-py3-none-any.whl", ModuleIdentity("file", "rules", None, "whl")),
    ("cleanup.py", ModuleIdentity("file", "cleanup", None, "py")),
])
def test_identity_from_filename(filename, identity):
    assert identity_from_filename(Path(filename)) == identity


def test_isolated_imports_restore_module_table(tmp_path: Path):
    (tmp_path / "scoped_module_xyz.py").write_text("VALUE = 1\n")
    before = set(sys.modules)
    with isolated_imports(tmp_path) as imported:
        import scoped_module_xyz  # noqa: F401
    assert "scoped_module_xyz" in imported
    assert set(sys.modules) == before
    assert str(tmp_path) not in sys.path


def test_load_python_file(py_extension: Path):
    chain = RegistryChain(builtin_registry())
    modules_before = set(sys.modules)

    loaded = ExtensionLoader().load([str(py_extension)], chain)

    assert loaded.rule_ids == ["ext.Shout"]
    assert chain.secondaries[-1].name == "extension:shout.py"
    assert "ext.Shout" not in chain.primary
    assert set(sys.modules) == modules_before

    rule = chain.select("ext.Shout")
    unit = SourceUnit("a.txt", "plain_text", text="hi")
    assert rule.visit(unit, None).text == "HI"


def test_load_archive(tmp_path: Path):
    archive = make_archive(tmp_path / "shoutpkg-1.0.zip")
    chain = RegistryChain(builtin_registry())
    loaded = ExtensionLoader().load([str(archive)], chain)

    assert loaded.rule_ids == ["ext.Shout"]
    assert loaded.packages[0].identity == ModuleIdentity("file", "shoutpkg", None, "zip")
    assert "shoutpkg" not in sys.modules


def test_extend_host_registry_merges_into_primary(py_extension: Path):
    chain = RegistryChain(builtin_registry())
    ExtensionLoader(extend_host_registry=True).load([str(py_extension)], chain)
    assert "ext.Shout" in chain.primary


def test_disabled_loader_skips_everything(py_extension: Path):
    chain = RegistryChain(builtin_registry())
    loaded = ExtensionLoader(enabled=False).load([str(py_extension)], chain)
    assert loaded.skipped == [str(py_extension)]
    assert loaded.is_empty
    assert chain.secondaries == []


def test_duplicate_identity_is_loaded_once(py_extension: Path, tmp_path: Path):
    copy = tmp_path / "shout-2.0.py"
    copy.write_text(py_extension.read_text())
    chain = RegistryChain(builtin_registry())

    loaded = ExtensionLoader().load([str(py_extension), str(copy)], chain)

    assert len(loaded.packages) == 1
    assert loaded.skipped == [str(copy)]


@pytest.mark.parametrize("name,content", [
    ("rules.txt", "not an extension"),
    ("broken.py", "raise RuntimeError('boom')\n"),
])
def test_unusable_entries_are_skipped(tmp_path: Path, name: str, content: str):
    path = tmp_path / name
    path.write_text(content)
    loaded = ExtensionLoader().load([str(path), str(tmp_path / "absent.py")], RegistryChain(builtin_registry()))
    assert loaded.skipped == [str(path), str(tmp_path / "absent.py")]


def test_coordinate_entries_resolve_through_the_repository(local_repo: FakeRepository, offline_resolver):
    target = local_repo.root / "org" / "acme" / "shoutpkg" / "1.0" / "shoutpkg-1.0.zip"
    target.parent.mkdir(parents=True)
    make_archive(target)
    local_repo.add_jar("org.acme", "plain", "1.0")
    loader = ExtensionLoader(ClasspathAssembler(offline_resolver))
    chain = RegistryChain(builtin_registry())

    loaded = loader.load(["org.acme:shoutpkg:zip:1.0", "org.acme:plain:1.0", "org.acme:absent:1.0"], chain)

    assert loaded.rule_ids == ["ext.Shout"]
    assert loaded.packages[0].identity == ModuleIdentity("org.acme", "shoutpkg", None, "zip")
    # A jar is not an importable extension archive.
    assert loaded.skipped == ["org.acme:plain:1.0", "org.acme:absent:1.0"]


def test_coordinates_need_a_resolver():
    loaded = ExtensionLoader().load(["org.acme:shout:1.0"], RegistryChain(builtin_registry()))
    assert loaded.skipped == ["org.acme:shout:1.0"]
