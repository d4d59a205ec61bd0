"""Tests for the build descriptor loader (effective model computation)."""

from pathlib import Path

import pytest

from conftest import FakeRepository, write_tree
from rewrite_cli.descriptor import BuildDescriptorLoader, parse_descriptor
from rewrite_cli.errors import DescriptorInvalid
from rewrite_cli.models import Coordinate, ModuleIdentity

PROJECT = """<?xml version="1.0"?>
<project xmlns="http://maven.apache.org/POM/4.0.0">
  <groupId>com.example</groupId>
  <artifactId>app</artifactId>
  <version>1.4.0</version>
  <properties>
    <guava.version>32.1.2-jre</guava.version>
    <maven.compiler.release>17</maven.compiler.release>
  </properties>
  <dependencies>
    <dependency>
      <groupId>com.google.guava</groupId>
      <artifactId>guava</artifactId>
      <version>${guava.version}</version>
    </dependency>
    <dependency>
      <groupId>com.example</groupId>
      <artifactId>shared</artifactId>
      <version>${project.version}</version>
      <exclusions>
        <exclusion><groupId>commons-logging</groupId><artifactId>commons-logging</artifactId></exclusion>
      </exclusions>
    </dependency>
    <dependency>
      <groupId>junit</groupId>
      <artifactId>junit</artifactId>
      <version>4.13.2</version>
      <scope>test</scope>
    </dependency>
  </dependencies>
</project>
"""

PARENT = """<project>
  <groupId>com.example</groupId>
  <artifactId>parent</artifactId>
  <version>2.0</version>
  <packaging>pom</packaging>
  <properties><slf4j.version>2.0.9</slf4j.version></properties>
  <dependencyManagement>
    <dependencies>
      <dependency>
        <groupId>org.slf4j</groupId>
        <artifactId>slf4j-api</artifactId>
        <version>${slf4j.version}</version>
        <scope>runtime</scope>
      </dependency>
    </dependencies>
  </dependencyManagement>
</project>
"""

CHILD = """<project>
  <parent>
    <groupId>com.example</groupId>
    <artifactId>parent</artifactId>
    <version>2.0</version>
  </parent>
  <artifactId>child</artifactId>
  <dependencies>
    <dependency>
      <groupId>org.slf4j</groupId>
      <artifactId>slf4j-api</artifactId>
    </dependency>
    <dependency>
      <groupId>com.example</groupId>
      <artifactId>sibling</artifactId>
      <version>${project.parent.version}</version>
    </dependency>
  </dependencies>
</project>
"""


def loader(resolver=None, **kwargs) -> BuildDescriptorLoader:
    kwargs.setdefault("environ", {})
    return BuildDescriptorLoader(resolver, **kwargs)


def coords(model) -> list:
    return [str(e.coordinate) for e in model.dependencies]


class TestParsing:
    def test_namespace_is_ignored(self):
        raw = parse_descriptor(PROJECT, "pom.xml")
        assert raw.artifact_id == "app"
        assert len(raw.dependencies) == 3
        assert raw.dependencies[1].exclusions == [("commons-logging", "commons-logging")]

    def test_unparsable_xml(self):
        with pytest.raises(DescriptorInvalid):
            parse_descriptor("<project><groupId>", "broken.xml")

    def test_wrong_root_element(self):
        with pytest.raises(DescriptorInvalid):
            parse_descriptor("<settings/>", "settings.xml")

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(DescriptorInvalid):
            loader().load(tmp_path / "pom.xml")


class TestEffectiveModel:
    def test_properties_and_project_values(self, tmp_path: Path):
        write_tree(tmp_path, {"pom.xml": PROJECT})
        model = loader().load(tmp_path / "pom.xml")

        assert (model.group_id, model.artifact_id, model.version) == ("com.example", "app", "1.4.0")
        assert coords(model) == [
            "com.google.guava:guava:32.1.2-jre",
            "com.example:shared:1.4.0",
            "junit:junit:4.13.2",
        ]
        assert model.dependencies[2].scope == "test"
        assert model.dependencies[1].exclusions == frozenset({("commons-logging", "commons-logging")})
        assert model.properties["maven.compiler.release"] == "17"

    def test_load_dependencies_matches_model(self, tmp_path: Path):
        write_tree(tmp_path, {"pom.xml": PROJECT})
        edges = loader().load_dependencies(tmp_path / "pom.xml")
        assert [e.coordinate.name for e in edges] == ["guava", "shared", "junit"]

    def test_system_properties_win_over_pom_properties(self, tmp_path: Path):
        write_tree(tmp_path, {"pom.xml": PROJECT})
        model = loader(system_properties={"guava.version": "33.0.0-jre"}).load(tmp_path / "pom.xml")
        assert coords(model)[0] == "com.google.guava:guava:33.0.0-jre"

    def test_env_interpolation(self):
        text = PROJECT.replace("${guava.version}", "${env.GUAVA_VERSION}")
        model = loader(environ={"GUAVA_VERSION": "31.0-jre"}).load_text(text, "pom.xml")
        assert coords(model)[0] == "com.google.guava:guava:31.0-jre"

    def test_recursive_property_does_not_loop(self):
        text = PROJECT.replace(
            "<guava.version>32.1.2-jre</guava.version>",
            "<guava.version>${other}</guava.version><other>${guava.version}</other>",
        )
        model = loader().load_text(text, "pom.xml")
        # The unresolvable dependency is dropped; the others survive.
        assert coords(model) == ["com.example:shared:1.4.0", "junit:junit:4.13.2"]

    def test_dependency_without_version_is_skipped(self):
        text = PROJECT.replace("<version>4.13.2</version>", "")
        model = loader().load_text(text, "pom.xml")
        assert "junit:junit" not in " ".join(coords(model))


class TestInheritance:
    def test_parent_from_relative_path(self, tmp_path: Path):
        write_tree(tmp_path, {"pom.xml": PARENT, "child/pom.xml": CHILD})
        model = loader().load(tmp_path / "child" / "pom.xml")

        assert (model.group_id, model.version) == ("com.example", "2.0")
        assert coords(model) == ["org.slf4j:slf4j-api:2.0.9", "com.example:sibling:2.0"]
        assert model.dependencies[0].scope == "runtime"
        assert model.managed_versions[ModuleIdentity("org.slf4j", "slf4j-api")] == "2.0.9"

    def test_parent_from_repository(self, tmp_path: Path, local_repo: FakeRepository, offline_resolver):
        local_repo.add_pom("com.example", "parent", "2.0", text=PARENT)
        write_tree(tmp_path, {"pom.xml": CHILD})
        model = loader(offline_resolver).load(tmp_path / "pom.xml")
        assert coords(model)[0] == "org.slf4j:slf4j-api:2.0.9"

    def test_mismatched_local_parent_falls_back_to_repository(
        self, tmp_path: Path, local_repo: FakeRepository, offline_resolver
    ):
        local_repo.add_pom("com.example", "parent", "2.0", text=PARENT)
        write_tree(tmp_path, {
            "pom.xml": PARENT.replace("<version>2.0</version>", "<version>9.9</version>"),
            "child/pom.xml": CHILD,
        })
        model = loader(offline_resolver).load(tmp_path / "child" / "pom.xml")
        assert model.version == "2.0"

    def test_missing_parent_is_fatal(self, tmp_path: Path, offline_resolver):
        write_tree(tmp_path, {"pom.xml": CHILD})
        with pytest.raises(DescriptorInvalid) as info:
            loader(offline_resolver).load(tmp_path / "pom.xml")
        assert "com.example:parent:2.0" in info.value.message

    def test_parent_cycle_is_detected(self, tmp_path: Path):
        def pom(name: str, parent: str) -> str:
            return (
                "<project><parent><groupId>g</groupId>"
                f"<artifactId>{parent}</artifactId><version>1</version>"
                f"<relativePath>../{parent}/pom.xml</relativePath></parent>"
                f"<artifactId>{name}</artifactId></project>"
            )

        write_tree(tmp_path, {"a/pom.xml": pom("a", "b"), "b/pom.xml": pom("b", "a")})
        with pytest.raises(DescriptorInvalid) as info:
            loader().load(tmp_path / "a" / "pom.xml")
        assert "Cycle" in info.value.message


class TestProfiles:
    POM = """<project>
  <groupId>g</groupId><artifactId>p</artifactId><version>1</version>
  <profiles>
    <profile>
      <id>default</id>
      <activation><activeByDefault>true</activeByDefault></activation>
      <dependencies><dependency><groupId>g</groupId><artifactId>dflt</artifactId><version>1</version></dependency></dependencies>
    </profile>
    <profile>
      <id>fast</id>
      <dependencies><dependency><groupId>g</groupId><artifactId>fast</artifactId><version>1</version></dependency></dependencies>
    </profile>
    <profile>
      <id>by-property</id>
      <activation><property><name>env</name><value>ci</value></property></activation>
      <properties><lib.version>7</lib.version></properties>
      <dependencies><dependency><groupId>g</groupId><artifactId>ci</artifactId><version>${lib.version}</version></dependency></dependencies>
    </profile>
    <profile>
      <id>by-jdk</id>
      <activation><jdk>21</jdk></activation>
      <dependencies><dependency><groupId>g</groupId><artifactId>jdk21</artifactId><version>1</version></dependency></dependencies>
    </profile>
    <profile>
      <id>by-file</id>
      <activation><file><exists>${basedir}/marker.txt</exists></file></activation>
      <dependencies><dependency><groupId>g</groupId><artifactId>marked</artifactId><version>1</version></dependency></dependencies>
    </profile>
  </profiles>
</project>
"""

    def _names(self, tmp_path: Path, **kwargs) -> list:
        if not (tmp_path / "pom.xml").exists():
            write_tree(tmp_path, {"pom.xml": self.POM})
        return [e.coordinate.name for e in loader(**kwargs).load(tmp_path / "pom.xml").dependencies]

    def test_active_by_default_when_nothing_else(self, tmp_path: Path):
        assert self._names(tmp_path) == ["dflt"]

    def test_explicit_profile_replaces_default(self, tmp_path: Path):
        assert self._names(tmp_path, active_profiles=["fast"]) == ["fast"]

    def test_deactivated_default(self, tmp_path: Path):
        assert self._names(tmp_path, active_profiles=["!default"]) == []

    def test_property_activation_and_profile_properties(self, tmp_path: Path):
        write_tree(tmp_path, {"pom.xml": self.POM})
        model = loader(system_properties={"env": "ci"}).load(tmp_path / "pom.xml")
        assert [str(e.coordinate) for e in model.dependencies] == ["g:ci:7"]

    def test_jdk_activation(self, tmp_path: Path):
        assert self._names(tmp_path, system_properties={"java.version": "21.0.2"}) == ["jdk21"]
        assert self._names(tmp_path, system_properties={"java.version": "17.0.9"}) == ["dflt"]

    def test_file_activation(self, tmp_path: Path):
        write_tree(tmp_path, {"pom.xml": self.POM, "marker.txt": "x"})
        assert self._names(tmp_path) == ["marked"]


class TestManagementImport:
    BOM = """<project>
  <groupId>org.platform</groupId><artifactId>bom</artifactId><version>3</version><packaging>pom</packaging>
  <dependencyManagement><dependencies>
    <dependency><groupId>org.platform</groupId><artifactId>core</artifactId><version>3.3</version></dependency>
    <dependency><groupId>org.platform</groupId><artifactId>extra</artifactId><version>3.3</version></dependency>
  </dependencies></dependencyManagement>
</project>
"""

    POM = """<project>
  <groupId>g</groupId><artifactId>app</artifactId><version>1</version>
  <dependencyManagement><dependencies>
    <dependency><groupId>org.platform</groupId><artifactId>extra</artifactId><version>9.0</version></dependency>
    <dependency>
      <groupId>org.platform</groupId><artifactId>bom</artifactId><version>3</version>
      <type>pom</type><scope>import</scope>
    </dependency>
  </dependencies></dependencyManagement>
  <dependencies>
    <dependency><groupId>org.platform</groupId><artifactId>core</artifactId></dependency>
    <dependency><groupId>org.platform</groupId><artifactId>extra</artifactId></dependency>
  </dependencies>
</project>
"""

    def test_bom_versions_fill_gaps_and_declared_entries_win(
        self, tmp_path: Path, local_repo: FakeRepository, offline_resolver
    ):
        local_repo.add_pom("org.platform", "bom", "3", text=self.BOM)
        write_tree(tmp_path, {"pom.xml": self.POM})
        model = loader(offline_resolver).load(tmp_path / "pom.xml")

        assert coords(model) == ["org.platform:core:3.3", "org.platform:extra:9.0"]
        assert ModuleIdentity("org.platform", "bom", None, "pom") not in model.managed_versions

    def test_missing_bom_is_not_fatal(self, tmp_path: Path, offline_resolver):
        write_tree(tmp_path, {"pom.xml": self.POM})
        model = loader(offline_resolver).load(tmp_path / "pom.xml")
        # core has no version without the BOM and is skipped.
        assert coords(model) == ["org.platform:extra:9.0"]

    def test_load_coordinate_is_cached(self, local_repo: FakeRepository, offline_resolver):
        local_repo.add_pom("org.platform", "bom", "3", text=self.BOM)
        descriptor_loader = loader(offline_resolver)
        first = descriptor_loader.load_coordinate(Coordinate("org.platform", "bom", "3", type="pom"))
        second = descriptor_loader.load_coordinate(Coordinate("org.platform", "bom", "3"))
        assert first is second
