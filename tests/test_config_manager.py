"""Tests for settings precedence and persistence."""

from pathlib import Path

import toml

from rewrite_cli import config, config_manager
from rewrite_cli.config_manager import build_run_config, load_settings, save_config, split_list


def test_split_list():
    assert split_list(None) == []
    assert split_list(" a, b ,,c ") == ["a", "b", "c"]
    assert split_list(["a,b", "c"]) == ["a", "b", "c"]


def test_defaults_without_config_file():
    settings = load_settings({})
    assert settings["size_threshold_mb"] == config.DEFAULT_SIZE_THRESHOLD_MB
    assert settings["config_location"] == "rewrite.yml"
    assert settings["exclusions"] == []


def test_save_preserves_other_sections():
    save_config("repositories", {"local": "/tmp/m2"})
    save_config("rewrite", {"size_threshold_mb": 3})

    data = toml.load(config_manager.CONFIG_FILE)
    assert data == {"repositories": {"local": "/tmp/m2"}, "rewrite": {"size_threshold_mb": 3}}


def test_environment_overrides_file():
    save_config("rewrite", {"size_threshold_mb": 3, "exclusions": "a/**"})
    settings = load_settings({
        "REWRITE_SIZE_THRESHOLD_MB": "7",
        "REWRITE_PLAIN_TEXT_MASKS": "**/*.groovy,**/*.gradle",
        "REWRITE_FAIL_ON_INVALID_RULES": "yes",
    })
    assert settings["size_threshold_mb"] == 7
    assert settings["exclusions"] == ["a/**"]
    assert settings["plain_text_masks"] == ["**/*.groovy", "**/*.gradle"]
    assert settings["fail_on_invalid_rules"] is True


def test_bad_environment_integer_is_ignored():
    assert load_settings({"REWRITE_SIZE_THRESHOLD_MB": "lots"})["size_threshold_mb"] == config.DEFAULT_SIZE_THRESHOLD_MB


def test_unreadable_config_file_is_ignored():
    config_manager.CONFIG_FILE.write_text("this is = = not toml")
    assert config_manager.load_full_config() == {}


def test_repository_config():
    save_config("repositories", {
        "local": "~/custom-m2",
        "remotes": [{"id": "corp", "url": "https://maven.corp/repo"}, "https://mirror.example/m2", {"id": "nourl"}],
    })
    repos = config_manager.load_repository_config()
    assert repos["local"] == Path("~/custom-m2").expanduser()
    assert repos["remotes"] == [
        {"id": "corp", "url": "https://maven.corp/repo"},
        {"id": "remote-1", "url": "https://mirror.example/m2"},
    ]


def test_repository_defaults():
    repos = config_manager.load_repository_config()
    assert repos["local"] == config.LOCAL_REPOSITORY
    assert [r["id"] for r in repos["remotes"]] == ["central", "sonatype-snapshots"]


class TestBuildRunConfig:
    def test_command_line_wins(self, tmp_path: Path):
        save_config("rewrite", {"size_threshold_mb": 3, "exclusions": ["x/**"]})
        cfg = build_run_config(tmp_path, size_threshold_mb=0, exclusions="y/**", rule_options="a=1,b=2")
        assert cfg.size_threshold_mb == 0
        assert cfg.exclusions == ["y/**"]
        assert cfg.rule_options == ["a=1", "b=2"]

    def test_unset_values_fall_back(self, tmp_path: Path):
        save_config("rewrite", {"exclusions": ["x/**"], "fail_on_invalid_rules": True})
        save_config("extensions", {"enabled": False, "extend_host_registry": True})
        cfg = build_run_config(tmp_path, exclusions=None, plain_text_masks=[])

        assert cfg.exclusions == ["x/**"]
        assert cfg.plain_text_masks_or_default == config.DEFAULT_PLAIN_TEXT_MASKS
        assert cfg.fail_on_invalid_rules is True
        assert cfg.extensions_enabled is False
        assert cfg.extend_host_registry is True
        assert cfg.dry_run is True

    def test_flags_override_extension_settings(self, tmp_path: Path):
        save_config("extensions", {"extend_host_registry": True})
        assert build_run_config(tmp_path, extend_host_registry=False).extend_host_registry is False

    def test_patch_path_and_rule_file(self, tmp_path: Path):
        cfg = build_run_config(tmp_path)
        assert cfg.patch_path == tmp_path / "target" / "rewrite" / "rewrite.patch"
        assert cfg.resolve_config_location() is None

        (tmp_path / "rewrite.yml").write_text("")
        assert cfg.resolve_config_location() == tmp_path / "rewrite.yml"
