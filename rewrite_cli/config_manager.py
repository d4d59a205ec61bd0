"""Configuration manager for the rewrite CLI using TOML files.

Precedence, highest first: command-line values, ``REWRITE_*`` environment
variables, ``~/.rewrite/config.toml``, built-in defaults.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import toml

from . import config
from .config import BASE_DIR, CONFIG_FILE

logger = logging.getLogger(__name__)


DEFAULT_SETTINGS: Dict[str, Any] = {
    "size_threshold_mb": config.DEFAULT_SIZE_THRESHOLD_MB,
    "exclusions": [],
    "plain_text_masks": [],
    "config_location": config.DEFAULT_CONFIG_LOCATION,
    "fail_on_invalid_rules": False,
}

DEFAULT_EXTENSION_SETTINGS: Dict[str, Any] = {
    "enabled": True,
    "extend_host_registry": False,
}

# Environment variable -> key in the [rewrite] section.
ENV_OVERRIDES = {
    "REWRITE_SIZE_THRESHOLD_MB": "size_threshold_mb",
    "REWRITE_EXCLUSIONS": "exclusions",
    "REWRITE_PLAIN_TEXT_MASKS": "plain_text_masks",
    "REWRITE_CONFIG_LOCATION": "config_location",
    "REWRITE_FAIL_ON_INVALID_RULES": "fail_on_invalid_rules",
}


def split_list(value: Union[str, Iterable[str], None]) -> List[str]:
    """Normalise a comma-separated string or an iterable of strings."""
    if value is None:
        return []
    if isinstance(value, str):
        items: Iterable[str] = value.split(",")
    else:
        items = [part for entry in value for part in str(entry).split(",")]
    return [item.strip() for item in items if item.strip()]


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_full_config() -> Dict[str, Any]:
    """Load the entire TOML config (all sections)."""
    if not CONFIG_FILE.exists():
        return {}
    try:
        with open(CONFIG_FILE, "r", encoding="utf-8") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", CONFIG_FILE, exc)
        return {}


def _save_full_config(data: Dict[str, Any]) -> bool:
    BASE_DIR.mkdir(parents=True, exist_ok=True)
    try:
        with open(CONFIG_FILE, "w", encoding="utf-8") as f:
            toml.dump(data, f)
        return True
    except OSError as exc:
        logger.error("Could not write config file %s: %s", CONFIG_FILE, exc)
        return False


def save_config(section: str, values: Mapping[str, Any]) -> bool:
    """Replace one section of the config file, preserving the others."""
    data = load_full_config()
    data[section] = dict(values)
    return _save_full_config(data)


def load_settings(environ: Mapping[str, str] = os.environ) -> Dict[str, Any]:
    """Return the ``[rewrite]`` section merged over defaults and under env."""
    settings = dict(DEFAULT_SETTINGS)
    settings.update(load_full_config().get("rewrite", {}))

    for env_name, key in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        if key == "size_threshold_mb":
            try:
                settings[key] = int(raw)
            except ValueError:
                logger.warning("Ignoring %s=%r: not an integer", env_name, raw)
        elif key in ("exclusions", "plain_text_masks"):
            settings[key] = split_list(raw)
        elif key == "fail_on_invalid_rules":
            settings[key] = _parse_bool(raw)
        else:
            settings[key] = raw

    settings["exclusions"] = split_list(settings.get("exclusions"))
    settings["plain_text_masks"] = split_list(settings.get("plain_text_masks"))
    return settings


def load_repository_config() -> Dict[str, Any]:
    """Return the local repository path and ordered remote repositories."""
    section = load_full_config().get("repositories", {})
    remotes = section.get("remotes") or config.DEFAULT_REMOTE_REPOSITORIES
    normalised = []
    for index, remote in enumerate(remotes):
        if isinstance(remote, str):
            remote = {"id": f"remote-{index}", "url": remote}
        if not remote.get("url"):
            logger.warning("Skipping remote repository without url: %s", remote)
            continue
        normalised.append({"id": remote.get("id", f"remote-{index}"), "url": remote["url"]})
    local = section.get("local")
    return {
        "local": Path(local).expanduser() if local else config.LOCAL_REPOSITORY,
        "remotes": normalised,
        "timeout": section.get("timeout", config.HTTP_TIMEOUT_SECONDS),
        "workers": section.get("workers", config.RESOLVER_WORKERS),
    }


def load_extension_config() -> Dict[str, Any]:
    settings = dict(DEFAULT_EXTENSION_SETTINGS)
    settings.update(load_full_config().get("extensions", {}))
    return settings


@dataclass
class RunConfig:
    """Everything a single run needs, after precedence has been applied."""
    project_root: Path
    rule_id: Optional[str] = None
    rule_options: List[str] = field(default_factory=list)
    extensions: List[str] = field(default_factory=list)
    config_location: Optional[str] = None
    exclusions: List[str] = field(default_factory=list)
    plain_text_masks: List[str] = field(default_factory=list)
    size_threshold_mb: int = config.DEFAULT_SIZE_THRESHOLD_MB
    dry_run: bool = True
    fail_on_invalid_rules: bool = False
    local_repository: Path = config.LOCAL_REPOSITORY
    remote_repositories: List[Dict[str, str]] = field(
        default_factory=lambda: list(config.DEFAULT_REMOTE_REPOSITORIES)
    )
    http_timeout: float = config.HTTP_TIMEOUT_SECONDS
    resolver_workers: int = config.RESOLVER_WORKERS
    extensions_enabled: bool = True
    extend_host_registry: bool = False
    active_profiles: List[str] = field(default_factory=list)
    system_properties: Dict[str, str] = field(default_factory=dict)

    @property
    def plain_text_masks_or_default(self) -> List[str]:
        return self.plain_text_masks or list(config.DEFAULT_PLAIN_TEXT_MASKS)

    @property
    def patch_path(self) -> Path:
        return self.project_root / config.PATCH_DIR / config.PATCH_FILE

    def resolve_config_location(self) -> Optional[Path]:
        """Locate the declarative rule file, relative to the project root."""
        if not self.config_location:
            return None
        candidate = Path(self.config_location).expanduser()
        if not candidate.is_absolute():
            candidate = self.project_root / candidate
        return candidate if candidate.is_file() else None


def build_run_config(project_root: Path, **overrides: Any) -> RunConfig:
    """Merge explicit overrides (``None`` = unset) over file/env settings."""
    settings = load_settings()
    repos = load_repository_config()
    ext = load_extension_config()

    def pick(name: str, fallback: Any) -> Any:
        value = overrides.get(name)
        if value is None or value == []:
            return fallback
        return value

    return RunConfig(
        project_root=Path(project_root),
        rule_id=overrides.get("rule_id"),
        rule_options=split_list(overrides.get("rule_options")),
        extensions=split_list(overrides.get("extensions")),
        config_location=pick("config_location", settings["config_location"]),
        exclusions=split_list(pick("exclusions", settings["exclusions"])),
        plain_text_masks=split_list(pick("plain_text_masks", settings["plain_text_masks"])),
        size_threshold_mb=int(pick("size_threshold_mb", settings["size_threshold_mb"])),
        dry_run=pick("dry_run", True),
        fail_on_invalid_rules=bool(pick("fail_on_invalid_rules", settings["fail_on_invalid_rules"])),
        local_repository=Path(pick("local_repository", repos["local"])),
        remote_repositories=repos["remotes"],
        http_timeout=float(repos["timeout"]),
        resolver_workers=int(repos["workers"]),
        extensions_enabled=bool(ext["enabled"]),
        extend_host_registry=bool(pick("extend_host_registry", ext["extend_host_registry"])),
        active_profiles=split_list(overrides.get("active_profiles")),
        system_properties=dict(overrides.get("system_properties") or {}),
    )
