"""Configuration paths and defaults for the rewrite CLI."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("REWRITE_HOME", str(Path.home() / ".rewrite"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"
LOCAL_REPOSITORY = Path(
    os.environ.get("REWRITE_LOCAL_REPOSITORY", str(Path.home() / ".m2" / "repository"))
).expanduser()

DEFAULT_REMOTE_REPOSITORIES = [
    {"id": "central", "url": "https://repo1.maven.org/maven2/"},
    {"id": "sonatype-snapshots", "url": "https://oss.sonatype.org/content/repositories/snapshots/"},
]

DEFAULT_DESCRIPTOR = "pom.xml"
DEFAULT_CONFIG_LOCATION = "rewrite.yml"
DEFAULT_SIZE_THRESHOLD_MB = 10
PATCH_DIR = Path("target") / "rewrite"
PATCH_FILE = "rewrite.patch"

HTTP_TIMEOUT_SECONDS = 30
RESOLVER_WORKERS = 8
PARSER_WORKERS = os.cpu_count() or 1

# Directory names never descended into during ingestion. Hidden directories
# (leading dot) are skipped as well.
SKIP_DIRS = {"target", "build", "node_modules", "__pycache__"}

DEFAULT_PLAIN_TEXT_MASKS = [
    "**/*.adoc",
    "**/*.bash",
    "**/*.bat",
    "**/CODEOWNERS",
    "**/*.css",
    "**/*.config",
    "**/[dD]ockerfile*",
    "**/*.[dD]ockerfile",
    "**/*.env",
    "**/.gitattributes",
    "**/.gitignore",
    "**/*.htm*",
    "**/gradlew",
    "**/.java-version",
    "**/*.jelly",
    "**/*.jsp",
    "**/*.ksh",
    "**/*.lock",
    "**/lombok.config",
    "**/[mM]akefile",
    "**/*.md",
    "**/*.mf",
    "**/META-INF/services/**",
    "**/META-INF/spring/**",
    "**/META-INF/spring.factories",
    "**/mvnw",
    "**/mvnw.cmd",
    "**/*.qute.java",
    "**/.sdkmanrc",
    "**/*.sh",
    "**/*.sql",
    "**/*.svg",
    "**/*.tsx",
    "**/*.txt",
]
