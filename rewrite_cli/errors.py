"""Error taxonomy shared by every pipeline stage.

Fatal errors abort the run with a non-zero exit. Non-fatal errors are
logged by the stage that raised them and the stage continues with a
degraded result.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional


class RewriteError(Exception):
    fatal: bool = True

    def __init__(self, message: str, code: str = "REWRITE_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class DescriptorInvalid(RewriteError):
    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, "DESCRIPTOR_INVALID", {"path": path} if path else None)
        self.path = path


class ArtifactResolutionError(RewriteError):
    fatal = False

    def __init__(self, message: str, code: str, coordinate: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code, {"coordinate": coordinate, **(details or {})})
        self.coordinate = coordinate


class ArtifactNotFound(ArtifactResolutionError):
    def __init__(self, coordinate: str, tried: Iterable[str] = ()):
        tried = list(tried)
        message = f"Artifact {coordinate} not found in the local cache"
        if tried:
            message += " or in " + ", ".join(tried)
        super().__init__(message, "ARTIFACT_NOT_FOUND", coordinate, {"tried": tried})
        self.tried = tried


class ArtifactCorrupt(ArtifactResolutionError):
    def __init__(self, coordinate: str, reason: str):
        super().__init__(
            f"Artifact {coordinate} is corrupt: {reason}",
            "ARTIFACT_CORRUPT",
            coordinate,
            {"reason": reason},
        )
        self.reason = reason


class ParseFailure(RewriteError):
    fatal = False

    def __init__(self, source_path: str, reason: str):
        super().__init__(f"Unable to parse {source_path}: {reason}", "PARSE_FAILURE", {"path": source_path})
        self.source_path = source_path


class RuleSelectionFailure(RewriteError):
    def __init__(self, rule_id: str, available: Iterable[str] = (), reason: Optional[str] = None):
        available = sorted(available)
        super().__init__(
            reason or f"No rule named '{rule_id}' is visible in any loaded registry",
            "RULE_SELECTION_FAILURE",
            {"rule_id": rule_id, "available": available},
        )
        self.rule_id = rule_id
        self.available = available


class RuleFieldConfigurationFailure(RewriteError):
    def __init__(self, rule_id: str, message: str, unknown: Iterable[str] = ()):
        unknown = list(unknown)
        super().__init__(message, "RULE_FIELD_CONFIGURATION_FAILURE", {"rule_id": rule_id, "unknown": unknown})
        self.rule_id = rule_id
        self.unknown = unknown


class WriteFailure(RewriteError):
    fatal = False

    def __init__(self, path: str, reason: str):
        super().__init__(f"Unable to write {path}: {reason}", "WRITE_FAILURE", {"path": path})
        self.path = path
        self.reason = reason


class ApplyFailures(RewriteError):
    """Pooled write failures surfaced at the end of an apply pass."""

    def __init__(self, failures: List[WriteFailure]):
        lines = "\n".join(f"  - {f.message}" for f in failures)
        super().__init__(
            f"{len(failures)} file(s) could not be written:\n{lines}",
            "APPLY_FAILURES",
            {"paths": [f.path for f in failures]},
        )
        self.failures = failures


class PatchWriteFailure(RewriteError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Unable to write patch file {path}: {reason}", "PATCH_WRITE_FAILURE", {"path": path})
        self.path = path


class DeclarativeRulesInvalid(RewriteError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Invalid rule file {path}: {reason}", "DECLARATIVE_RULES_INVALID", {"path": path})
        self.path = path
