"""Patch emission (dry run) and in-place application of classified results."""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import requests

from . import config
from .errors import PatchWriteFailure, WriteFailure
from .fileio import atomic_write
from .models import EditResult, PayloadKind, SourceUnit, encode_text
from .results import ResultsClassification

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    files_written: int = 0
    files_deleted: int = 0
    skipped: List[str] = field(default_factory=list)
    failures: List[WriteFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures


def render_patch(classification: ResultsClassification) -> str:
    """Concatenated diffs: created, deleted, moved, then modified."""
    return "".join(result.diff() for result in classification.ordered)


def preview(classification: ResultsClassification) -> str:
    """Human readable list of the changes, one line per result."""
    lines: List[str] = []
    for label, results in (
        ("NEW", classification.created),
        ("DELETE", classification.deleted),
        ("MOVE", classification.moved),
        ("MODIFY", classification.modified),
    ):
        for result in results:
            if label == "MOVE":
                target = f"{result.before.source_path} -> {result.after.source_path}"  # type: ignore[union-attr]
            else:
                target = result.path
            lines.append(f"[{label}] {target}  ({', '.join(result.rule_ids)})")
    return "\n".join(lines)


class PatchEmitter:
    """Writes the unified diff of a run to ``target/rewrite/rewrite.patch``."""

    def __init__(self, project_root: Path, patch_path: Optional[Path] = None) -> None:
        self.project_root = Path(project_root)
        self.patch_path = patch_path or self.project_root / config.PATCH_DIR / config.PATCH_FILE

    def emit_patch(self, classification: ResultsClassification) -> Optional[Path]:
        """Write the patch atomically; return its path, or None when there is nothing to write.

        Raises:
            PatchWriteFailure: The patch directory or file cannot be written.
        """
        if classification.is_empty:
            return None
        content = render_patch(classification)
        try:
            atomic_write(self.patch_path, content, encoding="utf-8")
        except OSError as exc:
            raise PatchWriteFailure(str(self.patch_path), str(exc)) from exc
        logger.info("Wrote patch with %d change(s) to %s", len(classification), self.patch_path)
        return self.patch_path


class ChangeApplier:
    """Writes the after-state of every result back into the project tree.

    A failure on one file is recorded and the pass moves on; callers decide
    what to do with :attr:`ApplyResult.failures`.
    """

    def __init__(
        self,
        project_root: Path,
        session: Optional[requests.Session] = None,
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self.project_root = Path(project_root)
        self.session = session or requests.Session()
        self.timeout = timeout

    def apply_changes(self, classification: ResultsClassification) -> ApplyResult:
        outcome = ApplyResult()
        for result in classification.created:
            self._guard(outcome, result, self._write_after)
        for result in classification.deleted:
            self._guard(outcome, result, self._delete_before)
        for result in classification.moved:
            self._guard(outcome, result, self._move)
        for result in classification.modified:
            self._guard(outcome, result, self._write_after)
        if outcome.failures:
            logger.error("%d file(s) could not be written", len(outcome.failures))
        return outcome

    def _guard(self, outcome: ApplyResult, result: EditResult, action) -> None:
        try:
            action(result, outcome)
        except (OSError, requests.RequestException, UnicodeEncodeError, ValueError) as exc:
            failure = WriteFailure(result.path, str(exc))
            logger.warning("%s", failure.message)
            outcome.failures.append(failure)

    def _target(self, unit: SourceUnit) -> Path:
        return self.project_root / unit.source_path

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _write_after(self, result: EditResult, outcome: ApplyResult) -> None:
        after = result.after
        assert after is not None
        target = self._target(after)
        if after.payload is PayloadKind.OPAQUE:
            logger.debug("Not writing opaque unit %s", after.source_path)
            outcome.skipped.append(after.source_path)
            if target.exists():
                self._reconcile_permissions(target, after)
            return
        self._write_unit(target, after)
        self._reconcile_permissions(target, after)
        outcome.files_written += 1

    def _delete_before(self, result: EditResult, outcome: ApplyResult) -> None:
        before = result.before
        assert before is not None
        target = self._target(before)
        if target.exists():
            target.unlink()
            outcome.files_deleted += 1

    def _move(self, result: EditResult, outcome: ApplyResult) -> None:
        before, after = result.before, result.after
        assert before is not None and after is not None
        source, target = self._target(before), self._target(after)
        if after.payload is PayloadKind.OPAQUE:
            # Content was never decoded; move the bytes as they are.
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(source, target)
            self._reconcile_permissions(target, after)
            outcome.files_written += 1
            return
        self._write_unit(target, after)
        self._reconcile_permissions(target, after)
        outcome.files_written += 1
        if source.exists() and source.resolve() != target.resolve():
            source.unlink()

    def _write_unit(self, target: Path, unit: SourceUnit) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        if unit.payload is PayloadKind.BINARY:
            with open(target, "wb") as f:
                f.write(unit.data or b"")
        elif unit.payload is PayloadKind.REMOTE:
            if not unit.url:
                raise ValueError(f"{unit.source_path} has no remote url")
            with self.session.get(unit.url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with open(target, "wb") as f:
                    for chunk in response.iter_content(chunk_size=65536):
                        if chunk:
                            f.write(chunk)
        else:
            data = encode_text(unit.print_all(), unit.charset)
            with open(target, "wb") as f:
                f.write(data)

    @staticmethod
    def _reconcile_permissions(target: Path, unit: SourceUnit) -> None:
        if unit.file_attributes is None:
            return
        mode = stat.S_IMODE(target.stat().st_mode)
        wanted = unit.file_attributes.apply_to_mode(mode)
        if wanted != mode:
            os.chmod(target, wanted)
