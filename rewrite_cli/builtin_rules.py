"""Rules shipped with the tool. They work on any textual unit."""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import List, Optional, Sequence

from .engine import ExecutionContext
from .ingest import glob_match
from .models import FileAttributes, SourceUnit
from .parser import PLAIN_TEXT_KIND
from .registry import RuleRegistry
from .rules import Rule, option

_TRAILING = re.compile(r"[ \t]+(?=\r?\n|\Z)")


def _selected(unit: SourceUnit, file_pattern: Optional[str]) -> bool:
    return not file_pattern or glob_match(unit.source_path, file_pattern)


@dataclass
class TrailingWhitespace(Rule):
    rule_id = "rewrite.text.TrailingWhitespace"
    display_name = "Remove trailing whitespace"
    description = "Strip spaces and tabs at the end of every line."
    time_saved_per_change = timedelta(minutes=1)

    file_pattern: Optional[str] = option("string", description="Only files matching this glob")

    def visit(self, unit: SourceUnit, ctx: ExecutionContext) -> Optional[SourceUnit]:
        if not unit.is_text or not _selected(unit, self.file_pattern):
            return unit
        return unit.with_text(_TRAILING.sub("", unit.print_all()))


@dataclass
class FindAndReplace(Rule):
    rule_id = "rewrite.text.FindAndReplace"
    display_name = "Find and replace"
    description = "Replace literal text or regular expression matches."

    find: Optional[str] = option("string", required=True, description="Text or pattern to find")
    replace: str = option("string", default="", description="Replacement text")
    regex: bool = option("boolean", default=False, description="Treat 'find' as a regular expression")
    case_sensitive: bool = option("boolean", default=True)
    file_pattern: Optional[str] = option("string", description="Only files matching this glob")

    def validate(self) -> List[str]:
        messages = super().validate()
        if self.regex and self.find:
            try:
                re.compile(self.find)
            except re.error as exc:
                messages.append(f"{self.name}: invalid regular expression '{self.find}': {exc}")
        return messages

    def visit(self, unit: SourceUnit, ctx: ExecutionContext) -> Optional[SourceUnit]:
        if not self.find or not unit.is_text or not _selected(unit, self.file_pattern):
            return unit
        flags = 0 if self.case_sensitive else re.IGNORECASE
        pattern = self.find if self.regex else re.escape(self.find)
        replacement = self.replace if self.regex else self.replace.replace("\\", "\\\\")
        return unit.with_text(re.sub(pattern, replacement, unit.print_all(), flags=flags))


@dataclass
class EndOfFileNewline(Rule):
    rule_id = "rewrite.text.EndOfFileNewline"
    display_name = "End files with a newline"
    description = "Add a final line break to non-empty text files that lack one."
    time_saved_per_change = timedelta(minutes=1)

    file_pattern: Optional[str] = option("string", description="Only files matching this glob")

    def visit(self, unit: SourceUnit, ctx: ExecutionContext) -> Optional[SourceUnit]:
        if not unit.is_text or not _selected(unit, self.file_pattern):
            return unit
        text = unit.print_all()
        if not text or text.endswith("\n"):
            return unit
        return unit.with_text(text + ("\r\n" if "\r\n" in text else "\n"))


@dataclass
class CreateTextFile(Rule):
    rule_id = "rewrite.file.CreateTextFile"
    display_name = "Create text file"
    description = "Create a file with the given content."

    path: Optional[str] = option("string", required=True, description="Relative path of the new file")
    content: str = option("string", default="")
    overwrite: bool = option("boolean", default=False, description="Replace the content of an existing file")

    def visit(self, unit: SourceUnit, ctx: ExecutionContext) -> Optional[SourceUnit]:
        if self.overwrite and unit.source_path == self.path and unit.is_text:
            return unit.with_text(self.content)
        return unit

    def generate(self, units: Sequence[SourceUnit], ctx: ExecutionContext) -> List[SourceUnit]:
        if not self.path or any(u.source_path == self.path for u in units):
            return []
        if ctx.project_root is not None and (ctx.project_root / self.path).exists() and not self.overwrite:
            return []
        return [SourceUnit(
            source_path=self.path,
            kind=PLAIN_TEXT_KIND,
            text=self.content,
            file_attributes=FileAttributes(),
        )]


@dataclass
class DeleteFile(Rule):
    rule_id = "rewrite.file.DeleteFile"
    display_name = "Delete files"
    description = "Delete every file matching a glob."

    file_pattern: Optional[str] = option("string", required=True)

    def visit(self, unit: SourceUnit, ctx: ExecutionContext) -> Optional[SourceUnit]:
        if self.file_pattern and glob_match(unit.source_path, self.file_pattern):
            return None
        return unit


@dataclass
class MoveFile(Rule):
    rule_id = "rewrite.file.MoveFile"
    display_name = "Move file"
    description = "Move a file to a new relative path."

    from_path: Optional[str] = option("string", required=True)
    to_path: Optional[str] = option("string", required=True)

    def visit(self, unit: SourceUnit, ctx: ExecutionContext) -> Optional[SourceUnit]:
        if self.from_path and self.to_path and unit.source_path == self.from_path:
            return unit.with_path(self.to_path)
        return unit


@dataclass
class SetExecutable(Rule):
    rule_id = "rewrite.file.SetExecutable"
    display_name = "Set executable bit"
    description = "Mark matching files as executable, or clear the bit."
    time_saved_per_change = timedelta(minutes=1)

    file_pattern: Optional[str] = option("string", required=True)
    executable: bool = option("boolean", default=True)

    def visit(self, unit: SourceUnit, ctx: ExecutionContext) -> Optional[SourceUnit]:
        if not self.file_pattern or not glob_match(unit.source_path, self.file_pattern):
            return unit
        attributes = unit.file_attributes or FileAttributes()
        if attributes.executable == self.executable:
            return unit
        return unit.with_attributes(replace(attributes, executable=self.executable))


BUILTIN_RULES = (
    TrailingWhitespace,
    FindAndReplace,
    EndOfFileNewline,
    CreateTextFile,
    DeleteFile,
    MoveFile,
    SetExecutable,
)


def builtin_registry() -> RuleRegistry:
    return RuleRegistry.from_classes("builtin", BUILTIN_RULES)
