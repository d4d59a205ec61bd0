"""In-process rule engine: runs a rule over source units and reports edits."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .models import EditResult, SourceUnit
from .rules import Rule, leaf_rules

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """State shared by the rules of one run."""
    project_root: Optional[Path] = None
    warnings: List[str] = field(default_factory=list)
    attributes: Dict[str, object] = field(default_factory=dict)

    def warn(self, message: str) -> None:
        logger.warning("%s", message)
        self.warnings.append(message)


class RuleEngine:
    def run(
        self,
        rule: Rule,
        units: Sequence[SourceUnit],
        ctx: Optional[ExecutionContext] = None,
    ) -> List[EditResult]:
        """Apply *rule* to every unit.

        Composite rules run their leaves in order on each unit. A rule that
        raises on one unit is reported in ``ctx.warnings`` and skipped for
        that unit only. Results follow input order; created files come last.
        """
        ctx = ctx or ExecutionContext()
        leaves = leaf_rules(rule)
        results: List[EditResult] = []

        for unit in units:
            current: Optional[SourceUnit] = unit
            contributors: List[Rule] = []
            for leaf in leaves:
                if current is None:
                    break
                try:
                    updated = leaf.visit(current, ctx)
                except Exception as exc:
                    ctx.warn(f"{leaf.name} failed on {unit.source_path}: {exc}")
                    continue
                if updated is not current and updated != current:
                    contributors.append(leaf)
                current = updated
            if contributors:
                results.append(_result(unit, current, contributors))

        known = {u.source_path for u in units}
        for leaf in leaves:
            try:
                created = leaf.generate(units, ctx)
            except Exception as exc:
                ctx.warn(f"{leaf.name} failed to generate files: {exc}")
                continue
            for new_unit in created:
                if new_unit.source_path in known:
                    ctx.warn(f"{leaf.name} tried to create {new_unit.source_path}, which already exists")
                    continue
                known.add(new_unit.source_path)
                results.append(_result(None, new_unit, [leaf]))

        logger.debug("%s produced %d result(s)", rule.name, len(results))
        return results


def _result(before: Optional[SourceUnit], after: Optional[SourceUnit], contributors: List[Rule]) -> EditResult:
    ids: List[str] = []
    saved = timedelta(0)
    for leaf in contributors:
        if leaf.name not in ids:
            ids.append(leaf.name)
            saved += leaf.time_saved_per_change
    return EditResult(before, after, tuple(ids), saved)
