from __future__ import annotations

import difflib
import logging

from specpilot.errors import PatchMismatchError
from specpilot.ralph.base import Applier, ApplyResult, CorrectionPlan
from specpilot.state.spec_store import SpecFile, SpecStore

logger = logging.getLogger(__name__)


def unified_diff(path: str, before: str, after: str) -> str:
    return "".join(
        difflib.unified_diff(
            before.splitlines(keepends=True),
            after.splitlines(keepends=True),
            fromfile=f"a/{path}",
            tofile=f"b/{path}",
        )
    )


class CorrectionApplier(Applier):
    def __init__(self, store: SpecStore) -> None:
        self.store = store

    def apply(self, plan: CorrectionPlan) -> ApplyResult:
        """Replace the first occurrence of ``plan.search``; the backup is taken inside the write."""
        self.store.check_writable(plan.target_file)
        content = self.store.read_text(plan.target_file)
        if not plan.search or plan.search not in content:
            raise PatchMismatchError(plan.target_file, plan.search)

        updated = content.replace(plan.search, plan.replace, 1)
        relative = self.store.relative(plan.target_file)
        spec_file = self.store.write(plan.target_file, updated, label=f"correction-{plan.source}")
        logger.info(
            "applied %s correction to %s (backup %s)", plan.source, relative, spec_file.backup_path
        )
        return ApplyResult(
            backup_id=spec_file.backup_path,
            spec_file=spec_file,
            diff=unified_diff(relative, content, updated),
        )

    def rollback(self, backup_id: str) -> SpecFile:
        spec_file = self.store.restore(backup_id)
        logger.info("rolled back %s from %s", spec_file.path, backup_id)
        return spec_file
