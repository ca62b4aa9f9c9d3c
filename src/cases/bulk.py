"""Bulk case import/export.

Import is row-by-row: each record is validated and created on its own, so
one bad row never aborts the batch. A batch interrupted midway leaves the
rows already created in place; no single case is ever half-written.

File formats (CSV, Excel) are parsed by the caller; this module only
deals in plain dict rows.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping  # noqa: TC003 -- used at runtime in signatures
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from src.cases.records import case_to_export_row
from src.cases.service import CaseDraft
from src.shared.errors import CaseBookingError

if TYPE_CHECKING:
    from src.cases.service import CaseFilter, CaseService
    from src.shared.types import Actor, Case

logger = logging.getLogger(__name__)


@dataclass
class ImportSummary:
    """Outcome of one import batch; failed holds (row index, error message)."""

    created: list[Case] = field(default_factory=list)
    failed: list[tuple[int, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def total(self) -> int:
        return len(self.created) + len(self.failed)


async def import_cases(
    service: CaseService,
    records: Iterable[Mapping[str, Any]],
    actor: Actor,
) -> ImportSummary:
    summary = ImportSummary()
    for index, record in enumerate(records):
        try:
            draft = CaseDraft.from_mapping(record)
            summary.created.append(await service.create(draft, actor))
        except CaseBookingError as exc:
            logger.info("Import row %d rejected: %s", index, exc.code)
            summary.failed.append((index, str(exc)))
    logger.info(
        "Import by %s: %d created, %d failed",
        actor.user_id,
        len(summary.created),
        len(summary.failed),
    )
    return summary


async def export_cases(
    service: CaseService,
    actor: Actor,
    filters: CaseFilter | None = None,
) -> list[dict[str, Any]]:
    """Plain dict rows for every case in the actor's scope."""
    cases = await service.list_cases(actor, filters)
    return [case_to_export_row(c) for c in cases]
