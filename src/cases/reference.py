"""Case reference number allocation.

Format: TMC-{COUNTRY}-{YEAR}-{NNN}, e.g. TMC-SINGAPORE-2026-007, where COUNTRY is
the upper-cased country name with non-alphanumerics removed (see country_code).
One counter record per (country, year) in the case_counters collection,
advanced by compare-and-set; numbers are unique but may have gaps if an
allocated number's case is never written.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from src.ports.store_port import CASE_COUNTERS
from src.shared.errors import StaleStateError

if TYPE_CHECKING:
    from src.ports.store_port import StorePort

logger = logging.getLogger(__name__)

_PREFIX = "TMC"
_MAX_ATTEMPTS = 20
_COUNTRY_CODE = re.compile(r"[^A-Z0-9]")


def country_code(country: str) -> str:
    """Upper-case alphanumeric code used in reference numbers ("Singapore" -> "SINGAPORE")."""
    return _COUNTRY_CODE.sub("", country.upper()) or "XX"


def format_reference(country: str, year: int, number: int) -> str:
    return f"{_PREFIX}-{country_code(country)}-{year}-{number:03d}"


class ReferenceNumberGenerator:
    """Allocates unique, monotonically increasing reference numbers."""

    def __init__(self, store: StorePort, *, max_attempts: int = _MAX_ATTEMPTS) -> None:
        self._store = store
        self._max_attempts = max_attempts

    async def next_reference(self, country: str, year: int) -> str:
        """Allocate the next number for (country, year).

        Raises:
            StaleStateError: counter stayed contended for max_attempts rounds.
            StoreUnavailableError: Store unreachable.
        """
        counter_id = f"{country_code(country)}:{year}"
        for _ in range(self._max_attempts):
            current = await self._store.get_by_id(CASE_COUNTERS, counter_id)
            version = current["version"] if current else 0
            value = int(current["value"]) if current else 0
            try:
                await self._store.put(
                    CASE_COUNTERS,
                    counter_id,
                    {"value": value + 1},
                    expected_version=version,
                )
            except StaleStateError:
                logger.debug("Reference counter %s contended; retrying", counter_id)
                continue
            return format_reference(country, year, value + 1)
        raise StaleStateError(CASE_COUNTERS, counter_id)
