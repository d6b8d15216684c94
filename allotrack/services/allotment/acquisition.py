"""Multi-source allotment result acquisition.

Ask sources whether results are out, fetch from all of them concurrently, then
validate, dedupe, enrich and persist the merged record set.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Mapping, Sequence

from pydantic import ValidationError

from allotrack.core.exceptions import PersistenceError
from allotrack.core.logging import get_logger
from allotrack.domain.models import AllotmentResultRecord, derive_result_status

from .ports import AllotmentStore, ResultSource
from .registry import TrackedOffering
from .validation import validate_and_dedupe


logger = get_logger("services.allotment.acquisition")


@dataclass
class AcquisitionResult:
    """What one acquisition pass produced for an offering."""

    available: bool
    records: list[AllotmentResultRecord] = field(default_factory=list)
    received: int = 0
    rejected: int = 0
    duplicates: int = 0
    links_updated: int = 0
    source_errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "records": len(self.records),
            "received": self.received,
            "rejected": self.rejected,
            "duplicates": self.duplicates,
            "links_updated": self.links_updated,
            "source_errors": dict(self.source_errors),
        }


def enrich_record(
    raw: Mapping[str, Any],
    offering: TrackedOffering,
    fetched_at: datetime,
) -> AllotmentResultRecord:
    """Build a persisted record from a validated raw record.

    Amounts follow from the offering's lot size and final price; a missing
    status is derived from the quantities.
    """
    applied = int(float(raw.get("applied_quantity") or 0))
    allotted = int(float(raw.get("allotted_quantity") or 0))
    status = raw.get("allotment_status") or derive_result_status(applied, allotted)
    return AllotmentResultRecord(
        offering_id=offering.id,
        pan_number=raw["pan_number"],
        application_number=str(raw["application_number"]),
        category=str(raw.get("category") or "UNKNOWN").upper(),
        applied_quantity=applied,
        allotted_quantity=allotted,
        allotment_status=status,
        lot_size=offering.details.lot_size,
        final_price=Decimal(offering.details.final_price),
        source=raw.get("source"),
        fetched_at=fetched_at,
        processed_at=fetched_at,
    )


class ResultAcquisitionPipeline:
    """Fetches, cleans and persists allotment results for tracked offerings."""

    def __init__(
        self,
        sources: Sequence[ResultSource],
        store: AllotmentStore,
        clock: Callable[[], datetime],
        lookback_days: int = 7,
    ):
        self.sources = list(sources)
        self.store = store
        self.clock = clock
        self.lookback_days = lookback_days

    async def results_available(self, offering: TrackedOffering) -> bool:
        """Ask sources in order; the first positive answer wins."""
        for source in self.sources:
            try:
                if await source.has_results(offering.symbol, offering.details.registrar):
                    logger.debug(f"{source.name} reports results for {offering.symbol}")
                    return True
            except Exception as e:
                logger.warning(
                    f"Availability check failed on {source.name} for {offering.symbol}: {e}",
                    extra={"source": source.name},
                )
        return False

    async def fetch(
        self, offering: TrackedOffering
    ) -> tuple[list[dict[str, Any]], dict[str, str]]:
        """Fetch from every source concurrently, tagging records with their source."""
        since = self.clock() - timedelta(days=self.lookback_days)
        responses = await asyncio.gather(
            *(
                source.fetch_results(offering.symbol, offering.details.registrar, since)
                for source in self.sources
            ),
            return_exceptions=True,
        )

        records: list[dict[str, Any]] = []
        errors: dict[str, str] = {}
        for source, response in zip(self.sources, responses):
            if isinstance(response, asyncio.CancelledError):
                raise response
            if isinstance(response, BaseException):
                errors[source.name] = str(response) or type(response).__name__
                logger.warning(
                    f"Fetch failed on {source.name} for {offering.symbol}: {response}",
                    extra={"source": source.name},
                )
                continue
            if not response:
                continue
            records.extend({**record, "source": record.get("source") or source.name} for record in response)
        return records, errors

    async def persist(self, records: Sequence[AllotmentResultRecord]) -> None:
        for record in records:
            try:
                await self.store.upsert_allotment_result(record)
            except Exception as e:
                raise PersistenceError(
                    message=f"Failed to store allotment result: {e}",
                    details={
                        "offering_id": record.offering_id,
                        "application_number": record.application_number,
                    },
                ) from e

    async def update_links(
        self,
        offering: TrackedOffering,
        records: Sequence[AllotmentResultRecord],
        at: datetime,
        only_pending: bool = False,
    ) -> int:
        """Resolve matching user applications in memory and in the store."""
        updated = 0
        for record in records:
            link = offering.link_for(record)
            if link is None or (only_pending and link.is_resolved):
                continue
            changes = link.apply_result(record, at)
            try:
                await self.store.update_application(link.id, changes)
            except Exception as e:
                raise PersistenceError(
                    message=f"Failed to update user application: {e}",
                    details={"application_id": link.id},
                ) from e
            updated += 1
        return updated

    async def acquire(self, offering: TrackedOffering) -> AcquisitionResult:
        """Run one acquisition pass.

        Returns ``available=False`` when no source has results yet, or when
        sources answered but nothing survived validation.

        Raises:
            PersistenceError: If the store rejects a write
        """
        if not await self.results_available(offering):
            return AcquisitionResult(available=False)

        raw, errors = await self.fetch(offering)
        report = validate_and_dedupe(raw)
        now = self.clock()

        records: list[AllotmentResultRecord] = []
        rejected = report.rejected
        for item in report.records:
            try:
                records.append(enrich_record(item, offering, now))
            except (ValidationError, ValueError, KeyError) as e:
                rejected += 1
                logger.warning(f"Dropping allotment record for {offering.symbol}: {e}")

        if rejected:
            logger.info(
                f"Rejected {rejected} of {report.received} records for {offering.symbol}",
                extra={"rejected": rejected, "received": report.received},
            )

        result = AcquisitionResult(
            available=bool(records),
            records=records,
            received=report.received,
            rejected=rejected,
            duplicates=report.duplicates,
            source_errors=errors,
        )
        if not records:
            return result

        await self.persist(records)
        offering.store_results(records)
        result.links_updated = await self.update_links(offering, records, now)
        return result
