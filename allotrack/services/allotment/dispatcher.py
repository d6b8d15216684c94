"""Per-application allotment notifications."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from allotrack.core.exceptions import PersistenceError
from allotrack.core.logging import get_logger
from allotrack.domain.models import UserApplicationLink

from .ports import AllotmentStore, Notifier
from .registry import TrackedOffering


logger = get_logger("services.allotment.dispatcher")

EVENT_TYPE = "allotment_result"


@dataclass
class DispatchReport:
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent": self.sent,
            "skipped": self.skipped,
            "failed": self.failed,
            "completed": self.completed,
        }


def build_payload(offering: TrackedOffering, link: UserApplicationLink) -> dict[str, Any]:
    return {
        "user_id": link.user_id,
        "offering_id": offering.id,
        "symbol": offering.symbol,
        "name": offering.name,
        "application_id": link.id,
        "pan_number": link.pan_number,
        "application_number": link.application_number,
        "allotment_status": link.allotment_status,
        "category": link.category,
        "applied_quantity": link.quantity,
        "allotted_quantity": link.allotted_quantity,
        "applied_amount": str(link.amount),
        "allotted_amount": str(link.allotted_amount),
        "refund_amount": str(link.refund_amount),
        "final_price": str(offering.details.final_price),
    }


def notification_message(offering: TrackedOffering, link: UserApplicationLink) -> str:
    if link.allotted_quantity > 0:
        return (
            f"Congratulations! You have been allotted {link.allotted_quantity} lots "
            f"in {offering.name or offering.symbol}"
        )
    return (
        f"Unfortunately, you were not allotted shares in {offering.name or offering.symbol}. "
        "Refund will be processed shortly."
    )


class NotificationDispatcher:
    """Emits one event per resolved application of a completed offering.

    A link counts as notified once its event is published *and* recorded
    (log entry plus persisted ``notified_at``). An event whose recording
    failed is kept on the offering and only the recording is retried, so the
    event is not published twice. The offering is marked notified only when
    every resolved link is recorded.
    """

    def __init__(
        self,
        store: AllotmentStore,
        notifier: Notifier,
        clock: Callable[[], datetime],
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock

    async def _record(
        self, offering: TrackedOffering, link: UserApplicationLink, payload: dict[str, Any]
    ) -> datetime:
        now = self.clock()
        try:
            await self.store.create_notification_log(
                {
                    "user_id": link.user_id,
                    "offering_id": offering.id,
                    "application_id": link.id,
                    "type": EVENT_TYPE,
                    "title": f"{offering.symbol} Allotment Result",
                    "message": notification_message(offering, link),
                    "data": payload,
                    "created_at": now,
                }
            )
            await self.store.update_application(link.id, {"notified_at": now})
        except Exception as e:
            raise PersistenceError(
                message=f"Failed to record notification: {e}",
                details={"application_id": link.id},
            ) from e
        return now

    async def dispatch(self, offering: TrackedOffering) -> DispatchReport:
        """Notify users about a completed offering."""
        report = DispatchReport()
        state = offering.notifications
        if not offering.is_completed or state.notified:
            report.completed = state.notified
            return report

        for link in list(offering.applications.values()):
            if not link.is_resolved or link.notified_at is not None:
                report.skipped += 1
                continue

            payload = state.unrecorded.get(link.id)
            if payload is None:
                payload = build_payload(offering, link)
                try:
                    await self.notifier.publish(EVENT_TYPE, payload)
                except Exception as e:
                    report.failed += 1
                    logger.warning(f"Notification for application {link.id} failed: {e}")
                    continue
                state.unrecorded[link.id] = payload
                state.users_notified += 1
                report.sent += 1

            try:
                link.notified_at = await self._record(offering, link, payload)
            except PersistenceError as e:
                report.failed += 1
                logger.error(e.message, extra=e.details)
                continue
            del state.unrecorded[link.id]

        if report.failed == 0:
            state.notified = True
            state.notified_at = self.clock()
            report.completed = True

        logger.info(
            f"Sent {report.sent} allotment notifications for {offering.symbol}",
            extra=report.to_dict(),
        )
        return report
