"""
Support records and generated reports.

SupportStore keeps tickets (``support/tickets.json``) and feedback
(``support/feedback.json``) as id-keyed collections. ReportStore keeps one
document per generated report:

    reports/<period>/team_<teamLeadId>.json
    reports/<period>/department.json

Saving a report for the same period and team overwrites the previous one.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from .blob.result import StoreResult
from .blob.store import NO_CACHE, BlobStore
from .collection import CollectionStore
from .locking import KeyedMutationLock

logger = logging.getLogger(__name__)

TICKETS_PATH = "support/tickets.json"
FEEDBACK_PATH = "support/feedback.json"
REPORTS_PREFIX = "reports/"

REPORT_TEAM = "team"
REPORT_DEPARTMENT = "department"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class SupportStore:
    """Support tickets, their comments, and user feedback."""

    def __init__(self, blob: BlobStore, lock: KeyedMutationLock) -> None:
        self.tickets = CollectionStore(blob, TICKETS_PATH, lock)
        self.feedback = CollectionStore(blob, FEEDBACK_PATH, lock)

    async def create_ticket(self, ticket: dict[str, Any]) -> StoreResult:
        now = _now_iso()
        stored = {
            "id": ticket.get("id") or f"ticket_{uuid.uuid4().hex[:12]}",
            "status": "open",
            "createdAt": now,
            "updatedAt": now,
            "comments": [],
            **ticket,
        }
        return await self.tickets.upsert(stored)

    async def get_tickets(self, status: str | None = None) -> list[dict[str, Any]]:
        tickets = await self.tickets.load_all()
        if status:
            return [t for t in tickets if t.get("status") == status]
        return tickets

    async def get_ticket(self, ticket_id: str) -> dict[str, Any] | None:
        return await self.tickets.get(ticket_id)

    async def update_ticket(self, ticket_id: str, updates: dict[str, Any]) -> StoreResult:
        """Merge updates into a ticket and stamp updatedAt."""

        def apply(ticket: dict[str, Any]) -> dict[str, Any]:
            ticket.update(updates)
            ticket["updatedAt"] = _now_iso()
            return ticket

        return await self.tickets.modify(ticket_id, apply, "update_ticket")

    async def add_comment(self, ticket_id: str, comment: dict[str, Any]) -> StoreResult:
        stored = {
            "id": comment.get("id") or f"comment_{uuid.uuid4().hex[:12]}",
            "timestamp": _now_iso(),
            **comment,
        }

        def append(ticket: dict[str, Any]) -> dict[str, Any]:
            ticket.setdefault("comments", []).append(stored)
            ticket["updatedAt"] = _now_iso()
            return ticket

        return await self.tickets.modify(ticket_id, append, "add_comment")

    async def create_feedback(self, feedback: dict[str, Any]) -> StoreResult:
        stored = {
            "id": feedback.get("id") or f"feedback_{uuid.uuid4().hex[:12]}",
            "createdAt": _now_iso(),
            **feedback,
        }
        return await self.feedback.upsert(stored)

    async def get_feedback(self) -> list[dict[str, Any]]:
        return await self.feedback.load_all()


class ReportStore:
    """Generated team and department reports, one document each."""

    def __init__(self, blob: BlobStore) -> None:
        self.blob = blob

    @staticmethod
    def path_for(period: str, report_type: str, team_lead_id: str | None = None) -> str:
        if report_type == REPORT_TEAM and team_lead_id:
            filename = f"team_{team_lead_id}.json"
        else:
            filename = "department.json"
        return f"{REPORTS_PREFIX}{period}/{filename}"

    async def save(self, report: dict[str, Any]) -> StoreResult:
        """Write a report; it must carry period and type."""
        period = report.get("period")
        if not period:
            return StoreResult.failure("report has no period")
        path = self.path_for(period, report.get("type", REPORT_DEPARTMENT), report.get("teamLeadId"))
        stored = {"generatedAt": _now_iso(), **report}
        return await self.blob.save(path, stored, cache_control=NO_CACHE)

    async def get(
        self, period: str, report_type: str, team_lead_id: str | None = None
    ) -> dict[str, Any] | None:
        result = await self.blob.read(self.path_for(period, report_type, team_lead_id), {})
        if not result.ok or not result.found:
            return None
        return result.value

    async def list(self, period: str | None = None) -> list[dict[str, Any]]:
        """Reports of one period (or all), newest generatedAt first."""
        prefix = f"{REPORTS_PREFIX}{period}/" if period else REPORTS_PREFIX
        listing = await self.blob.list(prefix)
        reports = []
        for info in listing.value:
            if not info.path.endswith(".json"):
                continue
            result = await self.blob.read(info.path, {})
            if result.ok and result.found:
                reports.append(result.value)
        return sorted(reports, key=lambda r: r.get("generatedAt", ""), reverse=True)

    async def delete(self, period: str, report_type: str, team_lead_id: str | None = None) -> StoreResult:
        return await self.blob.delete(self.path_for(period, report_type, team_lead_id))
