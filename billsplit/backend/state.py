"""Session builders, derived totals and the JSON snapshot format."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from .models import (
    Assignment,
    Item,
    Participant,
    ParticipantTotal,
    Session,
    SuggestedFix,
    VerificationIssue,
)


QUANTITY_EPSILON = 0.001
SNAPSHOT_TYPE = "session.snapshot"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def build_initial_session(session_id: str, image_url: str | None = None) -> Session:
    """Return an empty session with version 1."""
    now = utc_now()
    return Session(id=session_id, created_at=now, updated_at=now, version=1, image_url=image_url)


def find_item(session: Session, item_id: str) -> Item | None:
    for item in session.items:
        if item.id == item_id:
            return item
    return None


def find_participant(session: Session, participant_id: str) -> Participant | None:
    for participant in session.participants:
        if participant.id == participant_id:
            return participant
    return None


def assigned_quantity(item: Item, participant_id: str) -> float:
    for assignment in item.assignments:
        if assignment.participant_id == participant_id:
            return assignment.quantity
    return 0.0


def claimed_quantity(item: Item) -> float:
    return sum(assignment.quantity for assignment in item.assignments)


def available_quantity(item: Item) -> float:
    return item.total_quantity - claimed_quantity(item)


def participant_total(session: Session, participant_id: str) -> float:
    return sum(item.unit_price * assigned_quantity(item, participant_id) for item in session.items)


def participant_totals(session: Session) -> list[ParticipantTotal]:
    return [
        ParticipantTotal(
            participant_id=participant.id,
            name=participant.name,
            total=participant_total(session, participant.id),
        )
        for participant in session.participants
    ]


def items_total(session: Session) -> float:
    return sum(item.unit_price * item.total_quantity for item in session.items)


def is_fully_assigned(session: Session) -> bool:
    return bool(session.items) and all(available_quantity(item) <= QUANTITY_EPSILON for item in session.items)


def _money(value: float) -> float:
    return round(value, 2)


def issue_to_dict(issue: VerificationIssue) -> dict[str, Any]:
    payload: dict[str, Any] = {"kind": issue.kind, "message": issue.message, "suggestedFix": None}
    if issue.suggested_fix is not None:
        payload["suggestedFix"] = {
            "price": issue.suggested_fix.price,
            "quantity": issue.suggested_fix.quantity,
        }
    return payload


def issue_from_dict(payload: dict[str, Any]) -> VerificationIssue:
    fix_payload = payload.get("suggestedFix")
    suggested_fix = None
    if fix_payload is not None:
        suggested_fix = SuggestedFix(price=fix_payload.get("price"), quantity=fix_payload.get("quantity"))
    return VerificationIssue(kind=payload["kind"], message=payload["message"], suggested_fix=suggested_fix)


def session_to_dict(session: Session) -> dict[str, Any]:
    return {
        "id": session.id,
        "version": session.version,
        "createdAt": session.created_at.isoformat(),
        "updatedAt": session.updated_at.isoformat(),
        "imageUrl": session.image_url,
        "items": [
            {
                "id": item.id,
                "name": item.name,
                "unitPrice": item.unit_price,
                "totalQuantity": item.total_quantity,
                "availableQuantity": available_quantity(item),
                "assignments": [
                    {"participantId": assignment.participant_id, "quantity": assignment.quantity}
                    for assignment in item.assignments
                ],
                "verificationIssue": (
                    issue_to_dict(item.verification_issue) if item.verification_issue is not None else None
                ),
            }
            for item in session.items
        ],
        "participants": [
            {"id": participant.id, "name": participant.name, "joinedAt": participant.joined_at.isoformat()}
            for participant in session.participants
        ],
    }


def session_from_dict(payload: dict[str, Any]) -> Session:
    """Rebuild a session from `session_to_dict` output; derived keys are ignored."""
    items = tuple(
        Item(
            id=raw["id"],
            name=raw["name"],
            unit_price=float(raw["unitPrice"]),
            total_quantity=float(raw["totalQuantity"]),
            assignments=tuple(
                Assignment(participant_id=entry["participantId"], quantity=float(entry["quantity"]))
                for entry in raw.get("assignments", [])
            ),
            verification_issue=(
                issue_from_dict(raw["verificationIssue"]) if raw.get("verificationIssue") else None
            ),
        )
        for raw in payload.get("items", [])
    )
    participants = tuple(
        Participant(id=raw["id"], name=raw["name"], joined_at=datetime.fromisoformat(raw["joinedAt"]))
        for raw in payload.get("participants", [])
    )
    return Session(
        id=payload["id"],
        version=int(payload["version"]),
        created_at=datetime.fromisoformat(payload["createdAt"]),
        updated_at=datetime.fromisoformat(payload["updatedAt"]),
        image_url=payload.get("imageUrl"),
        items=items,
        participants=participants,
    )


def build_snapshot(session: Session) -> dict[str, Any]:
    """Full session plus derived totals, as returned to callers and subscribers."""
    totals = participant_totals(session)
    bill_total = items_total(session)
    assigned_total = sum(entry.total for entry in totals)
    return {
        "type": SNAPSHOT_TYPE,
        "session": session_to_dict(session),
        "participantTotals": [
            {"participantId": entry.participant_id, "name": entry.name, "total": _money(entry.total)}
            for entry in totals
        ],
        "itemsTotal": _money(bill_total),
        "assignedTotal": _money(assigned_total),
        "unassignedTotal": _money(max(bill_total - assigned_total, 0.0)),
        "fullyAssigned": is_fully_assigned(session),
    }
