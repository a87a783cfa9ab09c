"""Pure session transitions: quantity allocation, item maintenance and joins.

Every function takes a session and returns a new one; nothing here touches
the store or the notifier. Validation happens before any change is built, so
a raised error never leaves a partially updated session behind.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import replace

from .errors import ItemNotFound, ParticipantNotFound, ValidationError
from .models import ISSUE_KINDS, Assignment, Item, NewItem, Participant, Session, VerificationIssue
from .state import QUANTITY_EPSILON, assigned_quantity, available_quantity, claimed_quantity, find_item, utc_now


MAX_NAME_LENGTH = 200


def assign_quantity(session: Session, item_id: str, participant_id: str, requested_quantity: float) -> Session:
    """Set the participant's claim on an item, clamped to what others left over.

    The caller's previous claim is replaced, so repeating the same request
    yields the same result. Claims of other participants are never reduced.
    """
    if not math.isfinite(requested_quantity):
        raise ValidationError("Quantity must be a finite number", details={"quantity": requested_quantity})
    item = _require_item(session, item_id)
    _require_participant(session, participant_id)

    others_quantity = sum(
        assignment.quantity for assignment in item.assignments if assignment.participant_id != participant_id
    )
    available = max(item.total_quantity - others_quantity, 0.0)

    quantity = requested_quantity
    if quantity < 0:
        quantity = 0.0
    if quantity > available + QUANTITY_EPSILON:
        quantity = available

    if quantity <= 0:
        assignments = tuple(a for a in item.assignments if a.participant_id != participant_id)
    else:
        assignments = _upsert_assignment(item.assignments, Assignment(participant_id=participant_id, quantity=quantity))

    return _replace_item(session, replace(item, assignments=assignments))


def _upsert_assignment(assignments: tuple[Assignment, ...], new_assignment: Assignment) -> tuple[Assignment, ...]:
    updated: list[Assignment] = []
    replaced = False
    for assignment in assignments:
        if assignment.participant_id == new_assignment.participant_id:
            updated.append(new_assignment)
            replaced = True
        else:
            updated.append(assignment)
    if not replaced:
        updated.append(new_assignment)
    return tuple(updated)


# Helpers for callers that express "+1", "add a fraction" or "split N ways"
# as a requested quantity before calling assign_quantity.


def quick_add_quantity(item: Item, participant_id: str) -> float:
    current = assigned_quantity(item, participant_id)
    return min(current + 1, current + available_quantity(item))


def fraction_add_quantity(item: Item, participant_id: str, fraction: float) -> float:
    return round(assigned_quantity(item, participant_id) + fraction, 2)


def split_share_quantity(item: Item, participant_id: str, ways: int) -> float:
    if ways < 1:
        raise ValidationError("Number of people must be at least 1", details={"ways": ways})
    return fraction_add_quantity(item, participant_id, 1 / ways)


def add_items(session: Session, new_items: list[NewItem]) -> Session:
    """Append extracted receipt lines with fresh ids and no assignments."""
    if not new_items:
        raise ValidationError("At least one item is required")
    items: list[Item] = []
    for new_item in new_items:
        name = _clean_name(new_item.name)
        _validate_price(new_item.unit_price)
        if not math.isfinite(new_item.quantity) or new_item.quantity <= 0:
            raise ValidationError("Quantity must be positive", details={"quantity": new_item.quantity})
        if new_item.verification_issue is not None:
            _validate_issue(new_item.verification_issue)
        items.append(
            Item(
                id=str(uuid.uuid4()),
                name=name,
                unit_price=float(new_item.unit_price),
                total_quantity=float(new_item.quantity),
                verification_issue=new_item.verification_issue,
            )
        )
    return replace(session, items=session.items + tuple(items))


def join_session(session: Session, name: str) -> tuple[Participant, Session]:
    participant = Participant(id=str(uuid.uuid4()), name=_clean_name(name), joined_at=utc_now())
    return participant, replace(session, participants=session.participants + (participant,))


def update_item(
    session: Session,
    item_id: str,
    name: str | None = None,
    price: float | None = None,
    quantity: float | None = None,
) -> Session:
    """Edit an item's name, unit price or total quantity.

    A quantity below what participants already claimed is rejected rather
    than shrinking their claims.
    """
    item = _require_item(session, item_id)
    if name is None and price is None and quantity is None:
        raise ValidationError("Nothing to update", details={"itemId": item_id})

    updated = item
    if name is not None:
        updated = replace(updated, name=_clean_name(name))
    if price is not None:
        _validate_price(price)
        updated = replace(updated, unit_price=float(price))
    if quantity is not None:
        _validate_total_quantity(item, quantity)
        updated = replace(updated, total_quantity=float(quantity))
    return _replace_item(session, updated)


def apply_suggested_fix(session: Session, item_id: str) -> Session:
    item = _require_item(session, item_id)
    issue = item.verification_issue
    if issue is None:
        return session

    updated = replace(item, verification_issue=None)
    fix = issue.suggested_fix
    if fix is not None and fix.price is not None:
        _validate_price(fix.price)
        updated = replace(updated, unit_price=float(fix.price))
    if fix is not None and fix.quantity is not None:
        _validate_total_quantity(item, fix.quantity)
        updated = replace(updated, total_quantity=float(fix.quantity))
    return _replace_item(session, updated)


def dismiss_issue(session: Session, item_id: str) -> Session:
    item = _require_item(session, item_id)
    if item.verification_issue is None:
        return session
    return _replace_item(session, replace(item, verification_issue=None))


def set_verification_issue(session: Session, item_id: str, issue: VerificationIssue | None) -> Session:
    item = _require_item(session, item_id)
    if issue is not None:
        _validate_issue(issue)
    return _replace_item(session, replace(item, verification_issue=issue))


def _require_item(session: Session, item_id: str) -> Item:
    item = find_item(session, item_id)
    if item is None:
        raise ItemNotFound(item_id)
    return item


def _require_participant(session: Session, participant_id: str) -> None:
    if not any(participant.id == participant_id for participant in session.participants):
        raise ParticipantNotFound(participant_id)


def _replace_item(session: Session, updated: Item) -> Session:
    items = tuple(updated if item.id == updated.id else item for item in session.items)
    return replace(session, items=items)


def _clean_name(name: str) -> str:
    cleaned = name.strip()
    if not cleaned:
        raise ValidationError("Name must not be empty")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(f"Name must be at most {MAX_NAME_LENGTH} characters", details={"name": cleaned})
    return cleaned


def _validate_price(price: float) -> None:
    if not math.isfinite(price) or price < 0:
        raise ValidationError("Price must be zero or positive", details={"price": price})


def _validate_total_quantity(item: Item, quantity: float) -> None:
    if not math.isfinite(quantity) or quantity < 1:
        raise ValidationError("Quantity must be at least 1", details={"quantity": quantity})
    claimed = claimed_quantity(item)
    if quantity + QUANTITY_EPSILON < claimed:
        raise ValidationError(
            "Quantity is below what participants already claimed",
            details={"itemId": item.id, "quantity": quantity, "claimed": claimed},
        )


def _validate_issue(issue: VerificationIssue) -> None:
    if issue.kind not in ISSUE_KINDS:
        raise ValidationError(f"Unknown verification issue kind: {issue.kind}", details={"kind": issue.kind})
