"""Domain records for bill splitting sessions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


ISSUE_KINDS = ("unit_price_mismatch", "sum_mismatch", "suspicious_quantity")


@dataclass(frozen=True)
class SuggestedFix:
    price: float | None = None
    quantity: float | None = None


@dataclass(frozen=True)
class VerificationIssue:
    kind: str
    message: str
    suggested_fix: SuggestedFix | None = None


@dataclass(frozen=True)
class Assignment:
    participant_id: str
    quantity: float


@dataclass(frozen=True)
class Item:
    id: str
    name: str
    unit_price: float
    total_quantity: float
    assignments: tuple[Assignment, ...] = ()
    verification_issue: VerificationIssue | None = None


@dataclass(frozen=True)
class Participant:
    id: str
    name: str
    joined_at: datetime


@dataclass(frozen=True)
class Session:
    id: str
    created_at: datetime
    updated_at: datetime
    version: int = 1
    items: tuple[Item, ...] = ()
    participants: tuple[Participant, ...] = ()
    image_url: str | None = None


@dataclass(frozen=True)
class NewItem:
    """Item as delivered by the receipt extraction collaborator."""

    name: str
    unit_price: float
    quantity: float
    verification_issue: VerificationIssue | None = None


@dataclass(frozen=True)
class ParticipantTotal:
    participant_id: str
    name: str
    total: float
