"""
Slot store: per-service slot availability.

Each slot is its own row. Claiming a slot is one conditional UPDATE
("claim if still available"), so two requests that both saw the slot as
AVAILABLE cannot both flip it.
"""
from sqlalchemy.exc import IntegrityError

from models import db
from models.slot import TimeSlot, SLOT_AVAILABLE, SLOT_BOOKED
from services.errors import SlotUnavailable, ValidationError


def _normalize_label(slot_label) -> str:
    label = (slot_label or "").strip() if isinstance(slot_label, str) else ""
    if not label:
        raise ValidationError("time slot label is required")
    return label


def find_available_slot(service_id: int, slot_label: str) -> TimeSlot:
    label = _normalize_label(slot_label)

    if not TimeSlot.query.filter_by(service_id=service_id).first():
        raise SlotUnavailable(service_id, label, "Time slots are not available for this service")

    slot = TimeSlot.query.filter_by(service_id=service_id, label=label, status=SLOT_AVAILABLE).first()
    if not slot:
        raise SlotUnavailable(service_id, label)
    return slot


def _flip(service_id: int, label: str, from_status: str, to_status: str) -> int:
    return (
        TimeSlot.query
        .filter_by(service_id=service_id, label=label, status=from_status)
        .update({"status": to_status}, synchronize_session="fetch")
    )


def mark_booked(service_id: int, slot_label: str) -> None:
    """Caller commits. Raises SlotUnavailable if someone else claimed it first."""
    label = _normalize_label(slot_label)
    if _flip(service_id, label, SLOT_AVAILABLE, SLOT_BOOKED) != 1:
        raise SlotUnavailable(service_id, label)


def mark_available(service_id: int, slot_label: str) -> bool:
    """Caller commits. Returns False when the slot was not booked."""
    label = _normalize_label(slot_label)
    return _flip(service_id, label, SLOT_BOOKED, SLOT_AVAILABLE) == 1


def add_slots(service, labels) -> list[TimeSlot]:
    if not isinstance(labels, list) or not labels:
        raise ValidationError("time must be a non-empty list of slot labels")

    cleaned = []
    for raw in labels:
        label = _normalize_label(raw)
        if label not in cleaned:
            cleaned.append(label)

    existing = {s.label for s in TimeSlot.query.filter(
        TimeSlot.service_id == service.id, TimeSlot.label.in_(cleaned)
    ).all()}
    if existing:
        raise ValidationError("Slot already exists for this service", {"labels": sorted(existing)})

    rows = [TimeSlot(service_id=service.id, label=label, status=SLOT_AVAILABLE) for label in cleaned]
    db.session.add_all(rows)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError("Slot already exists for this service")
    return rows


def slot_view(slot: TimeSlot) -> dict:
    return {"id": slot.id, "time": slot.label, "status": slot.status}
