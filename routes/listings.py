from decimal import Decimal, InvalidOperation

from flask import Blueprint, request, g

from models import db
from models.service import Service
from security.rbac import require_roles
from services import slots
from services.errors import ForbiddenError, ServiceNotFound, ValidationError
from utils.audit import log_event
from utils.responses import send_response

listings_bp = Blueprint("listings", __name__, url_prefix="/services")


def _parse_price(value) -> Decimal:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("price must be a number")
    if not price.is_finite() or price <= 0:
        raise ValidationError("price must be greater than zero")
    return price.quantize(Decimal("0.01"))


def _service_view(service: Service) -> dict:
    return {
        "id": service.id,
        "userId": service.owner_user_id,
        "title": service.title,
        "description": service.description,
        "location": service.location,
        "price": str(service.price),
        "time": [slots.slot_view(s) for s in service.slots],
        "createdAt": service.created_at.isoformat(),
    }


def _get_active_service(service_id: int) -> Service:
    service = db.session.get(Service, service_id)
    if not service or not service.is_active:
        raise ServiceNotFound(service_id)
    return service


@listings_bp.post("")
@require_roles("SELLER")
def create_service():
    data = request.get_json(silent=True) or {}
    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required")

    service = Service(
        owner_user_id=g.user.id,
        title=title[:160],
        description=(data.get("description") or "").strip() or None,
        location=(data.get("location") or "").strip()[:160] or None,
        price=_parse_price(data.get("price")),
    )
    db.session.add(service)
    db.session.commit()

    labels = data.get("time") or []
    if labels:
        slots.add_slots(service, labels)

    log_event("SERVICE_CREATE", actor_id=g.user.id, entity="service", entity_id=service.id)
    return send_response("Service created successfully", _service_view(service), 201)


@listings_bp.get("")
def list_services():
    title_query = (request.args.get("search") or "").strip()
    owner_id = request.args.get("userId", type=int)

    q = Service.query.filter(Service.is_active.is_(True))
    if title_query:
        q = q.filter(Service.title.ilike(f"%{title_query}%"))
    if owner_id:
        q = q.filter(Service.owner_user_id == owner_id)

    rows = q.order_by(Service.created_at.desc()).limit(200).all()
    return send_response("Services retrieved", [_service_view(s) for s in rows])


@listings_bp.get("/<int:service_id>")
def get_service(service_id: int):
    return send_response("Service retrieved", _service_view(_get_active_service(service_id)))


@listings_bp.post("/<int:service_id>/slots")
@require_roles("SELLER")
def add_service_slots(service_id: int):
    data = request.get_json(silent=True) or {}
    service = _get_active_service(service_id)
    if service.owner_user_id != g.user.id and not g.user.has_role("ADMIN"):
        raise ForbiddenError("Only the owner can add slots")

    rows = slots.add_slots(service, data.get("time"))
    log_event("SLOT_CREATE", actor_id=g.user.id, entity="service", entity_id=service.id,
              metadata={"slots": [r.label for r in rows]})
    return send_response("Slots added", _service_view(service), 201)
