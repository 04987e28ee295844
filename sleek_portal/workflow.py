"""
Order workflow: creation, status changes, supplier assignment and
production stage tracking.
"""

from typing import Any, Dict, List, Optional, Tuple
import structlog
from .errors import ApiError, Forbidden, NotFound
from .models import (
    AuthUser, Order, OrderStatusChange, SupplierOrder, ProductionStage,
    ORDER_WORKFLOW_STATUSES, STAGE_STATUSES, ROLE_ADMIN,
)
from .utils import generate_order_number, utcnow_iso, safe_divide

logger = structlog.get_logger()

DEFAULT_PRODUCTION_STAGES = [
    ("Fabric Sourcing", "Fabric and trims procured and checked against the tech pack"),
    ("Cutting", "Markers made and panels cut"),
    ("Sewing", "Garment assembly on the line"),
    ("Finishing", "Printing, embroidery, washing and pressing"),
    ("Quality Inspection", "Final AQL inspection"),
    ("Packing", "Folding, tagging and cartoning"),
    ("Shipment", "Handed over to the forwarder"),
]

def calculate_margin(buyer_price: Optional[float], supplier_price: Optional[float]) -> Tuple[float, float]:
    """
    Broker margin on an order.

    Returns:
        (margin, margin_percentage) where margin = buyer_price - supplier_price
        and the percentage is relative to the buyer price (0 when buyer price is not positive).
    """
    buyer_price = float(buyer_price or 0)
    supplier_price = float(supplier_price or 0)
    margin = buyer_price - supplier_price
    margin_percentage = safe_divide(margin, buyer_price) * 100 if buyer_price > 0 else 0.0
    return margin, margin_percentage

def validate_status(status: Any) -> str:
    if not isinstance(status, str) or status not in ORDER_WORKFLOW_STATUSES:
        raise ApiError(f"Invalid workflow status: {status}")
    return status

def stage_status_for(completion_percentage: int) -> str:
    not_started, in_progress, completed = STAGE_STATUSES
    if completion_percentage >= 100:
        return completed
    if completion_percentage > 0:
        return in_progress
    return not_started

def build_stage_update(stage: ProductionStage, completion_percentage: Any = None,
                       notes: Optional[str] = None, photo_url: Optional[str] = None,
                       updated_by: Optional[str] = None) -> Dict[str, Any]:
    """Compute the column changes for a production stage progress report."""
    now = utcnow_iso()
    values: Dict[str, Any] = {"updated_at": now}
    if updated_by:
        values["updated_by"] = updated_by

    if completion_percentage is not None:
        if isinstance(completion_percentage, bool):
            raise ApiError("completion_percentage must be a number between 0 and 100")
        try:
            percentage = int(completion_percentage)
        except (TypeError, ValueError):
            raise ApiError("completion_percentage must be a number between 0 and 100")
        if not 0 <= percentage <= 100:
            raise ApiError("completion_percentage must be a number between 0 and 100")

        values["completion_percentage"] = percentage
        values["status"] = stage_status_for(percentage)
        if percentage > 0 and not stage.started_at:
            values["started_at"] = now
        if percentage == 100:
            values["completed_at"] = now

    if notes:
        values["notes"] = notes
    if photo_url:
        values["photos"] = list(stage.photos or []) + [photo_url]

    return values

def default_stages(supplier_order_id: str) -> List[ProductionStage]:
    return [
        ProductionStage(
            supplier_order_id=supplier_order_id,
            stage_number=number,
            stage_name=name,
            description=description,
            status='not_started',
            completion_percentage=0,
        )
        for number, (name, description) in enumerate(DEFAULT_PRODUCTION_STAGES, start=1)
    ]

def _parse_quantity(value: Any) -> int:
    if isinstance(value, bool):
        raise ApiError("quantity must be a positive integer")
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        raise ApiError("quantity must be a positive integer")
    if quantity <= 0:
        raise ApiError("quantity must be a positive integer")
    return quantity

def _parse_price(value: Any, name: str) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ApiError(f"{name} must be a number")

class OrderWorkflow:
    """Order lifecycle operations on top of the Supabase repository."""

    def __init__(self, repo):
        self.repo = repo

    def is_admin(self, user: AuthUser) -> bool:
        return self.repo.has_role(user.id, ROLE_ADMIN)

    def require_admin(self, user: AuthUser) -> None:
        if not self.is_admin(user):
            raise Forbidden("Admin access required")

    def is_assigned_supplier(self, user: AuthUser, supplier_id: Optional[str]) -> bool:
        if not supplier_id:
            return False
        supplier = self.repo.get_supplier(supplier_id)
        return supplier is not None and supplier.user_id == user.id

    def _load_order(self, order_id: str) -> Order:
        order = self.repo.get_order(order_id)
        if not order:
            raise NotFound("Order not found")
        return order

    def create_order(self, user: AuthUser, payload: Dict[str, Any]) -> Order:
        """Persist a buyer order awaiting a quote."""
        if not payload.get('product_type') or not payload.get('quantity') or not payload.get('specifications'):
            raise ApiError("Missing required fields: product_type, quantity, specifications")

        order = Order(
            order_number=generate_order_number("ORD"),
            buyer_id=user.id,
            product_type=payload['product_type'],
            quantity=_parse_quantity(payload['quantity']),
            specifications=payload['specifications'],
            target_date=payload.get('target_date'),
            special_requirements=payload.get('special_requirements'),
            workflow_status='pending_quote',
            status='pending',
        )
        return self.repo.create_order(order)

    def update_status(self, user: AuthUser, order_id: Optional[str], status: Optional[str],
                      notes: Optional[str] = None) -> Order:
        """
        Move an order to a new workflow status.

        Allowed for the buyer, the assigned supplier's user and admins.
        A history row is written when notes accompany the change.
        """
        if not order_id or not status:
            raise ApiError("order_id and status are required")
        validate_status(status)

        order = self._load_order(order_id)
        allowed = (
            order.buyer_id == user.id
            or self.is_assigned_supplier(user, order.supplier_id)
            or self.is_admin(user)
        )
        if not allowed:
            raise Forbidden("Not authorized to update this order")

        updated = self.repo.update_order(order_id, {
            "workflow_status": status,
            "updated_at": utcnow_iso(),
        })
        if not updated:
            raise NotFound("Order not found")

        if notes:
            self.repo.add_status_change(OrderStatusChange(
                order_id=order_id,
                old_status=order.workflow_status,
                new_status=status,
                changed_by=user.id,
                notes=notes,
            ))

        logger.info("Order status changed", order_id=order_id,
                    old_status=order.workflow_status, new_status=status)
        return updated

    def assign_supplier(self, order_id: str, supplier_id: str, supplier_price: Any,
                        assigned_by: Optional[str], instructions: Optional[str] = None
                        ) -> Tuple[Order, SupplierOrder]:
        """Hand an order to a supplier and record the broker margin."""
        if not order_id or not supplier_id or supplier_price in (None, ""):
            raise ApiError("order_id, supplier_id and supplier_price are required")
        price = _parse_price(supplier_price, "supplier_price")

        order = self._load_order(order_id)
        if not self.repo.get_supplier(supplier_id):
            raise NotFound("Supplier not found")

        margin, margin_percentage = calculate_margin(order.buyer_price, price)

        supplier_order = self.repo.create_supplier_order(SupplierOrder(
            order_number=generate_order_number("SO"),
            buyer_order_id=order_id,
            supplier_id=supplier_id,
            product_type=order.product_type,
            quantity=order.quantity,
            buyer_price=order.buyer_price,
            supplier_price=price,
            margin=margin,
            target_date=order.target_date,
            special_instructions=instructions,
            status='pending',
            created_by=assigned_by,
        ))
        self.repo.create_production_stages(default_stages(supplier_order.id))

        updated = self.repo.update_order(order_id, {
            "supplier_id": supplier_id,
            "supplier_price": price,
            "admin_margin": margin,
            "margin_percentage": margin_percentage,
            "workflow_status": 'assigned_to_supplier',
            "assigned_by": assigned_by,
            "assigned_at": utcnow_iso(),
            "updated_at": utcnow_iso(),
        })

        logger.info(f"Assigned supplier {supplier_id} with margin {margin:.2f} ({margin_percentage:.1f}%)",
                    order_id=order_id)
        return updated or order, supplier_order

    def create_supplier_order(self, user: AuthUser, payload: Dict[str, Any]
                              ) -> Tuple[SupplierOrder, List[ProductionStage]]:
        """Admin-created supplier order with an optional custom stage plan."""
        if not payload.get('product_type') or not payload.get('quantity'):
            raise ApiError("Missing required fields: product_type, quantity")

        buyer_price = _parse_price(payload.get('buyer_price'), "buyer_price")
        supplier_price = _parse_price(payload.get('supplier_price'), "supplier_price")
        margin = None
        if buyer_price is not None and supplier_price is not None:
            margin, _ = calculate_margin(buyer_price, supplier_price)

        supplier_order = self.repo.create_supplier_order(SupplierOrder(
            order_number=payload.get('order_number') or generate_order_number("SO"),
            buyer_order_id=payload.get('buyer_order_id'),
            supplier_id=payload.get('supplier_id'),
            product_type=payload['product_type'],
            quantity=_parse_quantity(payload['quantity']),
            buyer_price=buyer_price,
            supplier_price=supplier_price,
            margin=margin,
            target_date=payload.get('target_date'),
            special_instructions=payload.get('special_instructions'),
            status='pending',
            created_by=user.id,
        ))

        requested = payload.get('stages')
        if requested is None:
            stages = default_stages(supplier_order.id)
        else:
            named = [s for s in requested if isinstance(s, dict) and s.get('name')]
            stages = [
                ProductionStage(
                    supplier_order_id=supplier_order.id,
                    stage_number=number,
                    stage_name=stage['name'],
                    description=stage.get('description'),
                    target_date=stage.get('target_date') or None,
                )
                for number, stage in enumerate(named, start=1)
            ]

        created_stages = self.repo.create_production_stages(stages)
        return supplier_order, created_stages

    def list_stages(self, user: AuthUser, order_id: Optional[str]) -> List[ProductionStage]:
        if not order_id:
            raise ApiError("order_id is required")

        order = self._load_order(order_id)
        has_access = (
            order.buyer_id == user.id
            or self.is_assigned_supplier(user, order.supplier_id)
            or self.is_admin(user)
        )
        if not has_access:
            raise Forbidden("Access denied to this order")

        supplier_orders = self.repo.list_supplier_orders_for_order(order_id)
        return self.repo.list_production_stages(so.id for so in supplier_orders)

    def update_stage(self, user: AuthUser, payload: Dict[str, Any]) -> ProductionStage:
        """Record progress on a stage; only the assigned supplier may do this."""
        stage_id = payload.get('stage_id')
        if not stage_id:
            raise ApiError("stage_id is required")

        stage = self.repo.get_production_stage(stage_id)
        if not stage:
            raise NotFound("Production stage not found")

        supplier_order = self.repo.get_supplier_order(stage.supplier_order_id)
        if not supplier_order or not self.is_assigned_supplier(user, supplier_order.supplier_id):
            raise Forbidden("Only the assigned supplier can update production stages")

        values = build_stage_update(
            stage,
            completion_percentage=payload.get('completion_percentage'),
            notes=payload.get('notes'),
            photo_url=payload.get('photo_url'),
            updated_by=user.id,
        )
        updated = self.repo.update_production_stage(stage_id, values)
        if not updated:
            raise NotFound("Production stage not found")
        return updated
