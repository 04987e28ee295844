"""
Data models for the Sleek Apparels order portal.
Each dataclass mirrors a table row in the hosted Supabase database.
"""

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
from dataclasses_json import dataclass_json

ORDER_WORKFLOW_STATUSES = (
    'pending_quote',
    'quote_requested',
    'quote_sent',
    'admin_review',
    'awaiting_payment',
    'payment_pending',
    'payment_received',
    'assigned_to_supplier',
    'sample_requested',
    'sample_submitted',
    'sample_approved',
    'bulk_production',
    'qc_inspection',
    'ready_to_ship',
    'shipped',
    'delivered',
    'completed',
    'cancelled',
    'on_hold',
)

BATCH_STATUSES = ('filling', 'confirmed', 'in_production', 'completed', 'cancelled')

STAGE_STATUSES = ('not_started', 'in_progress', 'completed')

ROLE_ADMIN = 'admin'

@dataclass_json
@dataclass
class AuthUser:
    """Authenticated user as returned by Supabase Auth."""
    id: str = ""
    email: Optional[str] = None
    role: Optional[str] = None

@dataclass_json
@dataclass
class Order:
    """Buyer order matching the `orders` table."""
    id: Optional[str] = None
    order_number: str = ""
    buyer_id: str = ""
    product_type: str = ""
    quantity: int = 0
    specifications: Any = None
    target_date: Optional[str] = None
    special_requirements: Optional[str] = None

    workflow_status: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None

    # Supplier assignment
    supplier_id: Optional[str] = None
    buyer_price: Optional[float] = None
    supplier_price: Optional[float] = None
    admin_margin: Optional[float] = None
    margin_percentage: Optional[float] = None
    assigned_by: Optional[str] = None
    assigned_at: Optional[str] = None

    # Batch orders
    unit_price: Optional[float] = None
    total_price: Optional[float] = None
    is_batch_order: Optional[bool] = None

    stripe_payment_intent_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == 'paid'

    @property
    def margin(self) -> Optional[float]:
        """Broker margin; falls back to buyer minus supplier price before assignment is stored."""
        if self.admin_margin is not None:
            return self.admin_margin
        if self.buyer_price is None or self.supplier_price is None:
            return None
        return self.buyer_price - self.supplier_price

@dataclass_json
@dataclass
class OrderStatusChange:
    """Row in `order_status_history`."""
    order_id: str = ""
    new_status: str = ""
    old_status: Optional[str] = None
    changed_by: Optional[str] = None
    notes: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[str] = None

@dataclass_json
@dataclass
class Supplier:
    """Manufacturer profile matching the `suppliers` table."""
    id: Optional[str] = None
    user_id: Optional[str] = None
    company_name: str = ""
    country: Optional[str] = None
    factory_location: Optional[str] = None
    specializations: Optional[List[str]] = None
    certifications: Optional[List[str]] = None  # OEKO-TEX, BSCI, WRAP...
    verification_status: Optional[str] = None
    performance_score: Optional[float] = None
    total_orders_completed: Optional[int] = None
    on_time_delivery_rate: Optional[float] = None
    lead_time_days: Optional[int] = None
    moq_minimum: Optional[int] = None
    contact_email: Optional[str] = None

    @property
    def is_verified(self) -> bool:
        return self.verification_status == 'verified'

@dataclass_json
@dataclass
class SupplierProduct:
    """Approved marketplace listing of a supplier."""
    id: Optional[str] = None
    title: str = ""
    category: Optional[str] = None
    base_price: Optional[float] = None
    moq: Optional[int] = None
    image_urls: Optional[List[str]] = None
    rating: Optional[float] = None

@dataclass_json
@dataclass
class SupplierOrder:
    """Work order handed to a supplier (`supplier_orders`)."""
    id: Optional[str] = None
    order_number: str = ""
    buyer_order_id: Optional[str] = None
    supplier_id: Optional[str] = None
    product_type: str = ""
    quantity: int = 0
    buyer_price: Optional[float] = None
    supplier_price: Optional[float] = None
    margin: Optional[float] = None
    target_date: Optional[str] = None
    special_instructions: Optional[str] = None
    status: str = "pending"
    created_by: Optional[str] = None
    created_at: Optional[str] = None

@dataclass_json
@dataclass
class ProductionStage:
    """One step of a supplier order's production timeline."""
    id: Optional[str] = None
    supplier_order_id: str = ""
    stage_number: int = 0
    stage_name: str = ""
    description: Optional[str] = None
    status: Optional[str] = "not_started"
    completion_percentage: Optional[int] = 0
    notes: Optional[str] = None
    photos: Optional[List[str]] = None
    target_date: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None
    updated_by: Optional[str] = None

@dataclass_json
@dataclass
class SupplierTerms:
    """Supplier MOU terms used to open new production batches."""
    id: Optional[str] = None
    supplier_id: Optional[str] = None
    base_price: float = 0.0
    moq_per_batch: Optional[int] = None
    max_styles_allowed: Optional[int] = None
    lead_time_days: Optional[int] = None
    complexity_premium_percent: Optional[float] = None
    status: Optional[str] = None

@dataclass_json
@dataclass
class ProductionBatch:
    """Shared production run pooling several buyers' small orders."""
    id: Optional[str] = None
    product_category: str = ""
    product_variant_base: str = ""
    target_quantity: int = 0
    current_quantity: Optional[int] = 0
    current_style_count: Optional[int] = 0
    max_styles: Optional[int] = 4
    supplier_id: Optional[str] = None
    batch_status: Optional[str] = "filling"
    unit_price_base: float = 0.0
    complexity_multiplier: Optional[float] = 1.0
    estimated_start_date: Optional[str] = None
    actual_start_date: Optional[str] = None
    window_closes_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    batch_contributions: Optional[List[Dict[str, Any]]] = None

    @property
    def fill_percentage(self) -> float:
        """Filled share of the target quantity, 0-100."""
        if not self.target_quantity:
            return 0.0
        return (self.current_quantity or 0) / self.target_quantity * 100

@dataclass_json
@dataclass
class BatchContribution:
    """A buyer order's share of a production batch."""
    id: Optional[str] = None
    batch_id: Optional[str] = None
    order_id: Optional[str] = None
    quantity: int = 0
    style_details: Dict[str, Any] = field(default_factory=dict)
    buyer_price_per_unit: float = 0.0
    contribution_margin: Optional[float] = None
    committed_at: Optional[str] = None

    @property
    def variant(self) -> Optional[str]:
        return (self.style_details or {}).get('variant')

@dataclass_json
@dataclass
class PaymentRecord:
    """Row in `payment_history`."""
    order_id: Optional[str] = None
    amount: float = 0.0
    payment_type: str = "stripe"
    status: str = "completed"
    transaction_id: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[str] = None

@dataclass_json
@dataclass
class AutomationRule:
    """Admin-defined rule: when the conditions hold, run the actions."""
    id: Optional[str] = None
    rule_name: str = ""
    rule_type: Optional[str] = None
    conditions: Any = None
    actions: Any = field(default_factory=list)
    active: Optional[bool] = True
    priority: Optional[int] = 0

@dataclass_json
@dataclass
class QuoteRequest:
    """Public quote request submitted from the website."""
    customer_name: str = ""
    customer_email: str = ""
    product_type: str = ""
    quantity: int = 0
    phone_number: Optional[str] = None
    company: Optional[str] = None
    fabric_type: Optional[str] = None
    additional_requirements: Optional[str] = None
    country: Optional[str] = None
    source: str = "website"

@dataclass_json
@dataclass
class ContactSubmission:
    """Contact form submission."""
    name: str = ""
    email: str = ""
    message: str = ""
    phone: Optional[str] = None
    company: Optional[str] = None
    source: str = "website"
