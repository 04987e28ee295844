"""
Batch aggregation: pooling small buyer orders into shared production runs
and deciding what happens to runs as their filling window closes.
"""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set
import structlog
from dataclasses_json import dataclass_json, LetterCase
from .errors import ApiError
from .models import (
    AuthUser, Order, ProductionBatch, BatchContribution, SupplierOrder, SupplierTerms,
)
from .supabase_repo import SupabaseAPIError
from .utils import generate_order_number, parse_timestamp, utcnow, utcnow_iso
from .workflow import default_stages

logger = structlog.get_logger()

# Extra cost share charged for style complexity on top of the batch base price
STYLE_COMPLEXITY_PREMIUMS = {
    'basic': 0.0,
    'standard': 0.10,
    'complex': 0.25,
}

@dataclass_json(letter_case=LetterCase.CAMEL)
@dataclass
class BatchDecision:
    """Outcome of one orchestration pass for a batch."""
    batch_id: str
    action: str  # confirmed, needs_review, cancelled, nearing_target, failed
    fill_percentage: float
    message: Optional[str] = None
    orders_cancelled: Optional[int] = None

class BatchEngine:
    """Aggregation engine for shared production batches."""

    def __init__(self, repo, buyer_markup: Optional[float] = None):
        self.repo = repo
        if buyer_markup is None:
            buyer_markup = float(os.getenv('BATCH_BUYER_MARKUP', '0.25'))
        self.buyer_markup = buyer_markup

        # Orchestration thresholds (percent filled)
        self.confirm_threshold = 75.0
        self.review_threshold = 50.0
        self.nearing_threshold = 60.0
        self.lookahead = timedelta(hours=24)

        self.default_max_styles = 4
        self.filling_window = timedelta(days=14)

    def can_join(self, batch: ProductionBatch, variants: Set[str], quantity: int, variant: str) -> bool:
        """True when the batch has room for the quantity and for the style."""
        has_space = (batch.current_quantity or 0) + quantity <= batch.target_quantity
        max_styles = batch.max_styles or self.default_max_styles
        has_style_room = variant in variants or len(variants) < max_styles
        return has_space and has_style_room

    def plan_batch(self, terms: SupplierTerms, product_category: str, product_variant_base: str,
                   now: Optional[datetime] = None) -> ProductionBatch:
        """New filling batch sized to the supplier's per-batch MOQ."""
        now = now or utcnow()
        return ProductionBatch(
            product_category=product_category,
            product_variant_base=product_variant_base,
            target_quantity=terms.moq_per_batch or 0,
            current_quantity=0,
            current_style_count=0,
            max_styles=terms.max_styles_allowed or self.default_max_styles,
            supplier_id=terms.supplier_id,
            batch_status='filling',
            unit_price_base=terms.base_price,
            complexity_multiplier=1.0,
            estimated_start_date=(now + timedelta(days=terms.lead_time_days or 0)).isoformat(),
            window_closes_at=(now + self.filling_window).isoformat(),
        )

    def price(self, batch: ProductionBatch, quantity: int, style_details: Dict[str, Any]) -> Dict[str, float]:
        """
        Price a contribution to a batch.

        Supplier unit cost is the batch base price scaled by the batch complexity
        multiplier and the style complexity premium; the buyer pays that plus the
        broker markup.
        """
        complexity = (style_details or {}).get('complexity', 'basic')
        premium = STYLE_COMPLEXITY_PREMIUMS.get(complexity, 0.0)

        supplier_unit = batch.unit_price_base * (batch.complexity_multiplier or 1.0) * (1 + premium)
        buyer_unit = supplier_unit * (1 + self.buyer_markup)

        supplier_unit = round(supplier_unit, 2)
        buyer_unit = round(buyer_unit, 2)
        return {
            "unitPrice": buyer_unit,
            "totalPrice": round(buyer_unit * quantity, 2),
            "supplierUnitPrice": supplier_unit,
            "contributionMargin": round((buyer_unit - supplier_unit) * quantity, 2),
        }

    def process_order(self, user: AuthUser, data: Dict[str, Any]) -> Dict[str, Any]:
        """Place a small order into a compatible batch, opening one if needed."""
        category = data.get('productCategory')
        variant_base = data.get('productVariantBase') or category
        style_details = data.get('styleDetails') or {}
        quantity = data.get('quantity')

        if not category or not quantity:
            raise ApiError("productCategory and quantity are required")
        if not isinstance(category, str) or not isinstance(variant_base, str):
            raise ApiError("productCategory and productVariantBase must be strings")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ApiError("quantity must be a positive integer")
        if not isinstance(style_details, dict) or not style_details.get('variant'):
            raise ApiError("styleDetails.variant is required")
        variant = style_details['variant']
        if not isinstance(variant, str):
            raise ApiError("styleDetails.variant must be a string")

        selected: Optional[ProductionBatch] = None
        variants: Set[str] = set()
        candidates = self.repo.list_batches('filling', product_category=category,
                                            min_target_quantity=quantity,
                                            order="current_quantity.desc")
        for batch in candidates:
            batch_variants = {c.variant for c in self.repo.list_batch_contributions(batch.id)
                              if isinstance(c.variant, str) and c.variant}
            if self.can_join(batch, batch_variants, quantity, variant):
                selected, variants = batch, batch_variants
                break

        is_new_batch = selected is None
        if is_new_batch:
            terms = self.repo.find_cheapest_terms(quantity)
            if not terms:
                raise ApiError("No suitable supplier found")
            selected = self.repo.create_batch(self.plan_batch(terms, category, variant_base))

        pricing = self.price(selected, quantity, style_details)

        order = self.repo.create_order(Order(
            order_number=generate_order_number("ORD"),
            buyer_id=user.id,
            product_type=category,
            quantity=quantity,
            specifications=style_details,
            unit_price=pricing["unitPrice"],
            total_price=pricing["totalPrice"],
            workflow_status='payment_pending',
            status='pending',
            is_batch_order=True,
        ))

        self.repo.create_batch_contribution(BatchContribution(
            batch_id=selected.id,
            order_id=order.id,
            quantity=quantity,
            style_details=style_details,
            buyer_price_per_unit=pricing["unitPrice"],
            contribution_margin=pricing["contributionMargin"],
        ))

        new_quantity = (selected.current_quantity or 0) + quantity
        self.repo.update_batch(selected.id, {
            "current_quantity": new_quantity,
            "current_style_count": len(variants | {variant}),
        })

        fill = new_quantity / selected.target_quantity * 100 if selected.target_quantity else 0.0
        logger.info(f"Batch order placed ({fill:.1f}% filled)", order_id=order.id,
                    batch_id=selected.id, is_new_batch=is_new_batch)
        return {
            "orderId": order.id,
            "batchId": selected.id,
            "isNewBatch": is_new_batch,
            "pricing": pricing,
            "batchFillPercentage": fill,
        }

    def decide(self, batch: ProductionBatch, now: Optional[datetime] = None) -> Optional[BatchDecision]:
        """Decide what orchestration should do with a filling batch, if anything."""
        now = now or utcnow()
        fill = batch.fill_percentage
        closes_at = parse_timestamp(batch.window_closes_at)
        window_closed = closes_at is not None and closes_at < now

        if fill >= self.confirm_threshold:
            return BatchDecision(batch.id, 'confirmed', fill)
        if window_closed:
            if fill >= self.review_threshold:
                return BatchDecision(batch.id, 'needs_review', fill,
                                     message='Batch 50-75% filled, window closed')
            return BatchDecision(batch.id, 'cancelled', fill)
        if fill >= self.nearing_threshold:
            return BatchDecision(batch.id, 'nearing_target', fill,
                                 message='Batch nearing target - consider promotion')
        return None

    def orchestrate(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Confirm, flag or cancel filling batches whose window closes within a day."""
        now = now or utcnow()
        batches = self.repo.list_batches('filling', closes_before=(now + self.lookahead).isoformat(),
                                         with_contributions=True)
        logger.info(f"Orchestrating {len(batches)} filling batches")

        results = []
        for batch in batches:
            decision = self.decide(batch, now)
            if decision is None:
                continue
            try:
                if decision.action == 'confirmed':
                    self._confirm(batch, now)
                elif decision.action == 'cancelled':
                    decision.orders_cancelled = self._cancel(batch)
            except SupabaseAPIError as e:
                logger.error(f"Failed to apply '{decision.action}' to batch {batch.id}: {e}")
                decision = BatchDecision(batch.id, 'failed', decision.fill_percentage, message=str(e))
            results.append(decision.to_dict())

        logger.info("Orchestration complete", processed=len(results))
        return results

    def _confirm(self, batch: ProductionBatch, now: datetime) -> None:
        self.repo.update_batch(batch.id, {
            "batch_status": 'confirmed',
            "actual_start_date": now.isoformat(),
        })
        supplier_order = self.repo.create_supplier_order(SupplierOrder(
            order_number=f"BATCH-{batch.id[:8]}",
            supplier_id=batch.supplier_id,
            product_type=batch.product_category,
            quantity=batch.target_quantity,
            supplier_price=batch.unit_price_base,
            status='pending',
        ))
        self.repo.create_production_stages(default_stages(supplier_order.id))
        logger.info(f"Batch {batch.id} auto-confirmed")

    def _cancel(self, batch: ProductionBatch) -> int:
        self.repo.update_batch(batch.id, {"batch_status": 'cancelled'})
        order_ids = [c.get('order_id') for c in batch.batch_contributions or [] if c.get('order_id')]
        if order_ids:
            self.repo.update_orders({"workflow_status": 'cancelled', "updated_at": utcnow_iso()},
                                    {"id": order_ids})
        logger.warning(f"Batch {batch.id} cancelled - insufficient fill", orders_cancelled=len(order_ids))
        return len(order_ids)

    def active_batches(self, product_category: Optional[str] = None) -> List[ProductionBatch]:
        return self.repo.list_batches(['filling', 'confirmed'], product_category=product_category,
                                      with_contributions=True)

    @staticmethod
    def statistics(batches: List[ProductionBatch]) -> Dict[str, Any]:
        """Counts per batch status and the average fill rate in percent."""
        def count(status: str) -> int:
            return sum(1 for b in batches if b.batch_status == status)

        fill_rates = [(b.current_quantity or 0) / (b.target_quantity or 1) for b in batches]
        return {
            "totalBatches": len(batches),
            "filling": count('filling'),
            "confirmed": count('confirmed'),
            "inProduction": count('in_production'),
            "completed": count('completed'),
            "cancelled": count('cancelled'),
            "avgFillRate": sum(fill_rates) / len(fill_rates) * 100 if fill_rates else 0.0,
        }
