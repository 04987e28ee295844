"""
Test suite for the batch aggregation engine.
Tests batch selection, pricing and orchestration thresholds.
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from sleek_portal.batching import BatchEngine, BatchDecision
from sleek_portal.errors import ApiError
from sleek_portal.models import (
    AuthUser, Order, ProductionBatch, BatchContribution, SupplierOrder, SupplierTerms,
)
from sleek_portal.supabase_repo import SupabaseAPIError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

def batch(fill: int, closes_in_hours: float = 12, batch_id: str = "batch-12345678", **kwargs) -> ProductionBatch:
    return ProductionBatch(
        id=batch_id,
        product_category="t-shirt",
        target_quantity=100,
        current_quantity=fill,
        supplier_id="s1",
        unit_price_base=4.0,
        window_closes_at=(NOW + timedelta(hours=closes_in_hours)).isoformat(),
        **kwargs
    )

class TestBatchSelectionAndPricing:
    """Capacity checks and contribution pricing."""

    def setup_method(self):
        self.engine = BatchEngine(MagicMock(), buyer_markup=0.25)

    def test_can_join_with_room(self):
        assert self.engine.can_join(batch(50), {"navy"}, 50, "white")

    def test_cannot_exceed_target(self):
        assert not self.engine.can_join(batch(60), set(), 50, "white")

    def test_style_limit_blocks_new_variant(self):
        full_styles = batch(10, max_styles=2)

        assert not self.engine.can_join(full_styles, {"navy", "white"}, 10, "red")
        assert self.engine.can_join(full_styles, {"navy", "white"}, 10, "navy")

    def test_price_basic_style(self):
        pricing = self.engine.price(batch(0), 100, {"variant": "navy"})

        assert pricing == {
            "unitPrice": 5.0,
            "totalPrice": 500.0,
            "supplierUnitPrice": 4.0,
            "contributionMargin": 100.0,
        }

    def test_price_complex_style_and_multiplier(self):
        pricing = self.engine.price(batch(0, complexity_multiplier=1.2), 10,
                                    {"variant": "navy", "complexity": "complex"})

        # 4.0 * 1.2 * 1.25 = 6.0 supplier, 7.5 buyer
        assert pricing["supplierUnitPrice"] == 6.0
        assert pricing["unitPrice"] == 7.5
        assert pricing["contributionMargin"] == 15.0

    def test_markup_from_environment(self, monkeypatch):
        monkeypatch.setenv('BATCH_BUYER_MARKUP', '0.5')

        assert BatchEngine(MagicMock()).buyer_markup == 0.5

    def test_plan_batch_from_terms(self):
        terms = SupplierTerms(supplier_id="s9", base_price=3.2, moq_per_batch=800,
                              max_styles_allowed=None, lead_time_days=21)

        planned = self.engine.plan_batch(terms, "polo", "pique", now=NOW)

        assert planned.target_quantity == 800
        assert planned.max_styles == 4
        assert planned.batch_status == 'filling'
        assert planned.estimated_start_date == (NOW + timedelta(days=21)).isoformat()
        assert planned.window_closes_at == (NOW + timedelta(days=14)).isoformat()

class TestProcessOrder:
    """Placing orders into batches."""

    def setup_method(self):
        self.repo = MagicMock()
        self.repo.create_order.side_effect = lambda order: Order.from_dict(dict(order.to_dict(), id="order-1"))
        self.engine = BatchEngine(self.repo, buyer_markup=0.25)
        self.user = AuthUser(id="buyer-1")

    def test_joins_existing_batch_with_room(self):
        crowded = batch(90, batch_id="crowded")
        roomy = batch(40, batch_id="roomy")
        self.repo.list_batches.return_value = [crowded, roomy]
        self.repo.list_batch_contributions.return_value = [
            BatchContribution(style_details={"variant": "navy"}),
        ]

        result = self.engine.process_order(self.user, {
            "productCategory": "t-shirt", "quantity": 20, "styleDetails": {"variant": "white"},
        })

        assert result["batchId"] == "roomy"
        assert result["isNewBatch"] is False
        assert result["batchFillPercentage"] == 60.0
        self.repo.find_cheapest_terms.assert_not_called()
        self.repo.update_batch.assert_called_once_with("roomy", {
            "current_quantity": 60,
            "current_style_count": 2,
        })

        order = self.repo.create_order.call_args[0][0]
        assert order.workflow_status == 'payment_pending'
        assert order.is_batch_order is True
        assert order.buyer_id == "buyer-1"

        contribution = self.repo.create_batch_contribution.call_args[0][0]
        assert contribution.order_id == "order-1"
        assert contribution.batch_id == "roomy"

    def test_same_variant_does_not_add_style(self):
        self.repo.list_batches.return_value = [batch(40, batch_id="b1")]
        self.repo.list_batch_contributions.return_value = [
            BatchContribution(style_details={"variant": "navy"}),
        ]

        self.engine.process_order(self.user, {
            "productCategory": "t-shirt", "quantity": 10, "styleDetails": {"variant": "navy"},
        })

        assert self.repo.update_batch.call_args[0][1]["current_style_count"] == 1

    @pytest.mark.parametrize("payload", [
        {"quantity": 10, "styleDetails": {"variant": "navy"}},
        {"productCategory": "t-shirt", "quantity": 0, "styleDetails": {"variant": "navy"}},
        {"productCategory": "t-shirt", "quantity": "10", "styleDetails": {"variant": "navy"}},
        {"productCategory": "t-shirt", "quantity": 10, "styleDetails": {}},
    ])
    def test_invalid_payloads(self, payload):
        with pytest.raises(ApiError):
            self.engine.process_order(self.user, payload)
        self.repo.create_order.assert_not_called()

    @pytest.mark.parametrize("variant", [["navy", "white"], {"colour": "navy"}, 7])
    def test_non_text_variant_rejected(self, variant):
        with pytest.raises(ApiError) as exc:
            self.engine.process_order(self.user, {
                "productCategory": "t-shirt", "quantity": 10, "styleDetails": {"variant": variant},
            })
        assert exc.value.status_code == 400
        assert exc.value.message == "styleDetails.variant must be a string"
        self.repo.list_batches.assert_not_called()

    def test_non_text_category_rejected(self):
        with pytest.raises(ApiError):
            self.engine.process_order(self.user, {
                "productCategory": ["t-shirt"], "quantity": 10, "styleDetails": {"variant": "navy"},
            })
        self.repo.create_order.assert_not_called()

class TestOrchestration:
    """Threshold decisions and their side effects."""

    def setup_method(self):
        self.repo = MagicMock()
        self.repo.create_supplier_order.side_effect = (
            lambda so: SupplierOrder.from_dict(dict(so.to_dict(), id="so-1")))
        self.engine = BatchEngine(self.repo, buyer_markup=0.25)

    def test_decide_confirm(self):
        decision = self.engine.decide(batch(75), NOW)

        assert decision.action == 'confirmed'

    def test_decide_needs_review_after_window(self):
        decision = self.engine.decide(batch(60, closes_in_hours=-1), NOW)

        assert decision.action == 'needs_review'
        assert decision.message == 'Batch 50-75% filled, window closed'

    def test_decide_cancel_after_window(self):
        assert self.engine.decide(batch(49, closes_in_hours=-1), NOW).action == 'cancelled'

    def test_decide_nearing_target(self):
        decision = self.engine.decide(batch(65, closes_in_hours=5), NOW)

        assert decision.action == 'nearing_target'

    def test_decide_no_action(self):
        assert self.engine.decide(batch(30, closes_in_hours=5), NOW) is None

    def test_orchestrate_confirms_and_creates_supplier_order(self):
        self.repo.list_batches.return_value = [batch(80)]

        results = self.engine.orchestrate(NOW)

        assert results == [{"batchId": "batch-12345678", "action": "confirmed", "fillPercentage": 80.0,
                            "message": None, "ordersCancelled": None}]
        self.repo.update_batch.assert_called_once_with("batch-12345678", {
            "batch_status": 'confirmed',
            "actual_start_date": NOW.isoformat(),
        })
        supplier_order = self.repo.create_supplier_order.call_args[0][0]
        assert supplier_order.order_number == "BATCH-batch-12"
        assert supplier_order.quantity == 100
        self.repo.create_production_stages.assert_called_once()

    def test_orchestrate_cancels_batch_and_orders(self):
        self.repo.list_batches.return_value = [
            batch(20, closes_in_hours=-2, batch_contributions=[{"order_id": "o1"}, {"order_id": "o2"}]),
        ]

        results = self.engine.orchestrate(NOW)

        assert results[0]["action"] == 'cancelled'
        assert results[0]["ordersCancelled"] == 2
        self.repo.update_batch.assert_called_once_with("batch-12345678", {"batch_status": 'cancelled'})
        values, filters = self.repo.update_orders.call_args[0]
        assert values["workflow_status"] == 'cancelled'
        assert filters == {"id": ["o1", "o2"]}

    def test_orchestrate_records_failures(self):
        self.repo.list_batches.return_value = [batch(90)]
        self.repo.update_batch.side_effect = SupabaseAPIError("timeout", 503)

        results = self.engine.orchestrate(NOW)

        assert results[0]["action"] == 'failed'
        assert results[0]["message"] == "timeout"

    def test_orchestrate_queries_closing_window(self):
        self.repo.list_batches.return_value = []

        self.engine.orchestrate(NOW)

        self.repo.list_batches.assert_called_once_with(
            'filling', closes_before=(NOW + timedelta(hours=24)).isoformat(), with_contributions=True)

class TestStatistics:

    def test_empty(self):
        stats = BatchEngine.statistics([])

        assert stats["totalBatches"] == 0
        assert stats["avgFillRate"] == 0.0

    def test_counts(self):
        batches = [
            ProductionBatch(batch_status="in_production", target_quantity=100, current_quantity=100),
            ProductionBatch(batch_status="cancelled", target_quantity=100, current_quantity=20),
            ProductionBatch(batch_status="completed", target_quantity=200, current_quantity=200),
        ]

        stats = BatchEngine.statistics(batches)

        assert stats["inProduction"] == 1
        assert stats["cancelled"] == 1
        assert stats["completed"] == 1
        assert stats["avgFillRate"] == pytest.approx(73.333, rel=1e-3)

    def test_decision_serializes_camel_case(self):
        decision = BatchDecision("b1", "nearing_target", 61.0, message="promote")

        assert decision.to_dict()["fillPercentage"] == 61.0
