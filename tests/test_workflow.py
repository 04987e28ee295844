"""
Test suite for the order workflow: margins, status validation and
production stage progress.
"""

import pytest
from unittest.mock import MagicMock
from sleek_portal.errors import ApiError, Forbidden, NotFound
from sleek_portal.models import AuthUser, Order, Supplier, SupplierOrder, ProductionStage
from sleek_portal.workflow import (
    OrderWorkflow, calculate_margin, validate_status, stage_status_for, build_stage_update,
    default_stages, DEFAULT_PRODUCTION_STAGES,
)

class TestPureHelpers:
    """Margin, status and stage helpers."""

    def test_margin_and_percentage(self):
        margin, pct = calculate_margin(12.0, 9.0)

        assert margin == 3.0
        assert pct == 25.0

    def test_margin_zero_buyer_price(self):
        margin, pct = calculate_margin(0, 4.0)

        assert margin == -4.0
        assert pct == 0.0

    def test_margin_missing_prices(self):
        assert calculate_margin(None, None) == (0.0, 0.0)

    def test_validate_status(self):
        assert validate_status('bulk_production') == 'bulk_production'
        with pytest.raises(ApiError) as exc:
            validate_status('teleported')
        assert exc.value.status_code == 400
        assert exc.value.message == "Invalid workflow status: teleported"

    @pytest.mark.parametrize("pct,expected", [(0, 'not_started'), (1, 'in_progress'),
                                              (99, 'in_progress'), (100, 'completed')])
    def test_stage_status_for(self, pct, expected):
        assert stage_status_for(pct) == expected

    def test_stage_update_first_progress_sets_started_at(self):
        stage = ProductionStage(id="st1", supplier_order_id="so-1")

        values = build_stage_update(stage, completion_percentage=30, notes="Line 2 running")

        assert values['status'] == 'in_progress'
        assert values['completion_percentage'] == 30
        assert values['notes'] == "Line 2 running"
        assert 'started_at' in values
        assert 'completed_at' not in values

    def test_stage_update_keeps_original_start(self):
        stage = ProductionStage(id="st1", started_at="2024-05-01T00:00:00+00:00")

        values = build_stage_update(stage, completion_percentage=100)

        assert 'started_at' not in values
        assert values['status'] == 'completed'
        assert 'completed_at' in values

    def test_stage_update_appends_photo(self):
        stage = ProductionStage(id="st1", photos=["a.jpg"])

        values = build_stage_update(stage, photo_url="b.jpg")

        assert values['photos'] == ["a.jpg", "b.jpg"]
        assert 'status' not in values

    @pytest.mark.parametrize("bad", [-1, 101, "lots", True])
    def test_stage_update_rejects_bad_percentage(self, bad):
        with pytest.raises(ApiError):
            build_stage_update(ProductionStage(id="st1"), completion_percentage=bad)

    def test_default_stages_numbered_from_one(self):
        stages = default_stages("so-1")

        assert len(stages) == len(DEFAULT_PRODUCTION_STAGES)
        assert stages[0].stage_number == 1
        assert stages[0].stage_name == "Fabric Sourcing"
        assert all(s.status == 'not_started' and s.completion_percentage == 0 for s in stages)

class TestOrderWorkflow:
    """OrderWorkflow against a mocked repository."""

    def setup_method(self):
        self.repo = MagicMock()
        self.repo.has_role.return_value = False
        self.workflow = OrderWorkflow(self.repo)
        self.buyer = AuthUser(id="buyer-1")

    def test_create_order_rejects_non_positive_quantity(self):
        with pytest.raises(ApiError):
            self.workflow.create_order(self.buyer, {"product_type": "polo", "quantity": -5,
                                                    "specifications": {"color": "white"}})
        self.repo.create_order.assert_not_called()

    def test_update_status_without_notes_skips_history(self):
        self.repo.get_order.return_value = Order(id="o1", buyer_id="buyer-1", workflow_status="quote_sent")
        self.repo.update_order.return_value = Order(id="o1", workflow_status="cancelled")

        self.workflow.update_status(self.buyer, "o1", "cancelled")

        self.repo.add_status_change.assert_not_called()

    def test_update_status_by_assigned_supplier(self):
        supplier_user = AuthUser(id="supplier-user")
        self.repo.get_order.return_value = Order(id="o1", buyer_id="buyer-1", supplier_id="s1")
        self.repo.get_supplier.return_value = Supplier(id="s1", user_id="supplier-user")
        self.repo.update_order.return_value = Order(id="o1", workflow_status="qc_inspection")

        order = self.workflow.update_status(supplier_user, "o1", "qc_inspection")

        assert order.workflow_status == "qc_inspection"

    def test_update_status_requires_fields(self):
        with pytest.raises(ApiError) as exc:
            self.workflow.update_status(self.buyer, None, "shipped")
        assert exc.value.message == "order_id and status are required"

    def test_assign_supplier_unknown_supplier(self):
        self.repo.get_order.return_value = Order(id="o1", buyer_price=10.0)
        self.repo.get_supplier.return_value = None

        with pytest.raises(NotFound):
            self.workflow.assign_supplier("o1", "s404", 7, assigned_by="admin-1")

    def test_create_supplier_order_with_custom_stages(self):
        self.repo.create_supplier_order.side_effect = (
            lambda so: SupplierOrder.from_dict(dict(so.to_dict(), id="so-2")))
        self.repo.create_production_stages.side_effect = lambda stages: stages

        supplier_order, stages = self.workflow.create_supplier_order(AuthUser(id="admin-1"), {
            "product_type": "joggers",
            "quantity": 400,
            "buyer_price": 11,
            "supplier_price": 8.25,
            "stages": [{"name": "Knitting"}, {"name": ""}, {"name": "Dyeing", "target_date": "2024-07-01"}],
        })

        assert supplier_order.margin == 2.75
        assert [s.stage_name for s in stages] == ["Knitting", "Dyeing"]
        assert [s.stage_number for s in stages] == [1, 2]
        assert stages[1].target_date == "2024-07-01"

    def test_admin_can_list_stages(self):
        self.repo.has_role.return_value = True
        self.repo.get_order.return_value = Order(id="o1", buyer_id="someone")
        self.repo.list_supplier_orders_for_order.return_value = [SupplierOrder(id="so-1"), SupplierOrder(id="so-2")]
        self.repo.list_production_stages.return_value = []

        self.workflow.list_stages(AuthUser(id="admin-1"), "o1")

        ids = list(self.repo.list_production_stages.call_args[0][0])
        assert ids == ["so-1", "so-2"]

    def test_update_stage_unknown_stage(self):
        self.repo.get_production_stage.return_value = None

        with pytest.raises(NotFound):
            self.workflow.update_stage(self.buyer, {"stage_id": "missing"})

    def test_update_stage_unassigned_supplier_order(self):
        self.repo.get_production_stage.return_value = ProductionStage(id="st1", supplier_order_id="so-1")
        self.repo.get_supplier_order.return_value = SupplierOrder(id="so-1", supplier_id=None)

        with pytest.raises(Forbidden):
            self.workflow.update_stage(self.buyer, {"stage_id": "st1", "completion_percentage": 10})
