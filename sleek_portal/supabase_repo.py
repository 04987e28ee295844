"""
Supabase integration layer for the Sleek Apparels order portal.
Talks to PostgREST (tables) and GoTrue (auth) over plain REST with retries
and error handling.
"""

import os
from typing import List, Optional, Dict, Any, Iterable, Union
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
import structlog
from .models import (
    AuthUser, Order, OrderStatusChange, Supplier, SupplierProduct, SupplierOrder,
    ProductionStage, ProductionBatch, BatchContribution, SupplierTerms,
    PaymentRecord, AutomationRule,
)
from .utils import exponential_backoff, utcnow_iso

logger = structlog.get_logger()

Filters = Dict[str, Any]

class SupabaseAPIError(Exception):
    """Raised when PostgREST or Supabase Auth rejects a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

class SupabaseRepository:
    """Repository class for interacting with the hosted Supabase database."""

    def __init__(self):
        base_url = os.getenv('SUPABASE_URL')
        if not base_url:
            raise ValueError("SUPABASE_URL environment variable is required")

        # Handlers enforce ownership themselves, so the service role key is preferred
        self.api_key = os.getenv('SUPABASE_SERVICE_ROLE_KEY') or os.getenv('SUPABASE_ANON_KEY')
        if not self.api_key:
            raise ValueError("SUPABASE_SERVICE_ROLE_KEY environment variable is required")

        base_url = base_url.rstrip('/')
        self.rest_url = f"{base_url}/rest/v1"
        self.auth_url = f"{base_url}/auth/v1"
        self.headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        self.timeout = float(os.getenv('SUPABASE_TIMEOUT', '10'))

        # Session with retry strategy (idempotent methods only)
        self.session = requests.Session()
        retry_strategy = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    @exponential_backoff(max_retries=2, base_delay=0.5,
                         retry_on=(requests.exceptions.ConnectionError, requests.exceptions.Timeout))
    def _send(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
              **kwargs) -> requests.Response:
        """Make HTTP request, raising SupabaseAPIError on an error status."""
        merged_headers = dict(self.headers)
        if headers:
            merged_headers.update(headers)

        response = self.session.request(method, url, headers=merged_headers,
                                        timeout=self.timeout, **kwargs)

        if not response.ok:
            message = self._error_message(response)
            logger.error(f"Supabase API error: {response.status_code} - {message}")
            raise SupabaseAPIError(message, response.status_code)
        return response

    def _make_request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
                      **kwargs) -> Any:
        """Make HTTP request and decode the JSON body."""
        response = self._send(method, url, headers=headers, **kwargs)
        if not response.content:
            return None
        return response.json()

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason
        if isinstance(body, dict):
            return (body.get("message") or body.get("msg") or body.get("error_description")
                    or body.get("error") or str(body))
        return str(body)

    @staticmethod
    def _filter_params(filters: Optional[Filters]) -> Dict[str, str]:
        """
        Translate a filter mapping into PostgREST query parameters.

        {"id": "x"}               -> id=eq.x
        {"id": ["a", "b"]}        -> id=in.(a,b)
        {"qty": ("gte", 10)}      -> qty=gte.10
        {"tags": ("cs", ["a"])}   -> tags=cs.{a}
        {"supplier_id": None}     -> supplier_id=is.null
        """
        params: Dict[str, str] = {}
        for column, value in (filters or {}).items():
            if isinstance(value, tuple):
                op, operand = value
            elif isinstance(value, (list, set, frozenset)):
                op, operand = 'in', value
            else:
                op, operand = 'eq', value

            if operand is None:
                op, operand = 'is', 'null'
            elif op == 'in':
                operand = '(' + ','.join(str(v) for v in operand) + ')'
            elif op in ('cs', 'cd'):
                operand = '{' + ','.join(str(v) for v in operand) + '}'
            elif isinstance(operand, bool):
                operand = 'true' if operand else 'false'

            params[column] = f"{op}.{operand}"
        return params

    @staticmethod
    def _row(record: Any) -> Dict[str, Any]:
        """Serialize a model for insertion, dropping unset columns."""
        data = record.to_dict() if hasattr(record, 'to_dict') else dict(record)
        return {k: v for k, v in data.items() if v is not None}

    # Generic table access
    def select(self, table: str, filters: Optional[Filters] = None, columns: str = "*",
               order: Optional[str] = None, limit: Optional[int] = None,
               offset: Optional[int] = None) -> List[Dict[str, Any]]:
        """Select rows; `order` uses PostgREST syntax, e.g. "stage_number.asc"."""
        params = self._filter_params(filters)
        params["select"] = columns
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)
        if offset:
            params["offset"] = str(offset)
        return self._make_request("GET", f"{self.rest_url}/{table}", params=params) or []

    def select_one(self, table: str, filters: Filters, columns: str = "*") -> Optional[Dict[str, Any]]:
        rows = self.select(table, filters, columns=columns, limit=1)
        return rows[0] if rows else None

    def insert(self, table: str, rows: Union[Dict[str, Any], List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        response = self._make_request(
            "POST", f"{self.rest_url}/{table}", json=rows,
            headers={"Prefer": "return=representation"},
        )
        return response or []

    def insert_one(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        created = self.insert(table, row)
        if not created:
            raise SupabaseAPIError(f"Insert into {table} returned no rows")
        return created[0]

    def update(self, table: str, values: Dict[str, Any], filters: Filters) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError(f"Refusing to update every row of {table}")
        response = self._make_request(
            "PATCH", f"{self.rest_url}/{table}", json=values,
            params=self._filter_params(filters),
            headers={"Prefer": "return=representation"},
        )
        return response or []

    def count(self, table: str, filters: Optional[Filters] = None) -> int:
        """Exact row count from the Content-Range header ("0-0/42", "*/0")."""
        params = self._filter_params(filters)
        params["select"] = "id"
        params["limit"] = "1"
        response = self._send(
            "GET", f"{self.rest_url}/{table}", params=params,
            headers={"Prefer": "count=exact"},
        )
        content_range = response.headers.get("Content-Range", "")
        _, _, total = content_range.partition('/')
        if not total.isdigit():
            raise SupabaseAPIError(f"Missing row count for {table}: {content_range!r}")
        return int(total)

    # Auth
    def get_user(self, access_token: str) -> Optional[AuthUser]:
        """Resolve a user access token; None when the token is rejected."""
        try:
            data = self._make_request(
                "GET", f"{self.auth_url}/user",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except SupabaseAPIError as e:
            if e.status_code in (401, 403, 404):
                return None
            raise
        if not data or not data.get("id"):
            return None
        return AuthUser(id=data["id"], email=data.get("email"), role=data.get("role"))

    def find_auth_user_by_email(self, email: str) -> Optional[AuthUser]:
        data = self._make_request("GET", f"{self.auth_url}/admin/users",
                                  params={"page": 1, "per_page": 1000})
        users = data.get("users", []) if isinstance(data, dict) else (data or [])
        for user in users:
            if (user.get("email") or "").lower() == email.lower():
                return AuthUser(id=user["id"], email=user.get("email"))
        return None

    def has_role(self, user_id: str, role: str) -> bool:
        return self.select_one("user_roles", {"user_id": user_id, "role": role}, columns="role") is not None

    def role_exists(self, role: str) -> bool:
        return bool(self.select("user_roles", {"role": role}, columns="id", limit=1))

    def assign_role(self, user_id: str, role: str) -> None:
        self.insert("user_roles", {"user_id": user_id, "role": role})

    # Orders
    def create_order(self, order: Order) -> Order:
        row = self.insert_one("orders", self._row(order))
        logger.info("Created order", order_id=row["id"], order_number=row.get("order_number"))
        return Order.from_dict(row)

    def get_order(self, order_id: str) -> Optional[Order]:
        row = self.select_one("orders", {"id": order_id})
        return Order.from_dict(row) if row else None

    def update_order(self, order_id: str, values: Dict[str, Any],
                     extra_filters: Optional[Filters] = None) -> Optional[Order]:
        filters = {"id": order_id}
        filters.update(extra_filters or {})
        rows = self.update("orders", values, filters)
        return Order.from_dict(rows[0]) if rows else None

    def update_orders(self, values: Dict[str, Any], filters: Filters) -> int:
        return len(self.update("orders", values, filters))

    def add_status_change(self, change: OrderStatusChange) -> None:
        self.insert("order_status_history", self._row(change))

    # Suppliers
    def get_supplier(self, supplier_id: str) -> Optional[Supplier]:
        row = self.select_one("suppliers", {"id": supplier_id})
        return Supplier.from_dict(row) if row else None

    def list_suppliers(self, country: Optional[str] = None, specialization: Optional[str] = None,
                       verified_only: bool = False, limit: int = 50, offset: int = 0) -> List[Supplier]:
        filters: Filters = {}
        if country:
            filters["country"] = country
        if verified_only:
            filters["verification_status"] = "verified"
        if specialization:
            filters["specializations"] = ("cs", [specialization])

        rows = self.select("suppliers", filters, order="performance_score.desc.nullslast",
                           limit=limit, offset=offset)
        return [Supplier.from_dict(row) for row in rows]

    def list_supplier_products(self, supplier_id: str, limit: int = 10) -> List[SupplierProduct]:
        rows = self.select(
            "marketplace_products",
            {"supplier_id": supplier_id, "status": "approved"},
            columns="id,title,category,base_price,moq,image_urls,rating",
            limit=limit,
        )
        return [SupplierProduct.from_dict(row) for row in rows]

    # Supplier orders and production stages
    def create_supplier_order(self, supplier_order: SupplierOrder) -> SupplierOrder:
        row = self.insert_one("supplier_orders", self._row(supplier_order))
        logger.info(f"Created supplier order {row.get('order_number')}")
        return SupplierOrder.from_dict(row)

    def get_supplier_order(self, supplier_order_id: str) -> Optional[SupplierOrder]:
        row = self.select_one("supplier_orders", {"id": supplier_order_id})
        return SupplierOrder.from_dict(row) if row else None

    def list_supplier_orders_for_order(self, order_id: str) -> List[SupplierOrder]:
        rows = self.select("supplier_orders", {"buyer_order_id": order_id}, order="created_at.asc")
        return [SupplierOrder.from_dict(row) for row in rows]

    def create_production_stages(self, stages: List[ProductionStage]) -> List[ProductionStage]:
        if not stages:
            return []
        rows = self.insert("production_stages", [self._row(stage) for stage in stages])
        return [ProductionStage.from_dict(row) for row in rows]

    def list_production_stages(self, supplier_order_ids: Iterable[str]) -> List[ProductionStage]:
        ids = list(supplier_order_ids)
        if not ids:
            return []
        rows = self.select("production_stages", {"supplier_order_id": ids},
                           order="stage_number.asc")
        return [ProductionStage.from_dict(row) for row in rows]

    def get_production_stage(self, stage_id: str) -> Optional[ProductionStage]:
        row = self.select_one("production_stages", {"id": stage_id})
        return ProductionStage.from_dict(row) if row else None

    def update_production_stage(self, stage_id: str, values: Dict[str, Any]) -> Optional[ProductionStage]:
        rows = self.update("production_stages", values, {"id": stage_id})
        return ProductionStage.from_dict(rows[0]) if rows else None

    # Production batches
    def list_batches(self, statuses: Union[str, List[str]], product_category: Optional[str] = None,
                     closes_before: Optional[str] = None, min_target_quantity: Optional[int] = None,
                     with_contributions: bool = False, order: str = "created_at.desc") -> List[ProductionBatch]:
        filters: Filters = {"batch_status": statuses}
        if product_category:
            filters["product_category"] = product_category
        if closes_before:
            filters["window_closes_at"] = ("lt", closes_before)
        if min_target_quantity is not None:
            filters["target_quantity"] = ("gte", min_target_quantity)

        columns = "*,batch_contributions(*)" if with_contributions else "*"
        rows = self.select("production_batches", filters, columns=columns, order=order)
        return [ProductionBatch.from_dict(row) for row in rows]

    def list_all_batches(self) -> List[ProductionBatch]:
        rows = self.select("production_batches",
                           columns="id,batch_status,current_quantity,target_quantity,product_category")
        return [ProductionBatch.from_dict(row) for row in rows]

    def create_batch(self, batch: ProductionBatch) -> ProductionBatch:
        row = self.insert_one("production_batches", self._row(batch))
        logger.info(f"Opened production batch {row['id']} for {row.get('product_category')}")
        return ProductionBatch.from_dict(row)

    def update_batch(self, batch_id: str, values: Dict[str, Any]) -> None:
        values = dict(values, updated_at=utcnow_iso())
        self.update("production_batches", values, {"id": batch_id})

    def list_batch_contributions(self, batch_id: str) -> List[BatchContribution]:
        rows = self.select("batch_contributions", {"batch_id": batch_id})
        return [BatchContribution.from_dict(row) for row in rows]

    def create_batch_contribution(self, contribution: BatchContribution) -> BatchContribution:
        row = self.insert_one("batch_contributions", self._row(contribution))
        return BatchContribution.from_dict(row)

    def find_cheapest_terms(self, quantity: int) -> Optional[SupplierTerms]:
        rows = self.select(
            "supplier_mou_terms",
            {"status": "active", "moq_per_batch": ("gte", quantity)},
            order="base_price.asc",
            limit=1,
        )
        return SupplierTerms.from_dict(rows[0]) if rows else None

    # Payments
    def add_payment_record(self, record: PaymentRecord) -> None:
        self.insert("payment_history", self._row(record))

    def find_payment_record(self, transaction_id: str) -> Optional[PaymentRecord]:
        row = self.select_one("payment_history", {"transaction_id": transaction_id})
        return PaymentRecord.from_dict(row) if row else None

    # Automation and audit
    def list_active_automation_rules(self) -> List[AutomationRule]:
        rows = self.select("automation_rules", {"active": True}, order="priority.desc.nullslast")
        return [AutomationRule.from_dict(row) for row in rows]

    def log_admin_action(self, action_type: str, entity_type: str, entity_id: Optional[str],
                         details: Dict[str, Any], admin_id: Optional[str] = None) -> None:
        row = {
            "action_type": action_type,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "details": details,
        }
        if admin_id:
            row["admin_id"] = admin_id
        self.insert("admin_actions", row)

    def log_admin_audit(self, admin_id: str, action: str, resource_type: str,
                        resource_id: str, details: Dict[str, Any]) -> None:
        self.insert("admin_audit_logs", {
            "admin_id": admin_id,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "details": details,
        })

    # Leads
    def create_quote(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return self.insert_one("ai_quotes", row)

    def create_contact_submission(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return self.insert_one("sample_requests", row)

    # Email delivery tracking
    def record_email_delivery(self, email_id: str, recipient: str, subject: str) -> None:
        self.insert("email_delivery_log", {
            "resend_email_id": email_id,
            "recipient": recipient,
            "subject": subject,
            "delivery_status": "sent",
        })

    def update_email_delivery(self, email_id: str, values: Dict[str, Any]) -> int:
        return len(self.update("email_delivery_log", values, {"resend_email_id": email_id}))
