"""
REST API endpoints for the Sleek Apparels order portal.
"""

import os
import functools
from datetime import datetime
from flask import Blueprint, request, jsonify, g
from werkzeug.exceptions import HTTPException
import structlog
from .errors import ApiError, Unauthorized, NotFound
from .supabase_repo import SupabaseRepository, SupabaseAPIError
from .payments import StripeClient, StripeAPIError, PaymentService
from .mailer import Mailer
from .workflow import OrderWorkflow
from .batching import BatchEngine
from .automation import AutomationRunner
from .leads import LeadService

logger = structlog.get_logger()

# Create API blueprint
api_bp = Blueprint('api', __name__)

# Lazily created clients, shared by all requests
supabase_repo = None
stripe_client = None
mailer = None

def get_supabase_repo():
    """Get or create Supabase repository instance."""
    global supabase_repo
    if supabase_repo is None:
        supabase_repo = SupabaseRepository()
    return supabase_repo

def get_stripe_client():
    """Get or create Stripe client instance."""
    global stripe_client
    if stripe_client is None:
        stripe_client = StripeClient()
    return stripe_client

def get_mailer():
    """Get or create the mailer; None when Resend is not configured."""
    global mailer
    if mailer is None and os.getenv('RESEND_API_KEY'):
        mailer = Mailer(get_supabase_repo())
    return mailer

def get_workflow():
    return OrderWorkflow(get_supabase_repo())

def error_response(message: str, status_code: int):
    return jsonify({"success": False, "error": message}), status_code

@api_bp.errorhandler(Exception)
def handle_api_error(error):
    """Global error handler for API endpoints."""
    if isinstance(error, ApiError):
        logger.warning(f"Request rejected ({error.status_code}): {error.message}", path=request.path)
        return error_response(error.message, error.status_code)

    if isinstance(error, HTTPException):
        logger.warning(f"HTTP error {error.code}: {error.description}", path=request.path)
        return error_response(error.description or error.name, error.code or 500)

    logger.error(f"API Error: {str(error)}", exc_info=True, path=request.path)

    if isinstance(error, SupabaseAPIError):
        return error_response(f"Database error: {error}", 500)
    if isinstance(error, StripeAPIError):
        return error_response(f"Payment provider error: {error}", 500)
    return error_response(str(error) or "Internal server error", 500)

def require_user(view):
    """Resolve the bearer token to a Supabase user and store it on `g.user`."""
    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        auth_header = request.headers.get('Authorization', '')
        if not auth_header:
            raise Unauthorized("Authorization required")

        token = auth_header[7:] if auth_header.lower().startswith('bearer ') else auth_header
        user = get_supabase_repo().get_user(token.strip()) if token.strip() else None
        if user is None:
            raise Unauthorized("Unauthorized")

        g.user = user
        return view(*args, **kwargs)
    return wrapper

def require_admin(view):
    """Like require_user, additionally requiring the admin role."""
    @require_user
    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        get_workflow().require_admin(g.user)
        return view(*args, **kwargs)
    return wrapper

def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ApiError("Request body must be a JSON object")
    return data

@api_bp.route('/healthz', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": "1.0.0"
    }), 200

# Orders

@api_bp.route('/orders', methods=['POST'])
@require_user
def create_order():
    """Create a buyer order awaiting a quote."""
    order = get_workflow().create_order(g.user, json_body())
    logger.info("Order created", order_id=order.id, order_number=order.order_number)
    return jsonify({"success": True, "data": order.to_dict()})

@api_bp.route('/orders/status', methods=['POST'])
@require_user
def update_order_status():
    """
    Update an order's workflow status.

    Body: order_id, status, optional notes (recorded in the status history).
    """
    data = json_body()
    order = get_workflow().update_status(g.user, data.get('order_id'), data.get('status'), data.get('notes'))
    return jsonify({"success": True, "data": order.to_dict()})

@api_bp.route('/orders/assign-supplier', methods=['POST'])
@require_admin
def assign_supplier():
    data = json_body()
    order, supplier_order = get_workflow().assign_supplier(
        data.get('order_id'),
        data.get('supplier_id'),
        data.get('supplier_price'),
        assigned_by=g.user.id,
        instructions=data.get('special_instructions'),
    )
    return jsonify({
        "success": True,
        "data": {
            "order": order.to_dict(),
            "supplier_order": supplier_order.to_dict(),
        }
    })

@api_bp.route('/supplier-orders', methods=['POST'])
@require_admin
def create_supplier_order():
    """Create a supplier order, seeding its production stages."""
    supplier_order, stages = get_workflow().create_supplier_order(g.user, json_body())
    return jsonify({
        "success": True,
        "data": {
            "supplier_order": supplier_order.to_dict(),
            "stages": [stage.to_dict() for stage in stages],
        }
    })

# Production stages

@api_bp.route('/production-stages', methods=['GET'])
@require_user
def get_production_stages():
    stages = get_workflow().list_stages(g.user, request.args.get('order_id'))
    return jsonify({"success": True, "data": [stage.to_dict() for stage in stages]})

@api_bp.route('/production-stages/update', methods=['POST'])
@require_user
def update_production_stage():
    """
    Report progress on a production stage.

    Body: stage_id, optional completion_percentage (0-100), notes, photo_url.
    """
    stage = get_workflow().update_stage(g.user, json_body())
    return jsonify({"success": True, "data": stage.to_dict()})

# Supplier directory

@api_bp.route('/suppliers', methods=['GET'])
def get_suppliers():
    """
    List suppliers, best performers first.

    Query Parameters:
        country: Filter by country
        specialization: Filter by specialization (e.g. knitwear)
        verified_only: 'true' to list verified suppliers only
        limit: Maximum number of results (default 50)
        offset: Pagination offset (default 0)
    """
    try:
        limit = int(request.args.get('limit', 50))
        offset = int(request.args.get('offset', 0))
    except ValueError:
        raise ApiError("limit and offset must be integers")
    if limit < 1 or offset < 0:
        raise ApiError("limit must be positive and offset non-negative")

    suppliers = get_supabase_repo().list_suppliers(
        country=request.args.get('country'),
        specialization=request.args.get('specialization'),
        verified_only=request.args.get('verified_only', 'false').lower() == 'true',
        limit=min(limit, 200),
        offset=offset,
    )
    return jsonify({"success": True, "data": [supplier.to_dict() for supplier in suppliers]})

@api_bp.route('/suppliers/<supplier_id>', methods=['GET'])
def get_supplier_detail(supplier_id: str):
    """Supplier profile with its approved marketplace products."""
    repo = get_supabase_repo()
    supplier = repo.get_supplier(supplier_id)
    if not supplier:
        raise NotFound("Supplier not found")

    data = supplier.to_dict()
    data["products"] = [product.to_dict() for product in repo.list_supplier_products(supplier_id)]
    return jsonify({"success": True, "data": data})

# Payments

@api_bp.route('/payments/intent', methods=['POST'])
@require_user
def create_payment_intent():
    service = PaymentService(get_supabase_repo(), get_stripe_client())
    return jsonify({"success": True, "data": service.create_intent(json_body())})

@api_bp.route('/payments/process', methods=['POST'])
@require_user
def process_payment():
    service = PaymentService(get_supabase_repo(), get_stripe_client())
    return jsonify({"success": True, "data": service.process(g.user, json_body())})

# Batches

@api_bp.route('/batches/process-order', methods=['POST'])
@require_user
def process_batch_order():
    """Place a small order into a shared production batch."""
    body = json_body()
    data = body.get('data') if isinstance(body.get('data'), dict) else body
    result = BatchEngine(get_supabase_repo()).process_order(g.user, data)
    return jsonify(dict(success=True, **result))

@api_bp.route('/batches/orchestrate', methods=['POST'])
@require_admin
def orchestrate_batches():
    """Confirm, flag or cancel batches whose filling window is closing."""
    results = BatchEngine(get_supabase_repo()).orchestrate()
    return jsonify({"success": True, "processed": len(results), "results": results})

@api_bp.route('/batches', methods=['GET'])
@require_user
def get_active_batches():
    batches = BatchEngine(get_supabase_repo()).active_batches(request.args.get('category'))
    data = []
    for batch in batches:
        item = batch.to_dict()
        item["fill_percentage"] = batch.fill_percentage
        data.append(item)
    return jsonify({"success": True, "data": data})

@api_bp.route('/batches/statistics', methods=['GET'])
@require_admin
def get_batch_statistics():
    batches = get_supabase_repo().list_all_batches()
    return jsonify({"success": True, "data": BatchEngine.statistics(batches)})

# Automation

@api_bp.route('/automation/execute', methods=['POST'])
@require_admin
def execute_automation_rules():
    logger.info("Executing automation rules")
    runner = AutomationRunner(get_supabase_repo(), get_workflow(), get_mailer())
    results = runner.execute_all(admin_id=g.user.id)
    return jsonify({"success": True, "results": results})

# Public forms

@api_bp.route('/quotes', methods=['POST'])
def submit_quote_request():
    quote = LeadService(get_supabase_repo(), get_mailer()).submit_quote_request(json_body())
    return jsonify({
        "success": True,
        "message": "Quote request submitted successfully",
        "quote": quote,
    })

@api_bp.route('/contact', methods=['POST'])
def submit_contact_form():
    result = LeadService(get_supabase_repo(), get_mailer()).submit_contact_form(json_body())
    return jsonify({
        "success": True,
        "message": "Contact form submitted successfully",
        "id": result["id"],
    })

@api_bp.route('/admin/setup', methods=['POST'])
def setup_first_admin():
    """Grant the first admin role; refused once any admin exists."""
    user_id = LeadService(get_supabase_repo()).setup_first_admin(json_body().get('email'))
    return jsonify({
        "success": True,
        "message": "Admin role successfully assigned",
        "user_id": user_id,
    })
