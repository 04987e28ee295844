"""
Sleek Apparels Order Portal
A Flask service for buyer orders, supplier production tracking, shared
production batches and payments.
"""

from flask import Flask, request
import structlog
import logging
import os
from dotenv import load_dotenv
from .utils import sanitize_pii

# Load environment variables
load_dotenv()

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        sanitize_pii,
        structlog.dev.ConsoleRenderer() if os.getenv('FLASK_ENV') == 'development' else structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO)
    ),
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

ALLOWED_HEADERS = (
    'authorization, x-client-info, apikey, content-type, stripe-signature, '
    'svix-id, svix-timestamp, svix-signature'
)

def create_app():
    """Application factory pattern for Flask app creation."""
    app = Flask(__name__)

    # Configuration
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    app.config['DEBUG'] = os.getenv('FLASK_DEBUG', 'false').lower() == 'true'

    @app.after_request
    def after_request(response):
        allowed_origins = os.getenv('ALLOWED_ORIGINS', 'http://localhost:3000').split(',')
        origin = request.headers.get('Origin')
        if origin in allowed_origins or '*' in allowed_origins:
            response.headers['Access-Control-Allow-Origin'] = origin or '*'
        response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
        response.headers['Access-Control-Allow-Headers'] = ALLOWED_HEADERS
        return response

    # Register blueprints
    from .api import api_bp
    from .webhooks import webhooks_bp
    app.register_blueprint(api_bp, url_prefix='/api')
    app.register_blueprint(webhooks_bp, url_prefix='/api/webhooks')

    logger.info("Flask application created successfully")
    return app
