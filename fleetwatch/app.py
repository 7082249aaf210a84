"""
FleetWatch Flask Application.

Main entry point for the web application. Initializes:
- Database schema
- Ingestion job (scheduled in a background thread)
- Request cache sweeper and change-driven invalidation
- API routes

Usage:
    python -m fleetwatch.app

Or with gunicorn:
    gunicorn 'fleetwatch.app:create_app()'
"""

import logging
import os
from typing import Optional

from flask import Flask
from flask_cors import CORS

from fleetwatch.api import ingestion_bp, metrics_bp, positions_bp, timeline_bp, vessels_bp
from fleetwatch.config import config
from fleetwatch.exceptions import StoreError
from fleetwatch.services import FleetRuntime

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
)
logger = logging.getLogger(__name__)


def create_app(start_ingestion: bool = True, runtime: Optional[FleetRuntime] = None) -> Flask:
    """
    Application factory for Flask.

    Args:
        start_ingestion: Whether to start scheduled background ingestion.
                        Set to False for testing.
        runtime: Prebuilt service container (built from config if None)

    Returns:
        Configured Flask application instance.
    """
    app = Flask(__name__)

    # Configuration
    app.config['SECRET_KEY'] = config.secret_key

    # Enable CORS for API endpoints
    CORS(app, resources={r'/api/*': {'origins': '*'}})

    # Shared services
    runtime = runtime or FleetRuntime.build()
    runtime.start(start_ingestion=start_ingestion)
    app.extensions['fleetwatch'] = runtime

    # Register API blueprints
    app.register_blueprint(vessels_bp)
    app.register_blueprint(positions_bp)
    app.register_blueprint(timeline_bp)
    app.register_blueprint(ingestion_bp)
    app.register_blueprint(metrics_bp)

    @app.route('/health')
    def health():
        """Simple health check endpoint."""
        return {'status': 'ok'}

    # -------------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------------

    @app.errorhandler(404)
    def not_found(e):
        return {'error': 'Not found'}, 404

    @app.errorhandler(StoreError)
    def store_unavailable(e):
        logger.error(f'Store unavailable: {e}')
        return {'error': 'Data store unavailable', 'detail': str(e)}, 503

    @app.errorhandler(500)
    def server_error(e):
        logger.error(f'Server error: {e}')
        return {'error': 'Internal server error'}, 500

    return app


def run_development_server():
    """Run the development server."""
    app = create_app()

    # Get port from environment or default
    port = int(os.environ.get('PORT', 5000))

    logger.info(f'Starting FleetWatch on http://localhost:{port}')

    try:
        app.run(
            host='0.0.0.0',
            port=port,
            debug=config.debug,
            use_reloader=False,  # Disable reloader to prevent duplicate ingestion threads
        )
    finally:
        app.extensions['fleetwatch'].stop()


if __name__ == '__main__':
    run_development_server()
