"""
Presence tracker Flask application.

Web entry point. create_app() wires:
- Stores (JSON caches + durable store)
- Live ingestion pipeline
- API routes

Usage:
    python -m presence.app

Or with gunicorn (single worker, the poll loop runs in-process):
    gunicorn -w 1 'presence.app:create_app()'
"""

import atexit
import logging
from typing import Optional

from flask import Flask
from flask_cors import CORS

from presence.api import sessions_bp, stats_bp
from presence.config import config
from presence.ingestion.pipeline import build_pipeline
from presence.log import configure_logging
from presence.wiring import Services, build_services

logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None, start_ingestion: bool = True) -> Flask:
    """
    Build the Flask app around a set of services.

    Args:
        services: Pre-built collaborators (tests inject in-memory stores).
                  Built from configuration when None.
        start_ingestion: Start the live poll loop in a background thread.
                        Set to False for testing.

    Returns:
        Flask app with the session and stats blueprints registered.
    """
    configure_logging()

    app = Flask(__name__)

    # Configuration
    app.config['SECRET_KEY'] = config.secret_key

    # Dashboards on other origins read the API
    CORS(app, resources={r'/api/*': {'origins': '*'}})

    # Initialize stores
    if services is None:
        logger.info('Loading caches and initializing database...')
        services = build_services(load_state=True)
    app.config['SERVICES'] = services

    # Register API blueprints
    app.register_blueprint(sessions_bp)
    app.register_blueprint(stats_bp)

    # Live poll loop
    app.config['INGESTION_PIPELINE'] = None
    if start_ingestion:
        services.writer.start()
        pipeline = build_pipeline(services)
        pipeline.start_background()
        app.config['INGESTION_PIPELINE'] = pipeline

        def shutdown():
            pipeline.stop()
            services.shutdown()

        atexit.register(shutdown)
        logger.info(f'Ingestion started (interval={pipeline.interval}s)')

    @app.route('/health')
    def health():
        """Liveness probe; does not touch the stores."""
        return {'status': 'ok'}

    # -------------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------------

    @app.errorhandler(404)
    def not_found(e):
        return {'error': 'Not found'}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error(f'Server error: {e}')
        return {'error': 'Internal server error'}, 500

    return app


def run_development_server():
    """Serve the API and the poll loop with the Flask dev server."""
    app = create_app()

    logger.info(f'Starting presence tracker on http://localhost:{config.port}')
    logger.info(f'Open sessions: http://localhost:{config.port}/api/sessions')

    app.run(
        host='0.0.0.0',
        port=config.port,
        debug=config.debug,
        use_reloader=False,  # the reloader would start a second poll loop
    )


if __name__ == '__main__':
    run_development_server()
