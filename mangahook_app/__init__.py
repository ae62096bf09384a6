# Load environment variables FIRST before any other imports
from dotenv import load_dotenv
load_dotenv()

import os
import time
import uuid

from flask import Flask, g, jsonify, request


def _env_bool(name: str, default: str = 'false') -> bool:
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes', 'on')


def create_app(test_config=None, registry=None):
    """
    Create and configure an instance of the Flask application.

    Args:
        test_config: mapping applied over the environment-derived config
        registry: ProviderRegistry to use instead of the process singleton
    """
    app = Flask(__name__, instance_relative_config=True)

    # =============================================================================
    # CONFIGURATION
    # =============================================================================
    app.config.from_mapping(
        JSON_SORT_KEYS=False,
        DATABASE_URL=os.environ.get('DATABASE_URL'),
        SYNC_BATCH_SIZE=int(os.environ.get('SYNC_BATCH_SIZE', '100')),
        SYNC_BATCH_DELAY_MS=int(os.environ.get('SYNC_BATCH_DELAY_MS', '200')),
        SYNC_RATE_LIMIT_RETRIES=int(os.environ.get('SYNC_RATE_LIMIT_RETRIES', '3')),
        SYNC_API_SECRET=os.environ.get('SYNC_API_SECRET'),
        READER_HANDLE_TTL=float(os.environ.get('READER_HANDLE_TTL', '300')),
        SEARCH_PREFERRED_WEIGHT=float(os.environ.get('SEARCH_PREFERRED_WEIGHT', '0.5')),
        DISABLE_RATE_LIMITING=_env_bool('DISABLE_RATE_LIMITING'),
        HOST=os.environ.get('HOST', '127.0.0.1'),
        PORT=int(os.environ.get('PORT', '5000')),
        DEBUG=_env_bool('FLASK_DEBUG'),
    )
    if test_config:
        app.config.update(test_config)

    # Ensure instance folder exists
    try:
        os.makedirs(app.instance_path)
    except OSError:
        pass

    # =============================================================================
    # LOGGING, RATE LIMITING, DATABASE
    # =============================================================================
    from .log import log, debug_log_event
    from .rate_limit import init_rate_limiting
    from .database import reset_engine, get_session_factory, init_database

    init_rate_limiting(app)

    engine = reset_engine(app.config.get('DATABASE_URL'))
    init_database(engine=engine)

    @app.before_request
    def assign_request_id():
        g.request_id = uuid.uuid4().hex[:12]
        g.request_start = time.time()

    @app.after_request
    def debug_request_log(response):
        duration_ms = None
        start_time = getattr(g, 'request_start', None)
        if start_time:
            duration_ms = int((time.time() - start_time) * 1000)
        debug_log_event({
            'event': 'request',
            'request_id': getattr(g, 'request_id', None),
            'method': request.method,
            'path': request.path,
            'query': request.query_string.decode('utf-8', errors='ignore'),
            'status': response.status_code,
            'duration_ms': duration_ms,
            'remote_addr': request.remote_addr,
        })
        return response

    @app.teardown_request
    def debug_exception_log(error=None):
        if not error:
            return
        debug_log_event({
            'event': 'exception',
            'request_id': getattr(g, 'request_id', None),
            'method': request.method if request else None,
            'path': request.path if request else None,
            'error_type': error.__class__.__name__,
            'error': str(error)
        })

    # =============================================================================
    # ERROR MAPPING
    # =============================================================================
    from sources.errors import (
        OperationCancelled, UpstreamError, UpstreamNotFound, ValidationError
    )

    @app.errorhandler(ValidationError)
    def handle_validation_error(error):
        return jsonify({'error': str(error), 'code': 'invalid_request'}), 400

    @app.errorhandler(UpstreamNotFound)
    def handle_not_found(error):
        return jsonify({'error': str(error), 'code': 'not_found'}), 404

    @app.errorhandler(UpstreamError)
    def handle_upstream_error(error):
        log(f"⚠️ Upstream failure ({error.source or 'unknown'}): {error}")
        return jsonify({'error': str(error), 'code': 'upstream_unavailable'}), 503

    @app.errorhandler(OperationCancelled)
    def handle_cancelled(error):
        return jsonify({'error': 'Request cancelled', 'code': 'cancelled'}), 503

    @app.errorhandler(404)
    def handle_unknown_route(error):
        return jsonify({'error': 'Not found', 'code': 'not_found'}), 404

    # =============================================================================
    # APPLICATION SERVICES
    # =============================================================================
    from .extensions import build_services, init_services

    init_services(app, build_services(
        registry=registry,
        session_factory=get_session_factory(),
        handle_ttl=app.config['READER_HANDLE_TTL'],
        preferred_weight=app.config['SEARCH_PREFERRED_WEIGHT'],
        batch_size=app.config['SYNC_BATCH_SIZE'],
        batch_delay_ms=app.config['SYNC_BATCH_DELAY_MS'],
        rate_limit_retries=app.config['SYNC_RATE_LIMIT_RETRIES'],
    ))

    # =============================================================================
    # BLUEPRINTS & ROUTES
    # =============================================================================
    from .routes.main_api import main_bp
    from .routes.search_api import search_bp
    from .routes.sync_api import sync_bp
    from .routes.manga_api import manga_bp
    from .routes.reader_api import reader_bp
    from .routes.cover_api import cover_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(search_bp)
    app.register_blueprint(sync_bp)
    app.register_blueprint(manga_bp)
    app.register_blueprint(reader_bp)
    app.register_blueprint(cover_bp)

    # Register logging callback for sources
    from sources.base import set_log_callback
    set_log_callback(log)

    services = app.extensions['mangahook']
    log(f"📚 MangaHook ready with sources: {', '.join(services.registry.known_sources)}")

    return app

# App instance should be created by the caller (run.py or WSGI entrypoint)
