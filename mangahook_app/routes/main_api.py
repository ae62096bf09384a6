"""Service-level endpoints: health and live log tail."""

import queue

from flask import Blueprint, jsonify

from mangahook_app.database import check_database_connection
from mangahook_app.extensions import get_services
from mangahook_app.log import msg_queue
from mangahook_app.rate_limit import limit_light

main_bp = Blueprint('main_api', __name__)


@main_bp.route('/api/health')
@limit_light
def health():
    services = get_services()
    database_ok = check_database_connection()
    return jsonify({
        'status': 'ok' if database_ok else 'degraded',
        'database': database_ok,
        'sources': list(services.registry.known_sources),
        'reader_cache': services.reader.cache.stats(),
    }), 200 if database_ok else 503


@main_bp.route('/api/logs')
@limit_light
def get_logs():
    """Get pending log messages (sync progress etc.)."""
    messages = []
    while not msg_queue.empty():
        try:
            messages.append(msg_queue.get_nowait())
        except queue.Empty:
            break
    return jsonify({'logs': messages})
