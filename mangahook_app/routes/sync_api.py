"""Sync API Blueprint.

Start catalog syncs and poll their progress. Runs happen on a background
thread; POST returns immediately with the progress snapshot.
"""

import hmac
import os

from flask import Blueprint, current_app, jsonify, request

from mangahook_app.extensions import get_services
from mangahook_app.log import log
from mangahook_app.rate_limit import limit_heavy, limit_light
from .validators import error_response, sanitize_string

sync_bp = Blueprint('sync_api', __name__, url_prefix='/api/sync')

SYNC_TYPES = ('full', 'incremental')


def _authorized() -> bool:
    """X-Sync-Secret must match SYNC_API_SECRET when one is configured."""
    secret = current_app.config.get('SYNC_API_SECRET') or os.environ.get('SYNC_API_SECRET')
    if not secret:
        return True
    supplied = request.headers.get('X-Sync-Secret', '')
    return hmac.compare_digest(supplied.encode('utf-8'), secret.encode('utf-8'))


@sync_bp.route('/<catalog>/status', methods=['GET'])
@limit_light
def sync_status(catalog):
    services = get_services()
    services.registry.get(catalog)
    progress = services.sync.get_sync_status(catalog)
    payload = progress.to_dict()
    payload['running'] = services.sync.is_running(catalog)
    return jsonify(payload)


@sync_bp.route('/<catalog>', methods=['POST'])
@limit_heavy
def start_sync(catalog):
    """
    Start a sync.

    Payload: {"type": "full" | "incremental"}  (default incremental)
    Header:  X-Sync-Secret when SYNC_API_SECRET is set
    """
    if not _authorized():
        return error_response('Invalid sync secret', code='unauthorized', status=401)

    data = request.get_json(silent=True) or {}
    sync_type = sanitize_string(data.get('type') or 'incremental', max_length=20).strip().lower()
    if sync_type not in SYNC_TYPES:
        return error_response('Invalid sync type', detail=f"Supported values: {', '.join(SYNC_TYPES)}")

    services = get_services()
    services.registry.get(catalog)

    if sync_type == 'full':
        progress, started = services.sync.start_full_sync(catalog)
    else:
        progress, started = services.sync.start_incremental_sync(catalog)

    if started:
        log(f"🔄 {sync_type.title()} sync of {catalog} requested")
    payload = progress.to_dict()
    payload['started'] = started
    return jsonify(payload), 202 if started else 200
