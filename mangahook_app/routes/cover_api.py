"""Cover image proxy.

GET /api/cover/<manga_id>/<cover_file>?size=256|512|original streams a
MangaDex cover. Search and details responses point here, so clients never
talk to the upstream cover host.
"""

from flask import Blueprint, Response, request, stream_with_context

from sources.base import DEFAULT_COVER_SIZE
from mangahook_app.extensions import get_services
from mangahook_app.rate_limit import limit_burst
from .reader_api import CACHE_CONTROL
from .validators import sanitize_string

cover_bp = Blueprint('cover_api', __name__, url_prefix='/api/cover')


@cover_bp.route('/<manga_id>/<cover_file>', methods=['GET'])
@limit_burst
def get_cover(manga_id, cover_file):
    size = sanitize_string(request.args.get('size') or DEFAULT_COVER_SIZE, max_length=10).strip().lower()

    content_type, chunks = get_services().reader.iter_cover(manga_id, cover_file, size)
    response = Response(stream_with_context(chunks), mimetype=content_type)
    response.headers['Cache-Control'] = CACHE_CONTROL
    return response
