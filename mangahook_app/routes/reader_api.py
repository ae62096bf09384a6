"""Reader page proxy.

GET /api/reader/<chapter_id>/page/<page_index>?dataSaver=true streams the
page image. Upstream image hosts are never exposed to the client.
"""

from flask import Blueprint, Response, request, stream_with_context

from sources.base import PageVariant
from mangahook_app.extensions import get_services
from mangahook_app.rate_limit import limit_burst
from .validators import parse_bool

reader_bp = Blueprint('reader_api', __name__, url_prefix='/api/reader')

# Page images for a given chapter never change
CACHE_CONTROL = 'public, max-age=86400'


@reader_bp.route('/<path:chapter_id>/page/<page_index>', methods=['GET'])
@limit_burst
def get_page(chapter_id, page_index):
    services = get_services()
    variant = PageVariant.from_flag(parse_bool(request.args.get('dataSaver')))

    content_type, chunks = services.reader.iter_page(chapter_id, page_index, variant)
    response = Response(stream_with_context(chunks), mimetype=content_type)
    response.headers['Cache-Control'] = CACHE_CONTROL
    return response
