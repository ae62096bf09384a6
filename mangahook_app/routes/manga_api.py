"""Manga detail and chapter list endpoints.

Ids may be composite ("mangadex:<uuid>", "consumet:asurascans:<slug>"),
bare MangaDex UUIDs, or bare aggregator ids; `?source=` overrides routing.
"""

from flask import Blueprint, jsonify, request

from mangahook_app.extensions import get_services
from mangahook_app.rate_limit import limit_medium
from .validators import sanitize_string, validate_source_id

manga_bp = Blueprint('manga_api', __name__, url_prefix='/api/manga')


@manga_bp.route('/<path:manga_id>/chapters', methods=['GET'])
@limit_medium
def get_chapters(manga_id):
    services = get_services()
    source = validate_source_id(services.registry, request.args.get('source'))
    language = sanitize_string(request.args.get('language') or 'en', max_length=10).strip() or 'en'

    chapters = services.catalog.list_chapters(manga_id, source, language=language)
    return jsonify({
        'chapters': [chapter.to_dict() for chapter in chapters],
        'total': len(chapters),
    })


@manga_bp.route('/<path:manga_id>', methods=['GET'])
@limit_medium
def get_manga(manga_id):
    services = get_services()
    source = validate_source_id(services.registry, request.args.get('source'))
    manga = services.catalog.resolve_details(manga_id, source)
    return jsonify(manga.to_dict())
