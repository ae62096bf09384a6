"""
Rate limiting configuration for the MangaHook API.

Uses Flask-Limiter to protect API endpoints from abuse.

Rate Limit Tiers:
- Heavy: /api/search/smart, POST /api/sync (parser + ranking, sync kick-off)
- Medium: /api/search, /api/manga (store reads with live fallback)
- Light: /api/sync/<catalog>/status, /api/logs (cheap reads)
- Burst: /api/reader (many page images per chapter, handles cached)
"""

import os
from flask import jsonify
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Initialize limiter (will be attached to app in create_app)
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["5000 per day", "1000 per hour"],
    storage_uri=os.environ.get("RATELIMIT_STORAGE_URI", "memory://"),
    strategy="fixed-window",
    headers_enabled=True,  # Add X-RateLimit-* headers to responses
)


# ==============================================================================
# RATE LIMIT TIERS
# ==============================================================================

HEAVY_LIMIT = "20 per minute"

MEDIUM_LIMIT = "60 per minute"

LIGHT_LIMIT = "120 per minute"

# A chapter is 20-200 page requests fired at once by the reader
BURST_LIMIT = "1200 per minute"


# ==============================================================================
# RATE LIMIT DECORATORS
# ==============================================================================

def limit_heavy(f):
    """Apply heavy rate limit to expensive operations."""
    return limiter.limit(HEAVY_LIMIT)(f)


def limit_medium(f):
    return limiter.limit(MEDIUM_LIMIT)(f)


def limit_light(f):
    return limiter.limit(LIGHT_LIMIT)(f)


def limit_burst(f):
    """Apply burst rate limit to high-volume page image requests."""
    return limiter.limit(BURST_LIMIT)(f)


# ==============================================================================
# ERROR HANDLER
# ==============================================================================

def rate_limit_exceeded_handler(e):
    """JSON 429 with a Retry-After hint."""
    retry_after = getattr(e, 'retry_after', None) or 60
    response = jsonify({
        "error": "Rate limit exceeded",
        "code": "rate_limited",
        "message": str(e.description),
        "retry_after": retry_after
    })
    response.status_code = 429
    response.headers['Retry-After'] = str(retry_after)
    return response


# ==============================================================================
# INITIALIZATION
# ==============================================================================

def init_rate_limiting(app):
    """
    Initialize rate limiting for a Flask app.

    Call this in create_app() after app configuration.
    """
    if app.config.get('DISABLE_RATE_LIMITING'):
        app.config['RATELIMIT_ENABLED'] = False

    limiter.init_app(app)
    app.errorhandler(429)(rate_limit_exceeded_handler)

    return limiter
