"""Lightweight request validation helpers.

Every parser here raises ValidationError, which the app maps to a 400
`{"error": ..., "code": "invalid_request"}` response.
"""

from enum import Enum
from typing import Any, FrozenSet, List, Optional, Type, TypeVar

from flask import jsonify

from sources.errors import ValidationError

E = TypeVar('E', bound=Enum)

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def error_response(message: str, code: str = 'invalid_request', status: int = 400, detail: Optional[str] = None):
    payload = {'error': message, 'code': code}
    if detail:
        payload['detail'] = detail
    return jsonify(payload), status


def sanitize_string(value: Any, max_length: int = 500) -> str:
    """Drop control characters and cap length. Non-strings become ''."""
    if not isinstance(value, str):
        return ""
    return ''.join(c for c in value if c >= ' ')[:max_length]


def coerce_list(value: Any) -> List[str]:
    """
    Accept a list, or a comma separated string (query strings), or None.

        "a,b , c" -> ["a", "b", "c"]
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = value
    else:
        items = str(value).split(',')
    return [str(item).strip() for item in items if item is not None and str(item).strip()]


def parse_int(value: Any, name: str, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer") from None


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or '').strip().lower() in TRUE_VALUES


def parse_enum(enum_cls: Type[E], value: Any, name: str) -> E:
    """Case-insensitive lookup by value or by member name."""
    text = str(value).strip()
    for member in enum_cls:
        if text.lower() in (str(member.value).lower(), member.name.lower()):
            return member
    choices = ', '.join(str(m.value) for m in enum_cls)
    raise ValidationError(f"Invalid {name}: {text} (expected one of {choices})")


def parse_enum_set(enum_cls: Type[E], value: Any, name: str) -> FrozenSet[E]:
    return frozenset(parse_enum(enum_cls, item, name) for item in coerce_list(value))


def validate_source_id(registry, source_id: Optional[str]) -> Optional[str]:
    """Known source id, or None when absent. Unknown ids raise."""
    if not source_id:
        return None
    registry.get(source_id)
    return source_id
