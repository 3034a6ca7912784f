"""Request parsing helpers shared by the API blueprints."""
import re
from flask import request

_UUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def get_json_payload():
    """JSON body as a dict ({} for a missing or non-object body)."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def parse_bool_arg(name, default=False):
    value = request.args.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def parse_int_arg(name, default, minimum=None, maximum=None):
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        value = default
    if minimum is not None:
        value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def get_pagination(default_limit=20, max_limit=100, limit_name='limit'):
    """(page, limit, offset) from ?page=&limit=."""
    page = parse_int_arg('page', 1, minimum=1)
    limit = parse_int_arg(limit_name, default_limit, minimum=1, maximum=max_limit)
    return page, limit, (page - 1) * limit


def pagination_dict(page, limit, total):
    return {
        'page': page,
        'limit': limit,
        'total': total,
        'totalPages': (total + limit - 1) // limit if limit else 0,
    }


def is_uuid(value):
    return bool(value) and bool(_UUID.match(str(value)))
