"""
Listing helpers shared by the catalog, order and booking endpoints:
query-string filters to Mongo filters, sort/projection parsing, pagination
and document serialization.
"""
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection

from errors import ValidationError

RESERVED_PARAMS = {"select", "sort", "page", "limit", "search"}
OPERATORS = {"gt", "gte", "lt", "lte", "in"}
DEFAULT_LIMIT = 10
MAX_LIMIT = 100

_FILTER_KEY = re.compile(r"^(?P<field>[A-Za-z_][A-Za-z0-9_.]*)(?:\[(?P<op>[a-z]+)\])?$")
_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def ensure_object_id(id_str: str, label: str = "ID") -> ObjectId:
    if not id_str or not ObjectId.is_valid(id_str):
        raise ValidationError(f"Invalid {label} format")
    return ObjectId(id_str)


def coerce_value(raw: str) -> Any:
    lowered = raw.strip().lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if _NUMBER.match(raw.strip()):
        return float(raw) if "." in raw else int(raw)
    return raw


def build_filter(params: Mapping[str, str], allowed_fields: Iterable[str]) -> Dict[str, Any]:
    """Translate query params into a Mongo filter.

    ``field=value`` is equality, ``field[gte]=value`` a comparison and
    ``field[in]=a,b`` a membership test. A ``search`` param switches to a
    ``$text`` query and field filters are ignored.
    """
    search = (params.get("search") or "").strip()
    if search:
        return {"$text": {"$search": search}}

    allowed = set(allowed_fields)
    query: Dict[str, Any] = {}
    for key, raw in params.items():
        if key in RESERVED_PARAMS:
            continue
        m = _FILTER_KEY.match(key)
        if not m or m.group("field") not in allowed:
            raise ValidationError(f"Cannot filter on '{key}'")
        field, op = m.group("field"), m.group("op")
        if op is None:
            if isinstance(query.get(field), dict):
                raise ValidationError(f"Conflicting filters on '{field}'")
            query[field] = coerce_value(raw)
            continue
        if op not in OPERATORS:
            raise ValidationError(f"Unsupported operator '{op}'")
        if field in query and not isinstance(query[field], dict):
            raise ValidationError(f"Conflicting filters on '{field}'")
        if op == "in":
            value = [coerce_value(part) for part in raw.split(",") if part.strip()]
        else:
            value = coerce_value(raw)
        query.setdefault(field, {})[f"${op}"] = value
    return query


def parse_sort(sort: Optional[str], default: str) -> List[Tuple[str, int]]:
    keys = []
    for part in (sort or default).split(","):
        part = part.strip()
        if not part:
            continue
        if part.startswith("-"):
            keys.append((part[1:], DESCENDING))
        else:
            keys.append((part.lstrip("+"), ASCENDING))
    return keys


def parse_select(select: Optional[str]) -> Optional[Dict[str, int]]:
    if not select:
        return None
    fields = [f.strip() for f in select.split(",") if f.strip()]
    return {f: 1 for f in fields} or None


def page_params(page: Optional[str], limit: Optional[str]) -> Tuple[int, int]:
    try:
        page_n = int(page) if page else 1
        limit_n = int(limit) if limit else DEFAULT_LIMIT
    except ValueError:
        raise ValidationError("page and limit must be integers")
    page_n = max(page_n, 1)
    limit_n = min(max(limit_n, 1), MAX_LIMIT)
    return page_n, limit_n


def paginate(
    collection: Collection,
    query: Dict[str, Any],
    sort: List[Tuple[str, int]],
    page: int,
    limit: int,
    projection: Optional[Dict[str, int]] = None,
) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    """Run a paged query. Returns (serialized items, pagination metadata)."""
    total = collection.count_documents(query)
    skip = (page - 1) * limit
    cursor = collection.find(query, projection)
    if sort:
        cursor = cursor.sort(sort)
    items = [serialize_doc(d) for d in cursor.skip(skip).limit(limit)]
    pagination = {
        "page": page,
        "limit": limit,
        "total": total,
        "has_next": skip + limit < total,
        "has_prev": page > 1,
    }
    return items, pagination
