"""
Catalog queries

Turns client query-string parameters into a bounded MongoDB query and returns
one page of products with pagination metadata. The page and the total are
always computed from the same predicate object.
"""
import math
import re
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple

from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection
from pymongo.database import Database

import config
from database import serialize, to_object_id
from errors import ValidationError

# skip is encoded as a BSON int64
MAX_SKIP = 2 ** 63 - 1

SORTS = {
    "newest": [("created_at", DESCENDING), ("_id", DESCENDING)],
    "price-low": [("price", ASCENDING), ("_id", ASCENDING)],
    "price-high": [("price", DESCENDING), ("_id", ASCENDING)],
    "name": [("name", ASCENDING), ("_id", ASCENDING)],
}


@dataclass
class CatalogQuery:
    predicate: dict
    sort: List[Tuple[str, int]]
    page: int = 1
    limit: int = config.DEFAULT_PAGE_SIZE
    errors: List[str] = field(default_factory=list)


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_positive_int(name: str, value, default: int, errors: List[str]) -> int:
    if _blank(value):
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        errors.append(f"{name}: must be an integer")
        return default
    if number < 1:
        errors.append(f"{name}: must be greater than or equal to 1")
        return default
    return number


def parse_price(name: str, value, errors: List[str]) -> Optional[float]:
    if _blank(value):
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        errors.append(f"{name}: must be a number")
        return None
    if not math.isfinite(number):
        errors.append(f"{name}: must be a finite number")
        return None
    if number < 0:
        errors.append(f"{name}: must be greater than or equal to 0")
        return None
    return number


def parse_bool(name: str, value, errors: List[str]) -> Optional[bool]:
    if _blank(value):
        return None
    lowered = str(value).strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    errors.append(f"{name}: must be 'true' or 'false'")
    return None


def parse_page(params: Mapping, default_limit: int = config.DEFAULT_PAGE_SIZE) -> Tuple[int, int, List[str]]:
    """Coerce ``page``/``limit``. ``limit`` above the maximum is clamped, not rejected."""
    errors: List[str] = []
    page = parse_positive_int("page", params.get("page"), 1, errors)
    limit = min(parse_positive_int("limit", params.get("limit"), default_limit, errors), config.MAX_PAGE_SIZE)
    if (page - 1) * limit > MAX_SKIP:
        errors.append("page: too large")
        page = 1
    return page, limit, errors


def build_predicate(
    category: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    featured: Optional[bool] = None,
    tag: Optional[str] = None,
    include_inactive: bool = False,
) -> dict:
    clauses = []
    if not include_inactive:
        clauses.append({"is_active": True})
    if category:
        # matches a plain string field as well as membership in the categories array
        clauses.append({"categories": category})
    if tag:
        clauses.append({"tags": tag})
    if featured is not None:
        clauses.append({"featured": featured})
    if min_price is not None or max_price is not None:
        price_filter = {}
        if min_price is not None:
            price_filter["$gte"] = min_price
        if max_price is not None:
            price_filter["$lte"] = max_price
        clauses.append({"price": price_filter})
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        clauses.append({"$or": [
            {"name": pattern},
            {"description": pattern},
            {"categories": pattern},
        ]})

    if not clauses:
        return {}
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def compile_query(params: Mapping, include_inactive: bool = False) -> CatalogQuery:
    errors: List[str] = []
    page, limit, page_errors = parse_page(params)
    errors.extend(page_errors)

    min_price = parse_price("minPrice", params.get("minPrice"), errors)
    max_price = parse_price("maxPrice", params.get("maxPrice"), errors)
    if min_price is not None and max_price is not None and min_price > max_price:
        errors.append("minPrice: must not exceed maxPrice")

    featured = parse_bool("featured", params.get("featured"), errors)

    sort_key = params.get("sort")
    if _blank(sort_key):
        sort_key = "newest"
    if sort_key not in SORTS:
        errors.append(f"sort: must be one of {', '.join(SORTS)}")
        sort_key = "newest"

    search = params.get("search")
    predicate = build_predicate(
        category=(params.get("category") or "").strip() or None,
        search=search.strip() if search and search.strip() else None,
        min_price=min_price,
        max_price=max_price,
        featured=featured,
        tag=(params.get("tag") or "").strip() or None,
        include_inactive=include_inactive,
    )
    return CatalogQuery(predicate=predicate, sort=SORTS[sort_key], page=page, limit=limit, errors=errors)


def paginate(collection: Collection, predicate: dict, sort, page: int, limit: int):
    """Fetch one page and the full count under the same predicate."""
    cursor = collection.find(predicate).sort(sort).skip((page - 1) * limit).limit(limit)
    items = [serialize(doc) for doc in cursor]
    total = collection.count_documents(predicate)
    total_pages = math.ceil(total / limit) if total else 0
    pagination = {
        "currentPage": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }
    return items, pagination


def list_products(db: Database, params: Mapping, include_inactive: bool = False) -> dict:
    query = compile_query(params, include_inactive=include_inactive)
    if query.errors:
        raise ValidationError("Invalid query parameters", query.errors)
    products, pagination = paginate(db["product"], query.predicate, query.sort, query.page, query.limit)
    return {"products": products, "pagination": pagination}


def list_categories(db: Database) -> List[str]:
    return sorted(c for c in db["product"].distinct("categories", {"is_active": True}) if c)


def get_product(db: Database, id_or_slug: str) -> Optional[dict]:
    oid = to_object_id(id_or_slug)
    lookup = {"_id": oid} if oid else {"slug": id_or_slug}
    return serialize(db["product"].find_one({**lookup, "is_active": True}))
