"""
SCOPED LIST QUERIES

Builds the MongoDB predicate, sort and page window for listing cash
transactions on behalf of a caller.

City scoping for restricted callers (non-empty allowed_cities, no full access):
- explicit city inside the allowed set   -> filtered to that city
- explicit city outside the allowed set  -> predicate that matches nothing
- no city                                -> filtered to the allowed set

The forbidden-city case returns an empty page instead of an error so a
caller cannot probe which cities exist.

Callers with neither full access nor a city restriction only list their own
records: creator id, or creator display name for rows written before the id
was recorded.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING

from cashdesk.core.exceptions import ValidationError
from cashdesk.core.financial_precision import MAX_CITY_LENGTH
from cashdesk.models import CallerIdentity, CashListQuery, TransactionKind
from cashdesk.permissions import has_full_access

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 50
MAX_LIMIT = 100

# Newest first; id breaks ties between rows created in the same instant
SORT_ORDER: List[Tuple[str, int]] = [("created_at", DESCENDING), ("_id", DESCENDING)]

# `$in: []` can never match, which keeps the query valid but empty
MATCH_NOTHING: Dict[str, Any] = {"$in": []}


@dataclass(frozen=True)
class ScopedQuery:
    predicate: Dict[str, Any]
    page: int
    limit: int
    sort: List[Tuple[str, int]] = field(default_factory=lambda: list(SORT_ORDER))

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def validate_page_window(page: Optional[int], limit: Optional[int]) -> Tuple[int, int]:
    """Reject (never clamp) out-of-range page numbers and page sizes"""
    page = DEFAULT_PAGE if page is None else page
    limit = DEFAULT_LIMIT if limit is None else limit

    if isinstance(page, bool) or not isinstance(page, int) or page < 1:
        raise ValidationError("'page' must be an integer >= 1", field="page")
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_LIMIT:
        raise ValidationError(f"'limit' must be an integer between 1 and {MAX_LIMIT}", field="limit")
    return page, limit


def resolve_kind(filters: CashListQuery) -> Optional[TransactionKind]:
    if filters.type and filters.name and filters.type != filters.name:
        raise ValidationError("'type' and 'name' must not disagree", field="type")
    return filters.type or filters.name


def ownership_clauses(caller: CallerIdentity) -> List[Dict[str, Any]]:
    clauses: List[Dict[str, Any]] = [{"created_by_id": caller.user_id}]
    if caller.display_name:
        clauses.append({"created_by_id": None, "created_by_display_name": caller.display_name})
    return clauses


class ScopedQueryBuilder:
    """Composes list filters according to the caller's scope"""

    def build(self, filters: CashListQuery, caller: CallerIdentity) -> ScopedQuery:
        page, limit = validate_page_window(filters.page, filters.limit)
        predicate: Dict[str, Any] = {}

        kind = resolve_kind(filters)
        if kind is not None:
            predicate["kind"] = kind.value

        city = filters.city
        if city is not None and len(city) > MAX_CITY_LENGTH:
            raise ValidationError(
                f"'city' cannot be longer than {MAX_CITY_LENGTH} characters", field="city"
            )

        if has_full_access(caller):
            if city:
                predicate["city"] = city
        elif not caller.is_city_restricted:
            if city:
                predicate["city"] = city
            predicate["$or"] = ownership_clauses(caller)
        elif city:
            predicate["city"] = city if city in caller.allowed_cities else dict(MATCH_NOTHING)
        else:
            predicate["city"] = {"$in": sorted(caller.allowed_cities)}

        return ScopedQuery(predicate=predicate, page=page, limit=limit)
