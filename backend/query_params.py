"""
List query normalization.

Turns raw, repeatable HTTP query input into one typed value per field before
anything reaches a database filter. Every malformed value raises
``ValidationError`` at the point it is found; the only lenient field is
``limit``, which falls back to the caller's default instead of failing.

Usage:
    params = normalize_list_params(
        request.args.to_dict(flat=False), ORDER_LIST_SCHEMA, default_limit=10
    )
"""

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Mapping, Optional, Sequence, Tuple, Union

from errors import ValidationError
from search import DEFAULT_SEARCH_MAX_LENGTH, escape_search, validate_search

QueryInput = Mapping[str, Union[str, Sequence[str]]]
RangeValue = Union[float, datetime]

DEFAULT_SORT_FIELD = "createdAt"
SORT_ORDERS = ("asc", "desc")

_DATE_ONLY = re.compile(r"\d{4}-\d{2}-\d{2}")
_TOKEN = re.compile(r"[A-Za-z0-9_-]+")
_DIGITS = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class RangeField:
    """A ``<name>From`` / ``<name>To`` parameter pair bound to one stored field."""

    name: str
    kind: str
    db_field: str

    @property
    def from_param(self) -> str:
        return f"{self.name}From"

    @property
    def to_param(self) -> str:
        return f"{self.name}To"


@dataclass(frozen=True)
class ValueRange:
    start: Optional[RangeValue] = None
    end: Optional[RangeValue] = None

    @property
    def is_empty(self) -> bool:
        return self.start is None and self.end is None


@dataclass(frozen=True)
class ListQuerySchema:
    """What one listing endpoint accepts and how its search is resolved."""

    ranges: Tuple[RangeField, ...] = ()
    sortable_fields: FrozenSet[str] = frozenset({DEFAULT_SORT_FIELD})
    default_sort_field: str = DEFAULT_SORT_FIELD
    token_fields: Tuple[str, ...] = ()
    search_fields: Tuple[str, ...] = ()
    related_search_field: Optional[str] = None
    number_search_field: Optional[str] = None


@dataclass(frozen=True)
class NormalizedListParams:
    page: int = 1
    limit: int = 10
    sort_field: str = DEFAULT_SORT_FIELD
    sort_order: str = "desc"
    ranges: Mapping[str, ValueRange] = field(default_factory=dict)
    filters: Mapping[str, str] = field(default_factory=dict)
    search: Optional[str] = None

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit

    @property
    def search_pattern(self) -> Optional[str]:
        if self.search is None:
            return None
        return escape_search(self.search)

    def to_query(self) -> Dict[str, str]:
        """Render back into query-string form; normalizing it again is a no-op."""
        query = {
            "page": str(self.page),
            "limit": str(self.limit),
            "sortField": self.sort_field,
            "sortOrder": self.sort_order,
        }
        for name, value_range in self.ranges.items():
            if value_range.start is not None:
                query[f"{name}From"] = _format_range_value(value_range.start)
            if value_range.end is not None:
                query[f"{name}To"] = _format_range_value(value_range.end)
        query.update(self.filters)
        if self.search is not None:
            query["search"] = self.search
        return query


def _format_range_value(value: RangeValue) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return repr(value)


def single_value(query: QueryInput, name: str) -> Optional[str]:
    value = query.get(name)
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        if not value:
            return None
        if len(value) > 1:
            raise ValidationError(
                f"{name} must not be an array", field=name, received_value=value
            )
        value = value[0]
    if not isinstance(value, str):
        raise ValidationError(
            f"{name} must be a string", field=name, received_value=value
        )
    return value


def parse_page(value: Optional[str]) -> int:
    if value is None or not value.strip():
        return 1
    candidate = value.strip()
    page = int(candidate) if _DIGITS.fullmatch(candidate) else 0
    if page <= 0:
        raise ValidationError(
            f"page must be a positive integer: {value!r}",
            field="page",
            received_value=value,
        )
    return page


def normalize_limit(
    value: Optional[str], default_limit: int, max_limit: Optional[int] = None
) -> int:
    """Parse ``limit``; bad input falls back to the default, never above it."""
    limit = default_limit
    if value is not None and value.strip():
        candidate = value.strip()
        parsed = int(candidate) if _DIGITS.fullmatch(candidate) else 0
        if parsed > 0:
            limit = parsed
    limit = min(limit, default_limit)
    if max_limit:
        limit = min(limit, max_limit)
    return max(limit, 1)


def parse_sort_order(value: Optional[str], default: str = "desc") -> str:
    if value is None or value == "":
        return default
    if value not in SORT_ORDERS:
        raise ValidationError(
            'sortOrder must be "asc" or "desc"',
            field="sortOrder",
            received_value=value,
        )
    return value


def parse_date(
    value: Optional[str], *, field_name: str, end_of_day: bool = False
) -> Optional[datetime]:
    if value is None:
        return None
    candidate = value.strip()
    if not candidate:
        return None
    normalized = candidate.replace("Z", "+00:00")
    if _DATE_ONLY.fullmatch(candidate):
        normalized = f"{candidate}T00:00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        raise ValidationError(
            f"{field_name} must be a valid date: {value!r}",
            field=field_name,
            received_value=value,
        )
    if end_of_day:
        parsed = parsed.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(
            days=1, milliseconds=-1
        )
    return parsed


def parse_non_negative_number(
    value: Optional[str], *, field_name: str
) -> Optional[float]:
    if value is None or not value.strip():
        return None
    try:
        number = float(value.strip())
    except ValueError:
        number = -1.0
    if not math.isfinite(number) or number < 0:
        raise ValidationError(
            f"{field_name} must be a non-negative number: {value!r}",
            field=field_name,
            received_value=value,
        )
    return number


def parse_token(value: Optional[str], *, field_name: str) -> Optional[str]:
    if value is None or value == "":
        return None
    if not _TOKEN.fullmatch(value):
        raise ValidationError(
            f"{field_name} contains disallowed characters",
            field=field_name,
            received_value=value,
        )
    return value


def _parse_range(query: QueryInput, range_field: RangeField) -> ValueRange:
    raw_start = single_value(query, range_field.from_param)
    raw_end = single_value(query, range_field.to_param)
    if range_field.kind == "date":
        return ValueRange(
            start=parse_date(raw_start, field_name=range_field.from_param),
            end=parse_date(raw_end, field_name=range_field.to_param, end_of_day=True),
        )
    return ValueRange(
        start=parse_non_negative_number(raw_start, field_name=range_field.from_param),
        end=parse_non_negative_number(raw_end, field_name=range_field.to_param),
    )


def normalize_list_params(
    query: QueryInput,
    schema: ListQuerySchema,
    default_limit: int,
    *,
    max_limit: Optional[int] = None,
    search_max_length: int = DEFAULT_SEARCH_MAX_LENGTH,
) -> NormalizedListParams:
    page = parse_page(single_value(query, "page"))
    limit = normalize_limit(single_value(query, "limit"), default_limit, max_limit)
    sort_field = single_value(query, "sortField") or schema.default_sort_field
    sort_order = parse_sort_order(single_value(query, "sortOrder"))

    ranges: Dict[str, ValueRange] = {}
    for range_field in schema.ranges:
        value_range = _parse_range(query, range_field)
        if not value_range.is_empty:
            ranges[range_field.name] = value_range

    filters: Dict[str, str] = {}
    for name in schema.token_fields:
        token = parse_token(single_value(query, name), field_name=name)
        if token is not None:
            filters[name] = token

    search = validate_search(single_value(query, "search"), max_length=search_max_length)

    return NormalizedListParams(
        page=page,
        limit=limit,
        sort_field=sort_field,
        sort_order=sort_order,
        ranges=ranges,
        filters=filters,
        search=search,
    )


ORDER_LIST_SCHEMA = ListQuerySchema(
    ranges=(
        RangeField("totalAmount", "number", "totalAmount"),
        RangeField("orderDate", "date", "createdAt"),
    ),
    sortable_fields=frozenset({"createdAt", "totalAmount", "orderNumber", "status"}),
    token_fields=("status",),
    related_search_field="products",
    number_search_field="orderNumber",
)

CUSTOMER_LIST_SCHEMA = ListQuerySchema(
    ranges=(
        RangeField("registrationDate", "date", "createdAt"),
        RangeField("lastOrderDate", "date", "lastOrderDate"),
        RangeField("totalAmount", "number", "totalAmount"),
        RangeField("orderCount", "number", "orderCount"),
    ),
    sortable_fields=frozenset(
        {"createdAt", "totalAmount", "orderCount", "lastOrderDate", "name"}
    ),
    search_fields=("name",),
    related_search_field="lastOrder",
)
