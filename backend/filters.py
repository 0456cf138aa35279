"""
Filter builder.

Turns ``NormalizedListParams`` into a ``FilterDescriptor``: a storage-agnostic
set of predicates (ANDed together) plus sort and pagination. Only the
repository knows how to turn a descriptor into real query syntax.
"""

import math
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence, Tuple, Union

from query_params import ListQuerySchema, NormalizedListParams
from search import search_as_integer


@dataclass(frozen=True)
class Equals:
    field: str
    value: Any


@dataclass(frozen=True)
class Between:
    """Inclusive range; a missing bound is left open."""

    field: str
    start: Any = None
    end: Any = None


@dataclass(frozen=True)
class Matches:
    """Case-insensitive match against an already-escaped pattern."""

    field: str
    pattern: str


@dataclass(frozen=True)
class InSet:
    field: str
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class AnyOf:
    predicates: Tuple["Predicate", ...]


Predicate = Union[Equals, Between, Matches, InSet, AnyOf]

# Given an escaped search pattern, return ids of related documents that match.
RelatedLookup = Callable[[str], Sequence[Any]]


@dataclass(frozen=True)
class FilterDescriptor:
    predicates: Tuple[Predicate, ...] = ()
    sort: Tuple[Tuple[str, str], ...] = ()
    page: int = 1
    limit: int = 10

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def total_pages(total_count: int, limit: int) -> int:
    if limit <= 0:
        return 0
    return math.ceil(total_count / limit)


def resolve_sort_field(sort_field: Optional[str], schema: ListQuerySchema) -> str:
    if sort_field and sort_field in schema.sortable_fields:
        return sort_field
    return schema.default_sort_field


def build_range_predicates(
    params: NormalizedListParams, schema: ListQuerySchema
) -> Tuple[Predicate, ...]:
    predicates = []
    for range_field in schema.ranges:
        value_range = params.ranges.get(range_field.name)
        if value_range is None or value_range.is_empty:
            continue
        predicates.append(
            Between(range_field.db_field, start=value_range.start, end=value_range.end)
        )
    return tuple(predicates)


def build_search_predicate(
    params: NormalizedListParams,
    schema: ListQuerySchema,
    related_lookup: Optional[RelatedLookup] = None,
) -> Optional[AnyOf]:
    """Alternate direct matches with membership in the related ids found first."""
    pattern = params.search_pattern
    if pattern is None:
        return None

    alternatives = [Matches(field_name, pattern) for field_name in schema.search_fields]

    if schema.related_search_field and related_lookup is not None:
        related_ids = tuple(related_lookup(pattern))
        alternatives.append(InSet(schema.related_search_field, related_ids))

    if schema.number_search_field:
        number = search_as_integer(params.search)
        if number is not None:
            alternatives.append(Equals(schema.number_search_field, number))

    if not alternatives:
        return None
    return AnyOf(tuple(alternatives))


def build_filter(
    params: NormalizedListParams,
    schema: ListQuerySchema,
    *,
    related_lookup: Optional[RelatedLookup] = None,
    base: Iterable[Predicate] = (),
) -> FilterDescriptor:
    predicates = list(base)

    for name, value in params.filters.items():
        predicates.append(Equals(name, value))

    predicates.extend(build_range_predicates(params, schema))

    search_predicate = build_search_predicate(params, schema, related_lookup)
    if search_predicate is not None:
        predicates.append(search_predicate)

    sort_field = resolve_sort_field(params.sort_field, schema)
    sort = ((sort_field, params.sort_order), ("_id", params.sort_order))

    return FilterDescriptor(
        predicates=tuple(predicates),
        sort=sort,
        page=params.page,
        limit=params.limit,
    )
