from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING

from errors import BadRequestError
from filters import (
    AnyOf,
    Between,
    Equals,
    FilterDescriptor,
    InSet,
    Matches,
    Predicate,
    total_pages,
)


@dataclass(frozen=True)
class Page:
    items: List[Dict]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return total_pages(self.total, self.limit)


def parse_object_id(value, *, label: str = "identifier") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        raise BadRequestError(f"Invalid {label}.")


def predicate_to_mongo(predicate: Predicate) -> Dict[str, Any]:
    if isinstance(predicate, Equals):
        return {predicate.field: predicate.value}
    if isinstance(predicate, Between):
        bounds: Dict[str, Any] = {}
        if predicate.start is not None:
            bounds["$gte"] = predicate.start
        if predicate.end is not None:
            bounds["$lte"] = predicate.end
        return {predicate.field: bounds}
    if isinstance(predicate, Matches):
        return {predicate.field: {"$regex": predicate.pattern, "$options": "i"}}
    if isinstance(predicate, InSet):
        return {predicate.field: {"$in": list(predicate.values)}}
    if isinstance(predicate, AnyOf):
        return {"$or": [predicate_to_mongo(inner) for inner in predicate.predicates]}
    raise TypeError(f"Unsupported predicate: {predicate!r}")


def descriptor_to_query(descriptor: FilterDescriptor) -> Dict[str, Any]:
    clauses = [predicate_to_mongo(predicate) for predicate in descriptor.predicates]
    if not clauses:
        return {}
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def descriptor_to_sort(descriptor: FilterDescriptor):
    return [
        (field_name, DESCENDING if order == "desc" else ASCENDING)
        for field_name, order in descriptor.sort
    ]


class MongoRepository:
    """Runs filter descriptors against one PyMongo collection."""

    def __init__(self, collection):
        self.collection = collection

    def fetch_page(self, descriptor: FilterDescriptor) -> Page:
        query = descriptor_to_query(descriptor)
        cursor = self.collection.find(query)
        sort = descriptor_to_sort(descriptor)
        if sort:
            cursor = cursor.sort(sort)
        cursor = cursor.skip(descriptor.skip).limit(descriptor.limit)
        items = list(cursor)
        total = self.collection.count_documents(query)
        return Page(items=items, total=total, page=descriptor.page, limit=descriptor.limit)

    def find_ids(self, predicate: Predicate, limit: Optional[int] = None) -> List[Any]:
        cursor = self.collection.find(predicate_to_mongo(predicate), {"_id": 1})
        if limit:
            cursor = cursor.limit(limit)
        return [document["_id"] for document in cursor]

    def find_by_ids(self, ids) -> Dict[str, Dict]:
        if not ids:
            return {}
        cursor = self.collection.find({"_id": {"$in": list(ids)}})
        return {str(document["_id"]): document for document in cursor}


def serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        text = value.isoformat()
        return text if value.tzinfo else text + "Z"
    if isinstance(value, dict):
        return {
            ("id" if key == "_id" else key): serialize_value(inner)
            for key, inner in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [serialize_value(inner) for inner in value]
    return value


def serialize_page(page: Page, key: str, total_key: str, serializer=serialize_value) -> Dict:
    return {
        key: [serializer(document) for document in page.items],
        "pagination": {
            total_key: page.total,
            "totalPages": page.total_pages,
            "currentPage": page.page,
            "pageSize": page.limit,
        },
    }
