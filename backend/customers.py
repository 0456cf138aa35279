from typing import Callable, Dict, List

from pymongo import ReturnDocument

from errors import NotFoundError, ValidationError
from filters import Matches, build_filter
from orders import email_regex, normalize_phone, sanitize_text
from query_params import CUSTOMER_LIST_SCHEMA, QueryInput, normalize_list_params
from repository import MongoRepository, Page, parse_object_id
from settings import Settings

UPDATABLE_FIELDS = ("name", "email", "phone")
NAME_MAX_LENGTH = 100
RELATED_SEARCH_LIMIT = 200


def related_order_lookup(db) -> Callable[[str], List]:
    orders = MongoRepository(db.orders)
    return lambda pattern: orders.find_ids(
        Matches("deliveryAddress", pattern), limit=RELATED_SEARCH_LIMIT
    )


def list_customers(db, query: QueryInput, settings: Settings) -> Page:
    params = normalize_list_params(
        query,
        CUSTOMER_LIST_SCHEMA,
        settings.default_list_limit,
        max_limit=settings.max_list_limit,
        search_max_length=settings.search_max_length,
    )
    descriptor = build_filter(
        params, CUSTOMER_LIST_SCHEMA, related_lookup=related_order_lookup(db)
    )
    return MongoRepository(db.users).fetch_page(descriptor)


def get_customer(db, customer_id) -> Dict:
    customer = db.users.find_one(
        {"_id": parse_object_id(customer_id, label="customer identifier")}
    )
    if not customer:
        raise NotFoundError("Customer not found.")
    return customer


def clean_customer_update(payload, settings: Settings) -> Dict:
    """Keep only editable fields; operator keys and dotted paths are refused."""
    if not isinstance(payload, dict):
        raise ValidationError("Customer update must be an object.")

    updates: Dict[str, str] = {}
    for key, value in payload.items():
        key = str(key)
        if key.startswith("$") or "." in key:
            raise ValidationError(f"{key} is not an allowed field", field=key)
        if key not in UPDATABLE_FIELDS:
            continue
        if not isinstance(value, str):
            raise ValidationError(f"{key} must be a string", field=key)
        updates[key] = value

    if "name" in updates:
        updates["name"] = sanitize_text(updates["name"], NAME_MAX_LENGTH)
    if "email" in updates:
        email = updates["email"].strip().lower()
        if not email_regex.match(email):
            raise ValidationError("email must be a valid address", field="email")
        updates["email"] = sanitize_text(email, settings.email_max_length)
    if "phone" in updates:
        updates["phone"] = normalize_phone(updates["phone"], settings.phone_region)

    if not updates:
        raise ValidationError("Nothing to update.")
    return updates


def update_customer(db, customer_id, payload, settings: Settings) -> Dict:
    object_id = parse_object_id(customer_id, label="customer identifier")
    updates = clean_customer_update(payload, settings)
    updated = db.users.find_one_and_update(
        {"_id": object_id},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFoundError("Customer not found.")
    return updated


def delete_customer(db, customer_id) -> Dict:
    deleted = db.users.find_one_and_delete(
        {"_id": parse_object_id(customer_id, label="customer identifier")}
    )
    if not deleted:
        raise NotFoundError("Customer not found.")
    return deleted


def serialize_customer(document) -> Dict:
    if not document:
        return {}
    serialized = {
        "id": str(document.get("_id")),
        "name": document.get("name") or "",
        "email": document.get("email") or "",
        "phone": document.get("phone") or "",
        "role": document.get("role") or "customer",
        "totalAmount": document.get("totalAmount") or 0,
        "orderCount": document.get("orderCount") or 0,
        "orders": [str(order_id) for order_id in document.get("orders") or []],
        "lastOrder": str(document["lastOrder"]) if document.get("lastOrder") else None,
    }
    for key in ("createdAt", "lastOrderDate"):
        value = document.get(key)
        serialized[key] = value.isoformat() + "Z" if value else None
    return serialized
