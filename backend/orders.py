"""
Orders: price verification on checkout, plus the admin and owner views.

Prices are never taken from the client. Every checkout reloads the catalog,
recomputes the basket from authoritative prices and refuses the order when the
claimed total differs.
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import bleach
import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat
from pymongo import ReturnDocument

from auth import Identity
from errors import BadRequestError, NotFoundError, ValidationError
from filters import Equals, Matches, build_filter
from query_params import ORDER_LIST_SCHEMA, QueryInput, normalize_list_params
from repository import MongoRepository, Page, parse_object_id, serialize_value
from settings import Settings

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("new", "delivering", "completed", "cancelled")
TOTAL_TOLERANCE = 1e-6
RELATED_SEARCH_LIMIT = 50

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def sanitize_text(value, max_length: int) -> str:
    """Cap free text and escape any markup before it is stored."""
    text = str(value or "").strip()[:max_length]
    return bleach.clean(text, tags=set(), attributes={}, strip=False)


def normalize_phone(value, region: str) -> str:
    """Return the number in E.164 form or raise ``BadRequestError``."""
    try:
        number = phonenumbers.parse(str(value or "").strip(), region)
    except NumberParseException:
        raise BadRequestError("Invalid phone number.")
    if not phonenumbers.is_valid_number(number):
        raise BadRequestError("Invalid phone number.")
    return phonenumbers.format_number(number, PhoneNumberFormat.E164)


@dataclass(frozen=True)
class OrderDraft:
    items: Tuple[str, ...]
    total: float
    address: str = ""
    payment: str = ""
    phone: str = ""
    email: str = ""
    comment: str = ""

    @classmethod
    def from_payload(cls, payload) -> "OrderDraft":
        if not isinstance(payload, dict):
            raise BadRequestError("Order payload must be an object.")

        raw_items = payload.get("items")
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError("items must be a non-empty array", field="items")
        items = []
        for entry in raw_items:
            if not isinstance(entry, str) or not entry.strip():
                raise ValidationError("items must contain product ids", field="items")
            items.append(entry.strip())

        total = payload.get("total")
        if isinstance(total, bool) or not isinstance(total, (int, float)):
            raise ValidationError("total must be a number", field="total")
        if not math.isfinite(total):
            raise ValidationError("total must be a number", field="total")

        return cls(
            items=tuple(items),
            total=float(total),
            address=str(payload.get("address") or ""),
            payment=str(payload.get("payment") or ""),
            phone=str(payload.get("phone") or ""),
            email=str(payload.get("email") or ""),
            comment=str(payload.get("comment") or ""),
        )


def price_basket(item_ids: Sequence[str], catalog: Mapping[str, Mapping]) -> List[Mapping]:
    """Resolve every claimed id to a sellable catalog entry, failing on the first miss."""
    basket = []
    for item_id in item_ids:
        product = catalog.get(item_id)
        if product is None:
            raise BadRequestError(f"Product {item_id} not found.")
        if product.get("price") is None:
            raise BadRequestError(f"Product {item_id} is not for sale.")
        basket.append(product)
    return basket


def verify_order_total(
    item_ids: Sequence[str], claimed_total: float, catalog: Mapping[str, Mapping]
) -> float:
    basket = price_basket(item_ids, catalog)
    recomputed = math.fsum(float(product["price"]) for product in basket)
    if not math.isclose(recomputed, claimed_total, rel_tol=0.0, abs_tol=TOTAL_TOLERANCE):
        raise BadRequestError("order total mismatch")
    return recomputed


class OrderTotalValidator:
    def __init__(self, settings: Settings, load_catalog: Callable[[], Iterable[Mapping]]):
        self.settings = settings
        self.load_catalog = load_catalog

    def fetch_catalog(self) -> Dict[str, Mapping]:
        return {str(product["_id"]): product for product in self.load_catalog()}

    def build_order(self, payload, identity: Optional[Identity]) -> Dict:
        """Validate a checkout body and return the document to persist."""
        if identity is None:
            raise NotFoundError("Account not found.")

        draft = OrderDraft.from_payload(payload)
        catalog = self.fetch_catalog()
        total = verify_order_total(draft.items, draft.total, catalog)

        settings = self.settings
        email = draft.email.strip().lower()
        if email and not email_regex.match(email):
            raise ValidationError("email must be a valid address", field="email")

        return {
            "totalAmount": total,
            "products": [catalog[item_id]["_id"] for item_id in draft.items],
            "payment": sanitize_text(draft.payment, settings.payment_max_length),
            "phone": normalize_phone(draft.phone, settings.phone_region),
            "email": sanitize_text(email, settings.email_max_length),
            "comment": sanitize_text(draft.comment, settings.comment_max_length),
            "deliveryAddress": sanitize_text(draft.address, settings.address_max_length),
            "customer": parse_object_id(identity.user_id, label="customer identifier"),
            "status": ORDER_STATUSES[0],
        }


def related_product_lookup(db) -> Callable[[str], List]:
    products = MongoRepository(db.products)
    return lambda pattern: products.find_ids(
        Matches("title", pattern), limit=RELATED_SEARCH_LIMIT
    )


def list_orders(
    db, query: QueryInput, settings: Settings, *, owner: Optional[Identity] = None
) -> Page:
    """Admin listing, or the owner's own history when ``owner`` is given."""
    default_limit = settings.own_orders_limit if owner else settings.default_list_limit
    params = normalize_list_params(
        query,
        ORDER_LIST_SCHEMA,
        default_limit,
        max_limit=settings.max_list_limit,
        search_max_length=settings.search_max_length,
    )
    base = ()
    if owner is not None:
        base = (Equals("customer", parse_object_id(owner.user_id)),)
    descriptor = build_filter(
        params,
        ORDER_LIST_SCHEMA,
        related_lookup=related_product_lookup(db),
        base=base,
    )
    return MongoRepository(db.orders).fetch_page(descriptor)


def parse_order_number(value) -> int:
    text = str(value or "").strip()
    if not text.isdecimal():
        raise BadRequestError("Invalid order number.")
    return int(text)


def find_order(db, order_number, *, owner: Optional[Identity] = None) -> Dict:
    order = db.orders.find_one({"orderNumber": parse_order_number(order_number)})
    if not order:
        raise NotFoundError("Order not found.")
    # Someone else's order is reported as missing rather than forbidden.
    if owner is not None and str(order.get("customer")) != owner.user_id:
        raise NotFoundError("Order not found.")
    return order


def next_order_number(db) -> int:
    counter = db.counters.find_one_and_update(
        {"_id": "orderNumber"},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(counter["seq"])


def create_order(db, validator: OrderTotalValidator, payload, identity: Optional[Identity]) -> Dict:
    order = validator.build_order(payload, identity)
    order["orderNumber"] = next_order_number(db)
    order["createdAt"] = datetime.utcnow()

    result = db.orders.insert_one(order)
    order["_id"] = result.inserted_id

    db.users.update_one(
        {"_id": order["customer"]},
        {
            "$push": {"orders": order["_id"]},
            "$set": {"lastOrder": order["_id"], "lastOrderDate": order["createdAt"]},
            "$inc": {"totalAmount": order["totalAmount"], "orderCount": 1},
        },
    )
    logger.info(
        "Recorded order %s for %s (total %s)",
        order["orderNumber"],
        identity.email,
        order["totalAmount"],
    )
    return order


def update_order_status(db, order_number, status) -> Dict:
    if not isinstance(status, str) or status not in ORDER_STATUSES:
        raise ValidationError(
            f"status must be one of: {', '.join(ORDER_STATUSES)}", field="status"
        )
    updated = db.orders.find_one_and_update(
        {"orderNumber": parse_order_number(order_number)},
        {"$set": {"status": status}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFoundError("Order not found.")
    return updated


def delete_order(db, order_id) -> Dict:
    deleted = db.orders.find_one_and_delete(
        {"_id": parse_object_id(order_id, label="order identifier")}
    )
    if not deleted:
        raise NotFoundError("Order not found.")
    return deleted


def serialize_orders(db, orders: Sequence[Dict]) -> List[Dict]:
    """Serialize orders with product summaries in place of bare product ids."""
    product_ids = {product_id for order in orders for product_id in order.get("products") or []}
    products = MongoRepository(db.products).find_by_ids(product_ids)

    serialized = []
    for order in orders:
        document = serialize_value(order)
        summaries = []
        for product_id in order.get("products") or []:
            product = products.get(str(product_id))
            summaries.append(
                {
                    "id": str(product_id),
                    "title": (product or {}).get("title", ""),
                    "price": (product or {}).get("price"),
                }
            )
        document["products"] = summaries
        serialized.append(document)
    return serialized
