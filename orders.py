"""
Order fulfillment

Validates and prices an order submission, reserves stock, assigns an order
number from an atomic counter and persists the order. Status changes follow
ORDER_TRANSITIONS and are applied with compare-and-set on the current status.
"""
from typing import List, Mapping, Optional

from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from catalog import paginate, parse_page
from database import create_document, next_sequence, now, serialize, to_object_id
from errors import AppError, ConflictError, NotFoundError, ValidationError
from logging_config import get_logger
from schemas import ORDER_TRANSITIONS, Order, OrderStatus, error_details

logger = get_logger(__name__)

ORDER_NUMBER_RETRIES = 5
MONEY_TOLERANCE = 0.01


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _section(payload: Mapping, *keys) -> dict:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, dict):
            return value
    return {}


def check_required(payload: Mapping):
    """Fail-fast checks, in order: customer, shipping address, items, total."""
    customer = _section(payload, "customer")
    missing = [f"customer.{f}: is required" for f in ("name", "email", "phone") if _blank(customer.get(f))]
    if missing:
        raise ValidationError("Customer name, email and phone are required", missing)

    address = _section(payload, "shippingAddress", "shipping_address")
    missing = []
    for name, aliases in (("street", ()), ("city", ()), ("state", ()), ("zipCode", ("zip_code",))):
        if all(_blank(address.get(key)) for key in (name,) + aliases):
            missing.append(f"shippingAddress.{name}: is required")
    if missing:
        raise ValidationError("Shipping street, city, state and zip code are required", missing)

    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("Order must contain at least one item", ["items: must not be empty"])

    total = payload.get("totalAmount", payload.get("total_amount"))
    try:
        total = float(total)
    except (TypeError, ValueError):
        total = 0.0
    if not total > 0:
        raise ValidationError("Total amount must be greater than 0", ["totalAmount: must be greater than 0"])


def check_totals(order: Order) -> float:
    """Return the subtotal after checking it against the items and the grand total."""
    items_total = round(sum(item.price * item.quantity for item in order.items), 2)
    subtotal = items_total if order.subtotal is None else order.subtotal
    if abs(subtotal - items_total) > MONEY_TOLERANCE:
        raise ValidationError("Subtotal does not match items", [f"subtotal: expected {items_total:.2f}"])

    expected = round(subtotal + order.shipping_cost + order.tax, 2)
    if abs(order.total_amount - expected) > MONEY_TOLERANCE:
        raise ValidationError(
            "Total amount does not match subtotal + shipping + tax",
            [f"totalAmount: expected {expected:.2f}"],
        )
    return round(subtotal, 2)


class OrderFulfillmentService:
    def __init__(self, db: Database, reserve_stock: bool = config.RESERVE_STOCK):
        self.db = db
        self.orders = db["order"]
        self.products = db["product"]
        self.reserve_stock = reserve_stock

    def next_order_number(self) -> str:
        seq = next_sequence(self.db, "orderNumber")
        return f"ORD-{now():%Y%m%d}-{seq:06d}"

    # -- stock -------------------------------------------------------------

    def reserve(self, order: Order) -> List[dict]:
        reservations = []
        try:
            for index, item in enumerate(order.items):
                oid = ObjectId(item.product)
                updated = self.products.find_one_and_update(
                    {
                        "_id": oid,
                        "is_active": True,
                        "stock_status": {"$ne": "preorder"},
                        "quantity_in_stock": {"$gte": item.quantity},
                    },
                    {"$inc": {"quantity_in_stock": -item.quantity}, "$set": {"updated_at": now()}},
                    return_document=ReturnDocument.AFTER,
                )
                if updated is None:
                    product = self.products.find_one({"_id": oid, "is_active": True})
                    if product is None:
                        raise NotFoundError(f"Product {item.product} not found", [f"items.{index}.product: not found"])
                    if product.get("stock_status") == "preorder":
                        continue
                    raise ConflictError(
                        f"Insufficient stock for {item.product_name}",
                        [f"items.{index}.quantity: only {product.get('quantity_in_stock', 0)} left"],
                    )
                reservations.append({"product": item.product, "quantity": item.quantity})
                if updated.get("quantity_in_stock") == 0:
                    self.products.update_one(
                        {"_id": oid, "quantity_in_stock": 0},
                        {"$set": {"stock_status": "out_of_stock"}},
                    )
        except AppError:
            self.release(reservations)
            raise
        return reservations

    def release(self, reservations: List[dict]):
        for reservation in reservations:
            oid = ObjectId(reservation["product"])
            self.products.update_one(
                {"_id": oid},
                {"$inc": {"quantity_in_stock": reservation["quantity"]}, "$set": {"updated_at": now()}},
            )
            self.products.update_one(
                {"_id": oid, "stock_status": "out_of_stock", "quantity_in_stock": {"$gt": 0}},
                {"$set": {"stock_status": "in_stock"}},
            )

    # -- operations --------------------------------------------------------

    def create(self, payload: Mapping) -> dict:
        if not isinstance(payload, Mapping):
            raise ValidationError("Order body must be a JSON object")
        check_required(payload)
        try:
            order = Order.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError("Validation failed", error_details(exc))
        subtotal = check_totals(order)

        doc = order.model_dump(by_alias=True)
        doc.update({
            "subtotal": subtotal,
            "shippingCost": round(order.shipping_cost, 2),
            "tax": round(order.tax, 2),
            "totalAmount": round(order.total_amount, 2),
            "status": OrderStatus.PENDING.value,
        })

        reservations = self.reserve(order) if self.reserve_stock else []
        doc["reservations"] = reservations
        try:
            inserted = self._insert_numbered(doc)
        except Exception:
            self.release(reservations)
            raise

        logger.info(
            "order_created",
            order_id=str(inserted["_id"]),
            order_number=inserted["orderNumber"],
            total=inserted["totalAmount"],
        )
        return serialize(inserted)

    def _insert_numbered(self, doc: dict) -> dict:
        # concurrent first upserts of the counter can also raise DuplicateKeyError
        for attempt in range(1, ORDER_NUMBER_RETRIES + 1):
            number = None
            try:
                number = self.next_order_number()
                return create_document(self.db, "order", {**doc, "orderNumber": number})
            except DuplicateKeyError:
                logger.warning("order_number_collision", order_number=number, attempt=attempt)
        raise ConflictError("Could not allocate a unique order number")

    def set_status(self, order_id: str, new_status) -> dict:
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise ValidationError(
                "Invalid status",
                [f"status: must be one of {', '.join(s.value for s in OrderStatus)}"],
            )

        oid = to_object_id(order_id)
        order = self.orders.find_one({"_id": oid}) if oid else None
        if order is None:
            raise NotFoundError("Order not found")

        current = OrderStatus(order["status"])
        allowed = ORDER_TRANSITIONS[current]
        if target not in allowed:
            next_states = ", ".join(sorted(s.value for s in allowed)) or "none"
            raise ValidationError(
                f"Invalid status transition from {current.value} to {target.value}",
                [f"status: allowed next states from {current.value}: {next_states}"],
            )

        updated = self.orders.find_one_and_update(
            {"_id": oid, "status": current.value},
            {"$set": {"status": target.value, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ConflictError("Order status changed concurrently, reload and retry")

        if target == OrderStatus.CANCELLED:
            self.release(order.get("reservations") or [])

        logger.info("order_status_changed", order_id=order_id, from_status=current.value, to_status=target.value)
        return serialize(updated)

    def get(self, order_id: str) -> dict:
        oid = to_object_id(order_id)
        order = self.orders.find_one({"_id": oid}) if oid else None
        if order is None:
            raise NotFoundError("Order not found")
        return serialize(order)

    def list_orders(self, params: Mapping) -> dict:
        page, limit, errors = parse_page(params, default_limit=20)
        status: Optional[str] = params.get("status") or None
        if status and status not in {s.value for s in OrderStatus}:
            errors.append(f"status: must be one of {', '.join(s.value for s in OrderStatus)}")
        if errors:
            raise ValidationError("Invalid query parameters", errors)

        predicate = {"status": status} if status else {}
        orders, pagination = paginate(
            self.orders, predicate, [("created_at", DESCENDING), ("_id", DESCENDING)], page, limit
        )
        return {"orders": orders, "pagination": pagination}

    def revenue(self) -> float:
        result = list(self.orders.aggregate([
            {"$match": {"status": {"$ne": OrderStatus.CANCELLED.value}}},
            {"$group": {"_id": None, "total": {"$sum": "$totalAmount"}}},
        ]))
        return round(result[0]["total"], 2) if result else 0.0

    def stats(self) -> dict:
        counts = {s.value: self.orders.count_documents({"status": s.value}) for s in OrderStatus}
        return {
            "totalOrders": self.orders.count_documents({}),
            "pendingOrders": counts[OrderStatus.PENDING.value],
            "dispatchedOrders": counts[OrderStatus.DISPATCHED.value],
            "deliveredOrders": counts[OrderStatus.DELIVERED.value],
            "cancelledOrders": counts[OrderStatus.CANCELLED.value],
            "totalRevenue": self.revenue(),
        }


def recent_orders(db: Database, limit: int = 5) -> List[dict]:
    cursor = db["order"].find().sort([("created_at", DESCENDING), ("_id", DESCENDING)]).limit(limit)
    return [serialize(doc) for doc in cursor]


def dashboard(db: Database) -> dict:
    service = OrderFulfillmentService(db)
    stats = service.stats()
    low_stock = [
        serialize(doc) for doc in db["product"].find({"stock_status": "out_of_stock"}).limit(5)
    ]
    return {
        "stats": {
            "totalProducts": db["product"].count_documents({}),
            "totalOrders": stats["totalOrders"],
            "pendingOrders": stats["pendingOrders"],
            "totalRevenue": stats["totalRevenue"],
        },
        "recentOrders": recent_orders(db),
        "lowStockProducts": low_stock,
    }
