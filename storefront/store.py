"""
MongoDB-backed order and user stores.

All payment state changes go through single-document atomic operations:
an upsert keyed on the card session reference, and a conditional
find-and-update that only matches orders still awaiting payment.
"""
import logging
from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .models import Order, OrderStatus, OrderStatusLog, utcnow

logger = logging.getLogger(__name__)


def to_object_id(value: str) -> Optional[ObjectId]:
    """Parse a string id, returning None when it is not a valid ObjectId."""
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class OrderStore:
    """Access to the `orders` collection."""

    def __init__(self, collection: Collection):
        self._orders = collection

    @classmethod
    def from_database(cls, db: Database) -> "OrderStore":
        return cls(db["orders"])

    def ensure_indexes(self):
        """Create the indexes the checkout flow relies on."""
        self._orders.create_index(
            [("payment_session_ref", ASCENDING)],
            unique=True,
            sparse=True,
            name="payment_session_ref_unique",
        )
        self._orders.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])

    def create(self, order: Order) -> Order:
        """Insert a new order and return it with its id."""
        result = self._orders.insert_one(order.to_document())
        return order.model_copy(update={"id": str(result.inserted_id)})

    def find_by_id(self, order_id: str) -> Optional[Order]:
        oid = to_object_id(order_id)
        if oid is None:
            return None
        document = self._orders.find_one({"_id": oid})
        return Order.from_document(document) if document else None

    def find_by_session_ref(self, session_ref: str) -> Optional[Order]:
        document = self._orders.find_one({"payment_session_ref": session_ref})
        return Order.from_document(document) if document else None

    def find_by_user(self, user_id: str, limit: int = 50) -> list[Order]:
        cursor = self._orders.find({"user_id": user_id}).sort("created_at", DESCENDING).limit(limit)
        return [Order.from_document(document) for document in cursor]

    def find_by_id_and_update(self, order_id: str, patch: dict[str, Any]) -> Optional[Order]:
        """Apply a `$set` patch atomically; returns the updated order or None."""
        oid = to_object_id(order_id)
        if oid is None:
            return None
        document = self._orders.find_one_and_update(
            {"_id": oid},
            {"$set": {**patch, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return Order.from_document(document) if document else None

    def upsert_by_session_ref(self, order: Order) -> tuple[Order, bool]:
        """
        Insert the order unless one already exists for its session reference.

        Returns:
            Tuple of (stored order, created)
        """
        if not order.payment_session_ref:
            raise ValueError("upsert_by_session_ref needs an order with payment_session_ref")

        document = order.to_document()
        document.pop("payment_session_ref")
        try:
            result = self._orders.update_one(
                {"payment_session_ref": order.payment_session_ref},
                {"$setOnInsert": document},
                upsert=True,
            )
            created = result.upserted_id is not None
        except DuplicateKeyError:
            # a concurrent delivery inserted first
            created = False
        return self.find_by_session_ref(order.payment_session_ref), created

    def transition_if_pending(
        self,
        order_id: str,
        new_status: OrderStatus,
        log_entry: OrderStatusLog,
        is_paid: bool = False,
    ) -> Optional[Order]:
        """
        Move an unpaid pending order to `new_status` and append one log entry.

        The match on `is_paid` and `order_status` happens inside the same
        find-and-update as the write, so concurrent deliveries of the same
        notification apply at most once.

        Returns:
            The updated order, or None if nothing matched
        """
        oid = to_object_id(order_id)
        if oid is None:
            return None
        document = self._orders.find_one_and_update(
            {"_id": oid, "is_paid": False, "order_status": OrderStatus.PENDING.value},
            {
                "$set": {
                    "is_paid": is_paid,
                    "order_status": new_status.value,
                    "updated_at": utcnow(),
                },
                "$push": {"order_status_logs": log_entry.model_dump()},
            },
            return_document=ReturnDocument.AFTER,
        )
        if document is None:
            logger.debug("Order %s is not pending, skipped transition to %s", order_id, new_status.value)
            return None
        return Order.from_document(document)

    def ping(self) -> bool:
        self._orders.database.client.admin.command("ping")
        return True


class UserDirectory:
    """Read-only lookup of user profiles in the `users` collection."""

    def __init__(self, collection: Collection):
        self._users = collection

    @classmethod
    def from_database(cls, db: Database) -> "UserDirectory":
        return cls(db["users"])

    def find_by_id(self, user_id: Optional[str]) -> Optional[dict[str, Any]]:
        """Return {username, email, phone} for a user, or None."""
        if not user_id:
            return None
        oid = to_object_id(user_id)
        document = self._users.find_one({"_id": oid if oid is not None else user_id})
        if not document:
            return None
        return {
            "username": document.get("username"),
            "email": document.get("email"),
            "phone": document.get("phone") or "",
        }
