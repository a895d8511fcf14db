import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pymongo
from bson import Decimal128, ObjectId
from pymongo.errors import PyMongoError

from documents import parse_object_id, utc_now
from errors import (
    CheckoutFailure,
    InvalidArgument,
    InvalidUserID,
    PersistenceFailure,
    ProductNotFound,
    UserNotFound,
)

CASH_ON_DELIVERY = {"digital": False, "cod": True}


@dataclass
class CartSummary:
    lines: List[Dict] = field(default_factory=list)
    total: int = 0
    count: int = 0


def line_price(line) -> int:
    """Integer price of a cart line in minor units; unusable values count as 0."""
    if not isinstance(line, dict):
        return 0
    price = line.get("price")
    if isinstance(price, bool):
        return 0
    if isinstance(price, int):
        return int(price)
    if isinstance(price, Decimal128):
        price = price.to_decimal()
        return int(price) if price == price.to_integral_value() else 0
    if isinstance(price, float) and price.is_integer():
        return int(price)
    return 0


def manual_total(lines: List[Dict]) -> int:
    return sum(line_price(line) for line in lines or [])


def is_exact_total(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def new_order(price: int, order_list: Optional[List[Dict]] = None) -> Dict:
    return {
        "order_id": ObjectId(),
        "ordered_at": utc_now(),
        "price": price,
        "discount": 0,
        "payment_method": dict(CASH_ON_DELIVERY),
        "order_list": list(order_list or []),
    }


class CartEngine:
    """Cart mutations, totals and the cart-to-order conversion for one store.

    Every multi-step operation here is a sequence of single-document writes.
    Nothing is wrapped in a transaction, so a failure part way through leaves
    the earlier writes in place.
    """

    def __init__(
        self,
        users,
        products,
        short_timeout: float = 5,
        long_timeout: float = 100,
        allow_empty_checkout: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        self.users = users
        self.products = products
        self.short_timeout = short_timeout
        self.long_timeout = long_timeout
        self.allow_empty_checkout = allow_empty_checkout
        self.logger = logger or logging.getLogger(__name__)

    # --- Cart lines ---

    def add_to_cart(self, product_id, user_id) -> List[Dict]:
        product_oid = parse_object_id(product_id, "product id")
        user_oid = parse_object_id(user_id, "user id", InvalidUserID)

        try:
            with pymongo.timeout(self.short_timeout):
                snapshots = list(self.products.find({"_id": product_oid}))
                if not snapshots:
                    raise ProductNotFound()
                result = self.users.update_one(
                    {"_id": user_oid},
                    {"$push": {"cart": {"$each": snapshots}}},
                )
        except PyMongoError as exc:
            self.logger.error("Unable to add product %s to cart of %s: %s", product_oid, user_oid, exc)
            raise PersistenceFailure()

        if result.matched_count == 0:
            raise UserNotFound()
        if result.modified_count == 0:
            raise PersistenceFailure()
        return snapshots

    def remove_from_cart(self, product_id, user_id):
        """Drop every cart line for the product, not just one of them."""
        product_oid = parse_object_id(product_id, "product id")
        user_oid = parse_object_id(user_id, "user id", InvalidUserID)

        try:
            with pymongo.timeout(self.short_timeout):
                result = self.users.update_one(
                    {"_id": user_oid},
                    {"$pull": {"cart": {"_id": product_oid}}},
                )
        except PyMongoError as exc:
            self.logger.error("Unable to remove product %s from cart of %s: %s", product_oid, user_oid, exc)
            raise PersistenceFailure()

        if result.matched_count == 0:
            raise UserNotFound()
        if result.modified_count == 0:
            self.logger.info("Product %s was not in the cart of %s", product_oid, user_oid)

    # --- Totals ---

    def _aggregate_total(self, user_oid: ObjectId):
        pipeline = [
            {"$match": {"_id": user_oid}},
            {"$unwind": {"path": "$cart"}},
            {"$group": {"_id": "$_id", "total": {"$sum": "$cart.price"}}},
        ]
        results = list(self.users.aggregate(pipeline))
        if not results:
            return None
        return results[0].get("total")

    def _cart_total(self, user_oid: ObjectId, lines: List[Dict]) -> int:
        """Aggregated sum when the store returns an integer, else the manual sum.

        An empty cart unwinds to nothing, so it always takes the manual path.
        """
        aggregated = self._aggregate_total(user_oid)
        if is_exact_total(aggregated):
            return int(aggregated)

        total = manual_total(lines)
        self.logger.info(
            "Cart total for %s computed manually (aggregate returned %s): %s",
            user_oid,
            type(aggregated).__name__,
            total,
        )
        return total

    def _load_cart(self, user_oid: ObjectId) -> List[Dict]:
        user = self.users.find_one({"_id": user_oid}, {"cart": 1})
        if not user:
            raise UserNotFound()
        return list(user.get("cart") or [])

    def compute_cart_total(self, user_id) -> CartSummary:
        user_oid = parse_object_id(user_id, "user id", InvalidUserID)

        try:
            with pymongo.timeout(self.long_timeout):
                lines = self._load_cart(user_oid)
                total = self._cart_total(user_oid, lines)
        except PyMongoError as exc:
            self.logger.error("Unable to compute cart total for %s: %s", user_oid, exc)
            raise PersistenceFailure()

        return CartSummary(lines=lines, total=total, count=len(lines))

    # --- Orders ---

    def checkout(self, user_id) -> Dict:
        """Turn the user's cart into an order and empty the cart.

        Steps: compute the total, build the order, append the order header,
        re-read the cart and copy its lines into that order, clear the cart.
        The cart is read again after the header is written, so a cart change
        between those two writes ends up in the order while the price still
        reflects the earlier total. Only a failure to clear the cart is
        reported as ``CheckoutFailure``; nothing written before it is undone.
        """
        user_oid = parse_object_id(user_id, "user id", InvalidUserID)

        with pymongo.timeout(self.long_timeout):
            try:
                lines = self._load_cart(user_oid)
                if not lines and not self.allow_empty_checkout:
                    raise InvalidArgument("Cart is empty.")
                total = self._cart_total(user_oid, lines)

                order = new_order(total)
                self._append_order_header(user_oid, order)

                order["order_list"] = self._load_cart(user_oid)
                self._append_order_lines(user_oid, order["order_id"], order["order_list"])
            except PyMongoError as exc:
                self.logger.error("Checkout for %s stopped before clearing the cart: %s", user_oid, exc)
                raise PersistenceFailure()

            try:
                cleared = self.users.update_one({"_id": user_oid}, {"$set": {"cart": []}})
            except PyMongoError as exc:
                self.logger.error("Unable to clear cart of %s after order %s: %s", user_oid, order["order_id"], exc)
                raise CheckoutFailure()
            if cleared.matched_count == 0:
                raise CheckoutFailure()

        self.logger.info(
            "Order %s placed for %s with %d line(s), price %d",
            order["order_id"],
            user_oid,
            len(order["order_list"]),
            order["price"],
        )
        return order

    def instant_buy(self, product_id, user_id) -> Dict:
        """Order a single product straight away; the cart is left untouched."""
        product_oid = parse_object_id(product_id, "product id")
        user_oid = parse_object_id(user_id, "user id", InvalidUserID)

        try:
            with pymongo.timeout(self.short_timeout):
                product = self.products.find_one({"_id": product_oid})
                if not product:
                    raise ProductNotFound()

                order = new_order(line_price(product))
                self._append_order_header(user_oid, order)
                self._append_order_lines(user_oid, order["order_id"], [product])
        except PyMongoError as exc:
            self.logger.error("Instant buy of %s for %s failed: %s", product_oid, user_oid, exc)
            raise PersistenceFailure()

        order["order_list"] = [product]
        return order

    def list_orders(self, user_id) -> List[Dict]:
        user_oid = parse_object_id(user_id, "user id", InvalidUserID)

        try:
            with pymongo.timeout(self.short_timeout):
                user = self.users.find_one({"_id": user_oid}, {"orders": 1})
        except PyMongoError as exc:
            self.logger.error("Unable to load orders for %s: %s", user_oid, exc)
            raise PersistenceFailure()

        if not user:
            raise UserNotFound()
        return list(user.get("orders") or [])

    def _append_order_header(self, user_oid: ObjectId, order: Dict):
        result = self.users.update_one({"_id": user_oid}, {"$push": {"orders": order}})
        if result.matched_count == 0:
            raise UserNotFound()

    def _append_order_lines(self, user_oid: ObjectId, order_id: ObjectId, lines: List[Dict]):
        if not lines:
            return
        result = self.users.update_one(
            {"_id": user_oid, "orders": {"$elemMatch": {"order_id": order_id}}},
            {"$push": {"orders.$.order_list": {"$each": lines}}},
        )
        if result.matched_count == 0:
            raise PersistenceFailure()
