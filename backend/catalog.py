import logging
import re
from typing import Dict, List, Optional

import pymongo
from bson import ObjectId
from pymongo.errors import PyMongoError

from errors import InvalidArgument, PersistenceFailure

SEED_PRODUCTS = [
    {
        "product_name": "Alienware x15",
        "price": 250000,
        "rating": 10,
        "image": "alienware.jpg",
    },
    {
        "product_name": "Acoustic Guitar",
        "price": 4500,
        "rating": 7,
        "image": "guitar.jpg",
    },
    {
        "product_name": "iPhone 13 Pro",
        "price": 109900,
        "rating": 9,
        "image": "iphone.jpg",
    },
    {
        "product_name": "Mechanical Keyboard",
        "price": 7999,
        "rating": 8,
        "image": "keyboard.jpg",
    },
]


def safe_int(value, default=None):
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return default


def normalize_product_payload(payload: Optional[Dict]) -> Dict[str, object]:
    if not isinstance(payload, dict):
        raise InvalidArgument("Product details are required.")

    name = str(payload.get("product_name") or payload.get("name") or "").strip()
    if not name:
        raise InvalidArgument("Product name is required.")

    price = safe_int(payload.get("price"))
    if price is None or price < 0:
        raise InvalidArgument("Price must be a whole, non-negative amount in minor units.")

    rating = safe_int(payload.get("rating"), 0)
    if rating is None or rating < 0:
        raise InvalidArgument("Rating must be a non-negative whole number.")

    return {
        "product_name": name,
        "price": price,
        "rating": rating,
        "image": str(payload.get("image") or "").strip(),
    }


class ProductCatalog:
    def __init__(self, products, timeout: float = 100, logger: Optional[logging.Logger] = None):
        self.products = products
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    def add_product(self, payload: Optional[Dict]) -> ObjectId:
        document = normalize_product_payload(payload)
        document["_id"] = ObjectId()
        try:
            with pymongo.timeout(self.timeout):
                self.products.insert_one(document)
        except PyMongoError as exc:
            self.logger.error("Unable to create product %s: %s", document["product_name"], exc)
            raise PersistenceFailure("Product was not created.")
        return document["_id"]

    def _find(self, query: Dict) -> List[Dict]:
        try:
            with pymongo.timeout(self.timeout):
                return list(self.products.find(query))
        except PyMongoError as exc:
            self.logger.error("Unable to load products: %s", exc)
            raise PersistenceFailure("Unable to load products.")

    def list_products(self) -> List[Dict]:
        return self._find({})

    def search_products(self, name: Optional[str]) -> List[Dict]:
        query = str(name or "").strip()
        if not query:
            raise InvalidArgument("Invalid search index")
        return self._find({"product_name": {"$regex": re.escape(query), "$options": "i"}})

    def seed_products(self) -> int:
        """Insert the demo catalog into an empty collection; returns how many were added."""
        try:
            with pymongo.timeout(self.timeout):
                if self.products.count_documents({}) > 0:
                    return 0
                self.products.insert_many([dict(product) for product in SEED_PRODUCTS])
        except PyMongoError as exc:
            self.logger.warning("Unable to seed products: %s", exc)
            raise PersistenceFailure("Unable to seed products.")
        return len(SEED_PRODUCTS)
