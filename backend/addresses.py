import logging
from typing import Dict, Optional

import pymongo
from bson import ObjectId
from pymongo.errors import PyMongoError

from documents import parse_object_id
from errors import InvalidArgument, InvalidUserID, PersistenceFailure, UserNotFound

MAX_ADDRESSES = 2
# Addresses are stored positionally: the first one is work, the second home.
WORK_SLOT = 0
HOME_SLOT = 1

ADDRESS_FIELDS = ("house_name", "street_name", "city_name", "pin_code")
ADDRESS_FIELD_ALIASES = {
    "house_name": ("house_name", "house", "houseName"),
    "street_name": ("street_name", "street", "streetName"),
    "city_name": ("city_name", "city", "cityName"),
    "pin_code": ("pin_code", "pincode", "pinCode", "postcode"),
}


def normalize_address_payload(payload: Optional[Dict]) -> Dict[str, str]:
    if not isinstance(payload, dict):
        return {}

    normalized: Dict[str, str] = {}
    for field in ADDRESS_FIELDS:
        value = None
        for alias in ADDRESS_FIELD_ALIASES.get(field, (field,)):
            if alias in payload:
                value = payload.get(alias)
                break
        if value is None:
            continue
        trimmed = str(value).strip()
        if trimmed:
            normalized[field] = trimmed
    return normalized


def is_complete_address(payload: Optional[Dict]) -> bool:
    normalized = normalize_address_payload(payload)
    return all(normalized.get(field) for field in ADDRESS_FIELDS)


class AddressBook:
    def __init__(self, users, timeout: float = 100, logger: Optional[logging.Logger] = None):
        self.users = users
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    def _count_addresses(self, user_oid: ObjectId) -> int:
        pipeline = [
            {"$match": {"_id": user_oid}},
            {"$unwind": {"path": "$addresses"}},
            {"$group": {"_id": "$_id", "count": {"$sum": 1}}},
        ]
        results = list(self.users.aggregate(pipeline))
        return int(results[0].get("count", 0)) if results else 0

    def add_address(self, user_id, payload: Optional[Dict]) -> Dict:
        user_oid = parse_object_id(user_id, "user id", InvalidUserID)
        address = normalize_address_payload(payload)
        if not is_complete_address(address):
            raise InvalidArgument("House, street, city and pin code are required.")
        address = {"_id": ObjectId(), **address}

        try:
            with pymongo.timeout(self.timeout):
                if self._count_addresses(user_oid) >= MAX_ADDRESSES:
                    raise InvalidArgument("Not Allowed")
                result = self.users.update_one(
                    {"_id": user_oid}, {"$push": {"addresses": address}}
                )
        except PyMongoError as exc:
            self.logger.error("Unable to add address for %s: %s", user_oid, exc)
            raise PersistenceFailure()

        if result.matched_count == 0:
            raise UserNotFound()
        return address

    def _edit_slot(self, user_id, slot: int, payload: Optional[Dict]):
        user_oid = parse_object_id(user_id, "user id", InvalidUserID)
        address = normalize_address_payload(payload)
        if not address:
            raise InvalidArgument("No address fields were provided.")

        update = {f"addresses.{slot}.{field}": value for field, value in address.items()}
        try:
            with pymongo.timeout(self.timeout):
                result = self.users.update_one({"_id": user_oid}, {"$set": update})
        except PyMongoError as exc:
            self.logger.error("Unable to edit address slot %d for %s: %s", slot, user_oid, exc)
            raise PersistenceFailure()

        if result.matched_count == 0:
            raise UserNotFound()

    def edit_home_address(self, user_id, payload: Optional[Dict]):
        self._edit_slot(user_id, HOME_SLOT, payload)

    def edit_work_address(self, user_id, payload: Optional[Dict]):
        self._edit_slot(user_id, WORK_SLOT, payload)

    def delete_addresses(self, user_id):
        user_oid = parse_object_id(user_id, "user id", InvalidUserID)
        try:
            with pymongo.timeout(self.timeout):
                result = self.users.update_one({"_id": user_oid}, {"$set": {"addresses": []}})
        except PyMongoError as exc:
            self.logger.error("Unable to delete addresses for %s: %s", user_oid, exc)
            raise PersistenceFailure()

        if result.matched_count == 0:
            raise UserNotFound()
