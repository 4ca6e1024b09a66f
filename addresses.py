"""
Address book for a user document.

The functions here work on the in-memory `addresses` list of one user and
keep the default-address rule on every change: at most one address has
`is_default` set, and exactly one does while the list is non-empty.
`save_address_book` wraps a change in a versioned read-modify-write against
the `user` collection.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from pymongo.collection import Collection

from errors import Conflict, NotFound, ValidationFailure
from schemas import ADDRESS_LABELS

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = {
    "street": "Street",
    "city": "City",
    "state": "State",
    "zip_code": "ZIP code",
    "country": "Country",
}
DEFAULT_COUNTRY = "Bangladesh"
DEFAULT_LABEL = "home"
MAX_WRITE_ATTEMPTS = 3

_ZIP_RE = re.compile(r"^[0-9]+$")


@dataclass
class ValidationResult:
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ValidationFailure(self.errors)


def validate_address(data: Dict[str, Any], partial: bool = False) -> ValidationResult:
    """Check address fields without touching any list.

    With ``partial`` set only the keys present in ``data`` are checked, which
    is what an update needs. A key that is present but None counts as blank.
    """
    result = ValidationResult()
    for name, title in REQUIRED_FIELDS.items():
        if name not in data:
            if not partial:
                result.errors[name] = f"{title} is required"
            continue
        value = data[name]
        if not isinstance(value, str) or not value.strip():
            result.errors[name] = f"{title} is required"
        elif name == "zip_code" and not _ZIP_RE.match(value.strip()):
            result.errors[name] = "ZIP code must contain only numbers"

    if "label" in data and data["label"] not in ADDRESS_LABELS:
        result.errors["label"] = "Label must be one of: " + ", ".join(ADDRESS_LABELS)
    if "phone" in data and data["phone"] is not None and not isinstance(data["phone"], str):
        result.errors["phone"] = "Phone must be a string"
    return result


def _clean(data: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = {}
    for name in list(REQUIRED_FIELDS) + ["label", "phone"]:
        if name not in data:
            continue
        value = data[name]
        if name == "phone" and value is None:
            value = ""
        cleaned[name] = value.strip() if isinstance(value, str) else value
    return cleaned


def _index_of(addresses: List[Dict[str, Any]], address_id: str) -> int:
    for index, address in enumerate(addresses):
        if str(address.get("id")) == str(address_id):
            return index
    raise NotFound("Address not found")


def add_address(addresses: List[Dict[str, Any]], data: Dict[str, Any], make_default: bool = False) -> Dict[str, Any]:
    """Append a new address and return it.

    The first address of an empty book is always the default.
    """
    data = {"country": DEFAULT_COUNTRY, "label": DEFAULT_LABEL, "phone": "", **data}
    validate_address(data).raise_for_errors()

    now = datetime.now(timezone.utc)
    address = _clean(data)
    address["id"] = str(ObjectId())
    address["created_at"] = now
    address["updated_at"] = now

    if not addresses:
        make_default = True
    elif make_default:
        for existing in addresses:
            existing["is_default"] = False
    address["is_default"] = bool(make_default)
    addresses.append(address)
    return address


def update_address(addresses: List[Dict[str, Any]], address_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a partial update to one address and return it.

    `is_default` is only acted on when it is among ``changes``. Clearing the
    flag on the current default hands it to the first other address.
    """
    index = _index_of(addresses, address_id)
    changes = dict(changes)
    make_default = changes.pop("is_default", None)
    validate_address(changes, partial=True).raise_for_errors()

    target = addresses[index]
    target.update(_clean(changes))
    target["updated_at"] = datetime.now(timezone.utc)

    if make_default is None:
        return target
    if make_default:
        for other_index, other in enumerate(addresses):
            if other_index != index:
                other["is_default"] = False
        target["is_default"] = True
    elif target.get("is_default"):
        others = [a for i, a in enumerate(addresses) if i != index]
        if others:
            target["is_default"] = False
            others[0]["is_default"] = True
    return target


def remove_address(addresses: List[Dict[str, Any]], address_id: str) -> Dict[str, Any]:
    """Remove an address; if it was the default, the first remaining one takes over."""
    index = _index_of(addresses, address_id)
    removed = addresses.pop(index)
    if removed.get("is_default") and addresses:
        addresses[0]["is_default"] = True
    return removed


def enforce_single_default(addresses: List[Dict[str, Any]]) -> bool:
    """Repair the default flags in place before a write. Returns True if anything changed."""
    changed = False
    seen_default = False
    for address in addresses:
        if address.get("is_default"):
            if seen_default:
                address["is_default"] = False
                changed = True
            seen_default = True
    if addresses and not seen_default:
        addresses[0]["is_default"] = True
        changed = True
    return changed


def save_address_book(
    users: Collection,
    user_id: ObjectId,
    change: Callable[[List[Dict[str, Any]]], Any],
) -> List[Dict[str, Any]]:
    """Run ``change`` on the user's address list and persist the result.

    The write only lands if the user's `version` is still the one that was
    read; otherwise the whole read-modify-write is retried.
    """
    for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
        user = users.find_one({"_id": user_id}, {"addresses": 1, "version": 1})
        if not user:
            raise NotFound("User not found")

        addresses = list(user.get("addresses") or [])
        change(addresses)
        if enforce_single_default(addresses):
            logger.warning("Repaired default address flags for user %s", user_id)

        if "version" in user:
            query = {"_id": user_id, "version": user["version"]}
        else:
            query = {"_id": user_id, "version": {"$exists": False}}
        result = users.update_one(
            query,
            {
                "$set": {"addresses": addresses, "updated_at": datetime.now(timezone.utc)},
                "$inc": {"version": 1},
            },
        )
        if result.matched_count:
            return addresses
        logger.info("Address book of user %s changed during write (attempt %d)", user_id, attempt)

    raise Conflict("Address book was modified concurrently, please retry")


def find_default_address(addresses: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for address in addresses:
        if address.get("is_default"):
            return address
    return None
