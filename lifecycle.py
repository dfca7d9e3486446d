"""
Donation lifecycle.

    Available -> Requested -> Accepted -> Completed
    Requested -> Available          (reject)

Expired is never written. A donation that is still Available or Requested
once its expiry time has passed is *presented* as Expired and can no
longer move. Every transition is one conditional update keyed on the
expected prior status, so a failed or lost transition leaves the stored
document as it was.
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional

from pymongo import ReturnDocument

import chats
from database import find_by_id, oid, to_naive_utc, utcnow
from errors import InvalidStateError, NotFoundError, PermissionDeniedError, ValidationError
from schemas import Donation, Rejection
from security import Session

logger = logging.getLogger(__name__)

AVAILABLE = "Available"
REQUESTED = "Requested"
ACCEPTED = "Accepted"
COMPLETED = "Completed"
EXPIRED = "Expired"

PREFERRED_OPTIONS = ("NGO Pickup", "Restaurant Delivery")
MAX_REVIEW_LENGTH = 500

FOOD_TYPE_PATTERN = re.compile(r"^[a-zA-Z\s]+$")
QUANTITY_PATTERN = re.compile(r"^[0-9]+(\s?(kg|g|plate|plates|serving|servings|ltr|litre|litres)?)$", re.IGNORECASE)
PICKUP_PATTERN = re.compile(r"^[a-zA-Z0-9\s,.-]{5,}$")

FIELD_MESSAGES = {
    "foodType": "Only alphabets allowed (e.g., Rice, Bread, Curry)",
    "quantity": "Use proper format (e.g., 5kg, 2 plates, 10 servings)",
    "pickupLocation": "Enter a valid pickup address",
    "expiryTime": "Expiry time is required",
    "preferredOption": "Choose NGO Pickup or Restaurant Delivery",
}


# Validation

def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def validate_donation_input(data: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Check a create-donation form and return the cleaned values.

    Raises ValidationError with one message per failing field. Runs both in
    the API and in the Python client, which uses it to avoid sending a
    request that would be refused.
    """
    now = now or utcnow()
    errors = {}

    food_type = (data.get("foodType") or "").strip()
    quantity = (data.get("quantity") or "").strip()
    pickup = (data.get("pickupLocation") or "").strip()
    option = data.get("preferredOption") or "NGO Pickup"
    raw_expiry = data.get("expiryTime")

    if not FOOD_TYPE_PATTERN.match(food_type):
        errors["foodType"] = FIELD_MESSAGES["foodType"]
    if not QUANTITY_PATTERN.match(quantity):
        errors["quantity"] = FIELD_MESSAGES["quantity"]
    if not PICKUP_PATTERN.match(pickup):
        errors["pickupLocation"] = FIELD_MESSAGES["pickupLocation"]
    if option not in PREFERRED_OPTIONS:
        errors["preferredOption"] = FIELD_MESSAGES["preferredOption"]

    expiry = parse_timestamp(raw_expiry)
    if raw_expiry in (None, ""):
        errors["expiryTime"] = FIELD_MESSAGES["expiryTime"]
    elif expiry is None:
        errors["expiryTime"] = "Expiry time is not a valid date"
    elif expiry < now:
        errors["expiryTime"] = "Expiry time must be in the future"

    if errors:
        raise ValidationError("Please correct the highlighted errors", errors)

    return {
        "foodType": food_type,
        "quantity": quantity,
        "pickupLocation": pickup,
        "preferredOption": option,
        "expiryTime": expiry,
    }


def validate_rating(rating: Any, review: Optional[str]) -> Dict[str, Any]:
    errors = {}
    if rating is None:
        if review and review.strip():
            errors["rating"] = "Please select a rating to go with your review"
    elif isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        errors["rating"] = "Rating must be a whole number from 1 to 5"
    if review is not None and len(review) > MAX_REVIEW_LENGTH:
        errors["review"] = "Review must be at most %d characters" % MAX_REVIEW_LENGTH
    if errors:
        raise ValidationError("Please correct the highlighted errors", errors)
    cleaned_review = review.strip() if review and review.strip() else None
    return {"rating": rating, "review": cleaned_review}


# State

def is_expired(donation: dict, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    expiry = donation.get("expiryTime")
    if expiry is None or donation.get("status") not in (AVAILABLE, REQUESTED):
        return False
    return expiry < now


def effective_status(donation: dict, now: Optional[datetime] = None) -> str:
    if is_expired(donation, now):
        return EXPIRED
    return donation.get("status")


def _load(db, donation_id) -> dict:
    donation = find_by_id(db, "donation", donation_id)
    if not donation:
        raise NotFoundError("Donation not found")
    return donation


def _require_state(donation: dict, expected: str, now: datetime, action: str) -> None:
    current = effective_status(donation, now)
    if current != expected:
        raise InvalidStateError("Cannot %s a donation that is %s" % (action, current))


def _transition(db, donation: dict, expected: str, update: dict, now: datetime, action: str,
                not_expired: bool = False) -> dict:
    query = {"_id": donation["_id"], "status": expected}
    if not_expired:
        query["expiryTime"] = {"$gte": now}
    update.setdefault("$set", {})["updatedAt"] = now
    updated = db["donation"].find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
    if updated is None:
        # Someone else moved it first.
        raise InvalidStateError("Cannot %s this donation any more, please refresh" % action)
    return updated


# Transitions

def create_donation(db, session: Session, data: Dict[str, Any], now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    if not session.is_restaurant:
        raise PermissionDeniedError("Only restaurants can create donations")
    cleaned = validate_donation_input(data, now)
    donation = Donation(restaurant=session.user_id, createdAt=now, updatedAt=now, **cleaned)
    doc = donation.model_dump()
    doc["_id"] = db["donation"].insert_one(doc).inserted_id
    logger.info("Donation %s created by restaurant %s", doc["_id"], session.user_id)
    return doc


def request_donation(db, session: Session, donation_id, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    if not session.is_ngo:
        raise PermissionDeniedError("Only NGOs can request donations")
    donation = _load(db, donation_id)
    _require_state(donation, AVAILABLE, now, "request")
    updated = _transition(db, donation, AVAILABLE, {
        "$set": {"status": REQUESTED, "requestedBy": session.user_id, "requestedAt": now},
    }, now, "request", not_expired=True)
    chats.ensure_chat(db, updated["restaurant"], session.user_id, updated["_id"], now)
    logger.info("Donation %s requested by NGO %s", updated["_id"], session.user_id)
    return updated


def _require_owner(donation: dict, session: Session) -> None:
    if not session.is_restaurant or donation.get("restaurant") != session.user_id:
        raise PermissionDeniedError("Only the donating restaurant can do this")


def accept_donation(db, session: Session, donation_id, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    donation = _load(db, donation_id)
    _require_state(donation, REQUESTED, now, "accept")
    _require_owner(donation, session)
    updated = _transition(db, donation, REQUESTED, {
        "$set": {"status": ACCEPTED, "acceptedAt": max(now, donation["requestedAt"])},
    }, now, "accept", not_expired=True)
    logger.info("Donation %s accepted", updated["_id"])
    return updated


def reject_donation(db, session: Session, donation_id, now: Optional[datetime] = None) -> dict:
    """Return a requested donation to Available.

    The request is not lost: who asked and when is appended to the
    donation's `rejections` list before `requestedBy`/`requestedAt` are
    cleared.
    """
    now = now or utcnow()
    donation = _load(db, donation_id)
    _require_state(donation, REQUESTED, now, "reject")
    _require_owner(donation, session)
    rejection = Rejection(ngo=donation["requestedBy"], requestedAt=donation.get("requestedAt"), rejectedAt=now)
    updated = _transition(db, donation, REQUESTED, {
        "$set": {"status": AVAILABLE, "requestedBy": None, "requestedAt": None},
        "$push": {"rejections": rejection.model_dump()},
    }, now, "reject", not_expired=True)
    logger.info("Donation %s request by NGO %s rejected", updated["_id"], rejection.ngo)
    return updated


def complete_donation(db, session: Session, donation_id, rating: Optional[int] = None,
                      review: Optional[str] = None, now: Optional[datetime] = None) -> dict:
    """Mark an accepted donation Completed, attaching the rating if given.

    Rating, review and completion are written together; if any part is
    refused nothing is stored.
    """
    now = now or utcnow()
    donation = _load(db, donation_id)
    _require_state(donation, ACCEPTED, now, "complete")
    if not session.is_ngo or donation.get("requestedBy") != session.user_id:
        raise PermissionDeniedError("Only the requesting NGO can complete this donation")
    feedback = validate_rating(rating, review)

    completed_at = max(now, donation["acceptedAt"])
    changes = {"status": COMPLETED, "completedAt": completed_at}
    if feedback["rating"] is not None:
        changes.update(rating=feedback["rating"], review=feedback["review"], ratedAt=completed_at)
    updated = _transition(db, donation, ACCEPTED, {"$set": changes}, now, "complete")
    logger.info("Donation %s completed (rating=%s)", updated["_id"], feedback["rating"])
    return updated


def rate_donation(db, session: Session, donation_id, rating: Any, review: Optional[str] = None,
                  now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    donation = _load(db, donation_id)
    if not session.is_ngo or donation.get("requestedBy") != session.user_id:
        raise PermissionDeniedError("Only the requesting NGO can rate this donation")
    if donation.get("status") != COMPLETED:
        raise InvalidStateError("Only completed donations can be rated")
    if donation.get("rating") is not None:
        raise InvalidStateError("This donation has already been rated")
    if rating is None:
        raise ValidationError("Please correct the highlighted errors", {"rating": "Please select a rating"})
    feedback = validate_rating(rating, review)

    updated = db["donation"].find_one_and_update(
        {"_id": donation["_id"], "status": COMPLETED, "rating": None},
        {"$set": {"rating": feedback["rating"], "review": feedback["review"], "ratedAt": now, "updatedAt": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidStateError("This donation has already been rated")
    logger.info("Donation %s rated %s", updated["_id"], feedback["rating"])
    return updated


# Listings

def available_donations(db, now: Optional[datetime] = None) -> list:
    now = now or utcnow()
    cursor = db["donation"].find({"status": AVAILABLE, "expiryTime": {"$gte": now}}).sort("createdAt", -1)
    return list(cursor)


def donations_requested_by(db, ngo_id) -> list:
    return list(db["donation"].find({"requestedBy": oid(ngo_id)}).sort("requestedAt", -1))


def donations_of_restaurant(db, restaurant_id) -> list:
    return list(db["donation"].find({"restaurant": oid(restaurant_id)}).sort("createdAt", -1))


def rated_donations_of_restaurant(db, restaurant_id) -> list:
    query = {"restaurant": oid(restaurant_id), "status": COMPLETED, "rating": {"$ne": None}}
    return list(db["donation"].find(query).sort("ratedAt", -1))
