"""
Donation history and summary statistics.

Works on plain donation documents already loaded from the database.
Statuses are the presented ones, so stale Available/Requested donations
count as Expired.
"""
import re
from datetime import datetime
from typing import Iterable, List, Optional

from lifecycle import ACCEPTED, AVAILABLE, COMPLETED, EXPIRED, REQUESTED, effective_status

STATUSES = (COMPLETED, ACCEPTED, REQUESTED, AVAILABLE, EXPIRED)
UNKNOWN_RESTAURANT = "Unknown"
ANONYMOUS_NGO = "Anonymous"

_LEADING_NUMBER = re.compile(r"^\s*(\d+(?:\.\d+)?)")


def leading_quantity(quantity) -> float:
    """Numeric part at the start of a free-form quantity ("5kg" -> 5)."""
    if quantity is None:
        return 0
    if isinstance(quantity, (int, float)) and not isinstance(quantity, bool):
        return quantity
    match = _LEADING_NUMBER.match(str(quantity))
    if not match:
        return 0
    value = float(match.group(1))
    return int(value) if value.is_integer() else value


def display_name(ref, fallback: str) -> str:
    if isinstance(ref, dict) and ref.get("name"):
        return ref["name"]
    return fallback


def with_effective_status(donations: Iterable[dict], now: Optional[datetime] = None) -> List[dict]:
    out = []
    for d in donations:
        d = dict(d)
        d["status"] = effective_status(d, now)
        out.append(d)
    return out


def summarize(donations: Iterable[dict], now: Optional[datetime] = None) -> dict:
    by_status = {status: 0 for status in STATUSES}
    total = 0
    completed_quantity = 0
    for d in with_effective_status(donations, now):
        total += 1
        status = d.get("status")
        if status in by_status:
            by_status[status] += 1
        if status == COMPLETED:
            completed_quantity += leading_quantity(d.get("quantity"))
    return {
        "total": total,
        "byStatus": by_status,
        "pending": by_status[REQUESTED] + by_status[ACCEPTED],
        "completedQuantity": completed_quantity,
    }


def filter_by_status(donations: Iterable[dict], status: Optional[str] = None,
                     now: Optional[datetime] = None) -> List[dict]:
    donations = with_effective_status(donations, now)
    if not status or status.lower() == "all":
        return donations
    return [d for d in donations if (d.get("status") or "").lower() == status.lower()]


def restaurant_stats(summary: dict) -> dict:
    return {
        "totalDonations": summary["total"],
        "completedDonations": summary["byStatus"][COMPLETED],
        "pendingDonations": summary["pending"],
        "expiredDonations": summary["byStatus"][EXPIRED],
        "totalQuantityDonated": summary["completedQuantity"],
        "byStatus": summary["byStatus"],
    }


def ngo_stats(summary: dict) -> dict:
    return {
        "totalRequests": summary["total"],
        "completedRequests": summary["byStatus"][COMPLETED],
        "pendingRequests": summary["pending"],
        "expiredRequests": summary["byStatus"][EXPIRED],
        "totalQuantityReceived": summary["completedQuantity"],
        "byStatus": summary["byStatus"],
    }


def review_stats(rated: Iterable[dict]) -> dict:
    distribution = {str(star): 0 for star in range(1, 6)}
    ratings = []
    for d in rated:
        rating = d.get("rating")
        if isinstance(rating, int) and 1 <= rating <= 5:
            ratings.append(rating)
            distribution[str(rating)] += 1
    average = round(sum(ratings) / len(ratings), 2) if ratings else 0.0
    return {"averageRating": average, "totalReviews": len(ratings), "ratingDistribution": distribution}


def review_entry(donation: dict) -> dict:
    return {
        "_id": donation.get("_id"),
        "rating": donation.get("rating"),
        "review": donation.get("review"),
        "ratedAt": donation.get("ratedAt"),
        "foodType": donation.get("foodType"),
        "quantity": donation.get("quantity"),
        "reviewer": display_name(donation.get("requestedBy"), ANONYMOUS_NGO),
    }
