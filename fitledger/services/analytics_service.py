"""
Revenue Analytics Aggregator – read-side reporting over lab bookings, class
bookings, invoices and users.

Sums are accumulated in Python over a single cursor per collection, the same
way the commission summaries are built elsewhere. Every window is inclusive
on both ends, and a partner or bucket with no activity yields a zero row.

Derived metrics (all percentages, rounded to 2 decimals, 0 on a zero denominator):

  growth_rate     = (current - previous) / previous * 100
  retention_rate  = enthusiasts active in both periods / enthusiasts active in the previous period * 100
  engagement_rate = enthusiasts with at least one booking in the period / all enthusiasts * 100
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Iterable

from fitledger.config.database import Collections, db_config
from fitledger.config.settings import settings
from fitledger.database.db_operations import db_ops
from fitledger.services.commission_service import (
    FITNESS_ENTHUSIAST,
    LAB_PARTNER,
    PARTNER_TYPES,
    TRAINER,
    commission_for_amount,
    get_current_commission_rate,
    get_partner,
)
from fitledger.services.invoice_service import effective_status
from fitledger.services.payment_tracker import get_unbilled_summary
from fitledger.utils.errors import ComputationError, InvalidBookingRequest
from fitledger.utils.helpers import as_naive_utc, parse_object_id, utc_now

logger = logging.getLogger(__name__)

BUCKETS = ("month", "day")
LEADERBOARD_METRICS = ("commission", "bookings", "revenue")
ACTIVE_CLASS_STATUSES = ["active", "completed"]


# ─── Formulas ─────────────────────────────────────────────────────────────────

def _percentage(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0
    return round(numerator / denominator * 100, 2)


def growth_rate(current: float, previous: float) -> float:
    return _percentage(current - previous, previous)


def retention_rate(previous_active: Iterable, current_active: Iterable) -> float:
    previous_active, current_active = set(previous_active), set(current_active)
    return _percentage(len(previous_active & current_active), len(previous_active))


def engagement_rate(active: int, total: int) -> float:
    return _percentage(active, total)


# ─── Window helpers ───────────────────────────────────────────────────────────

def _window(start: datetime, end: datetime):
    start, end = as_naive_utc(start), as_naive_utc(end)
    if end < start:
        raise ComputationError("Window end precedes its start", start=start, end=end)
    return start, end


def _bucket_key(value: datetime, bucket: str) -> str:
    return value.strftime("%Y-%m" if bucket == "month" else "%Y-%m-%d")


def _next_month(value: datetime) -> datetime:
    return datetime(value.year + value.month // 12, value.month % 12 + 1, 1)


def bucket_keys(start: datetime, end: datetime, bucket: str) -> List[str]:
    if bucket not in BUCKETS:
        raise InvalidBookingRequest(f"Unknown bucket '{bucket}'", bucket=bucket)
    keys = []
    if bucket == "month":
        current = datetime(start.year, start.month, 1)
        while current <= end:
            keys.append(_bucket_key(current, bucket))
            current = _next_month(current)
    else:
        current = start.replace(hour=0, minute=0, second=0, microsecond=0)
        while current <= end:
            keys.append(_bucket_key(current, bucket))
            current += timedelta(days=1)
    return keys


def _non_negative(doc: Dict, collection: str, *fields: str) -> None:
    for field in fields:
        value = doc.get(field) or 0
        if value < 0:
            raise ComputationError(
                f"Negative {field} in {collection} record {doc.get('_id')}",
                collection=collection, record_id=doc.get("_id"), field=field, value=value,
            )


def _zero_stream() -> Dict[str, float]:
    return {"count": 0, "booking_value": 0, "commission": 0}


# ─── Corpus readers ───────────────────────────────────────────────────────────

async def _lab_revenue_docs(start: Optional[datetime], end: Optional[datetime], extra: Optional[Dict] = None):
    query: Dict[str, Any] = {"payment_received_by_lab": True}
    if start is not None:
        query["payment_received_date"] = {"$gte": start, "$lte": end}
    query.update(extra or {})
    coll = db_config.get_collection(Collections.LAB_BOOKINGS)
    async for doc in coll.find(query):
        _non_negative(doc, Collections.LAB_BOOKINGS, "total_amount", "commission_amount")
        yield doc


async def _class_revenue_docs(start: Optional[datetime], end: Optional[datetime], extra: Optional[Dict] = None):
    query: Dict[str, Any] = {
        "booking_status": {"$in": ACTIVE_CLASS_STATUSES},
        "payment_status": "completed",
    }
    if start is not None:
        query["booking_date"] = {"$gte": start, "$lte": end}
    query.update(extra or {})
    coll = db_config.get_collection(Collections.CLASS_BOOKINGS)
    async for doc in coll.find(query):
        _non_negative(doc, Collections.CLASS_BOOKINGS, "amount_paid", "commission_amount")
        yield doc


# ─── Time series ──────────────────────────────────────────────────────────────

async def revenue_time_series(start: datetime, end: datetime, bucket: str = "month") -> List[Dict]:
    """
    One row per bucket, lab stream keyed on payment_received_date and class
    stream keyed on booking_date.
    """
    start, end = _window(start, end)
    rows = {
        key: {"period": key, "lab": _zero_stream(), "class": _zero_stream(), "total": _zero_stream()}
        for key in bucket_keys(start, end, bucket)
    }

    async for doc in _lab_revenue_docs(start, end):
        row = rows[_bucket_key(doc["payment_received_date"], bucket)]
        for stream in (row["lab"], row["total"]):
            stream["count"] += 1
            stream["booking_value"] += doc.get("total_amount", 0)
            stream["commission"] += doc.get("commission_amount", 0)

    async for doc in _class_revenue_docs(start, end):
        row = rows[_bucket_key(doc["booking_date"], bucket)]
        for stream in (row["class"], row["total"]):
            stream["count"] += 1
            stream["booking_value"] += doc.get("amount_paid", 0)
            stream["commission"] += doc.get("commission_amount", 0)

    return list(rows.values())


async def partner_earnings_breakdown(start: datetime, end: datetime, bucket: str = "month") -> List[Dict]:
    """Commission per lab partner per bucket; every lab appears in every bucket."""
    start, end = _window(start, end)
    partners = await db_ops.find_all(Collections.USERS, {"user_type": LAB_PARTNER}, sort=[("_id", 1)])
    keys = bucket_keys(start, end, bucket)
    cells = {
        key: {p["_id"]: {"commission": 0, "bookings": 0, "booking_value": 0} for p in partners}
        for key in keys
    }

    async for doc in _lab_revenue_docs(start, end):
        per_partner = cells[_bucket_key(doc["payment_received_date"], bucket)]
        cell = per_partner.setdefault(doc["lab_partner_id"], {"commission": 0, "bookings": 0, "booking_value": 0})
        cell["commission"] += doc.get("commission_amount", 0)
        cell["bookings"] += 1
        cell["booking_value"] += doc.get("total_amount", 0)

    names = {p["_id"]: p.get("name") for p in partners}
    result = []
    for key in keys:
        entries = [
            {"lab_partner_id": str(pid), "name": names.get(pid), **cell}
            for pid, cell in sorted(cells[key].items(), key=lambda item: item[0])
        ]
        result.append({
            "period": key,
            "partners": entries,
            "total_commission": sum(e["commission"] for e in entries),
        })
    return result


# ─── Leaderboards ─────────────────────────────────────────────────────────────

async def leaderboard(
    partner_type: str = LAB_PARTNER,
    metric: str = "commission",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> List[Dict]:
    """
    Top partners of a type by metric. Ties go to the earlier-created partner
    (ascending ObjectId).
    """
    if partner_type not in PARTNER_TYPES:
        raise InvalidBookingRequest(f"Unknown partner type '{partner_type}'", partner_type=partner_type)
    if metric not in LEADERBOARD_METRICS:
        raise InvalidBookingRequest(f"Unknown leaderboard metric '{metric}'", metric=metric)
    if (start is None) != (end is None):
        raise InvalidBookingRequest("Give both start and end, or neither")
    if start is not None:
        start, end = _window(start, end)
    limit = limit or settings.LEADERBOARD_SIZE

    partners = await db_ops.find_all(Collections.USERS, {"user_type": partner_type}, sort=[("_id", 1)])
    totals = {p["_id"]: {"commission": 0, "bookings": 0, "revenue": 0} for p in partners}

    if partner_type == LAB_PARTNER:
        async for doc in _lab_revenue_docs(start, end):
            row = totals.get(doc["lab_partner_id"])
            if row is None:
                continue
            row["commission"] += doc.get("commission_amount", 0)
            row["bookings"] += 1
            row["revenue"] += doc.get("total_amount", 0)
    else:
        async for doc in _class_revenue_docs(start, end):
            row = totals.get(parse_object_id(doc.get("trainer_id")))
            if row is None:
                continue
            row["commission"] += doc.get("commission_amount", 0)
            row["bookings"] += 1
            row["revenue"] += doc.get("amount_paid", 0)

    ranked = sorted(partners, key=lambda p: (-totals[p["_id"]][metric], p["_id"]))
    return [
        {
            "rank": position,
            "partner_id": str(p["_id"]),
            "name": p.get("name"),
            "user_type": partner_type,
            **totals[p["_id"]],
        }
        for position, p in enumerate(ranked[:limit], start=1)
    ]


# ─── Totals ───────────────────────────────────────────────────────────────────

async def platform_revenue(start: datetime, end: datetime) -> Dict:
    start, end = _window(start, end)
    lab, klass = _zero_stream(), _zero_stream()
    trainer_payouts = 0

    async for doc in _lab_revenue_docs(start, end):
        lab["count"] += 1
        lab["booking_value"] += doc.get("total_amount", 0)
        lab["commission"] += doc.get("commission_amount", 0)

    async for doc in _class_revenue_docs(start, end):
        klass["count"] += 1
        klass["booking_value"] += doc.get("amount_paid", 0)
        klass["commission"] += doc.get("commission_amount", 0)
        trainer_payouts += doc.get("trainer_payout", 0)

    return {
        "start": start,
        "end": end,
        "lab": lab,
        "class": klass,
        "trainer_payouts": trainer_payouts,
        "total_commission": lab["commission"] + klass["commission"],
        "total_booking_value": lab["booking_value"] + klass["booking_value"],
    }


async def partner_financial_summary(lab_partner_id: Any, now: Optional[datetime] = None) -> Dict:
    now = now or utc_now()
    partner = await get_partner(lab_partner_id, user_type=LAB_PARTNER)
    unbilled = await get_unbilled_summary(partner["_id"])

    lifetime = _zero_stream()
    async for doc in _lab_revenue_docs(None, None, {"lab_partner_id": partner["_id"]}):
        lifetime["count"] += 1
        lifetime["booking_value"] += doc.get("total_amount", 0)
        lifetime["commission"] += doc.get("commission_amount", 0)

    by_status = {s: {"count": 0, "total_commission": 0} for s in ("payment_due", "overdue", "paid")}
    invoices = db_config.get_collection(Collections.PLATFORM_INVOICES)
    async for invoice in invoices.find({"lab_partner_id": partner["_id"]}):
        bucket = by_status[effective_status(invoice, now)]
        bucket["count"] += 1
        bucket["total_commission"] += invoice.get("total_commission", 0)

    bookings = db_config.get_collection(Collections.LAB_BOOKINGS)
    status_counts = {s: 0 for s in ("pending", "confirmed", "completed", "cancelled")}
    async for doc in bookings.find({"lab_partner_id": partner["_id"]}, {"status": 1}):
        status_counts[doc.get("status")] = status_counts.get(doc.get("status"), 0) + 1

    return {
        "lab_partner_id": str(partner["_id"]),
        "commission_rate": await get_current_commission_rate(partner["_id"]),
        "is_suspended": bool(partner.get("is_suspended")),
        "suspension_reason": partner.get("suspension_reason"),
        "unbilled_commission": unbilled["unbilled_commission"],
        "unbilled_bookings": unbilled["unbilled_bookings"],
        "lifetime_paid_bookings": lifetime["count"],
        "lifetime_booking_value": lifetime["booking_value"],
        "lifetime_commission": lifetime["commission"],
        "invoices": by_status,
        "bookings_by_status": status_counts,
    }


# ─── Users & engagement ───────────────────────────────────────────────────────

async def monthly_user_growth(start: datetime, end: datetime) -> List[Dict]:
    """Sign-ups per month and user type, growth measured against the month before."""
    start, end = _window(start, end)
    first = datetime(start.year, start.month, 1)
    previous_start = datetime(first.year - 1, 12, 1) if first.month == 1 else datetime(first.year, first.month - 1, 1)

    keys = bucket_keys(previous_start, end, "month")
    counts = {key: {"total": 0, "by_type": {}} for key in keys}
    users = db_config.get_collection(Collections.USERS)
    async for user in users.find({"created_at": {"$gte": previous_start, "$lte": end}}):
        row = counts[_bucket_key(user["created_at"], "month")]
        user_type = user.get("user_type", "unknown")
        row["by_type"][user_type] = row["by_type"].get(user_type, 0) + 1
        row["total"] += 1

    rows = []
    for previous_key, key in zip(keys, keys[1:]):
        rows.append({
            "period": key,
            "new_users": counts[key]["total"],
            "by_type": counts[key]["by_type"],
            "growth_rate": growth_rate(counts[key]["total"], counts[previous_key]["total"]),
        })
    return rows


async def _active_enthusiasts(start: datetime, end: datetime) -> Dict[str, Any]:
    active = set()
    bookings = 0
    lab = db_config.get_collection(Collections.LAB_BOOKINGS)
    async for doc in lab.find({"created_at": {"$gte": start, "$lte": end}}, {"fitness_enthusiast_id": 1}):
        active.add(str(doc["fitness_enthusiast_id"]))
        bookings += 1
    classes = db_config.get_collection(Collections.CLASS_BOOKINGS)
    async for doc in classes.find({"booking_date": {"$gte": start, "$lte": end}}, {"user_id": 1}):
        active.add(str(doc["user_id"]))
        bookings += 1
    return {"active": active, "bookings": bookings}


async def engagement_metrics(start: datetime, end: datetime) -> Dict:
    """
    Compares the window with the equally long window right before it.
    """
    start, end = _window(start, end)
    previous_end = start - timedelta(microseconds=1000)
    previous_start = previous_end - (end - start)

    current = await _active_enthusiasts(start, end)
    previous = await _active_enthusiasts(previous_start, previous_end)
    total = await db_ops.count(Collections.USERS, {
        "user_type": FITNESS_ENTHUSIAST,
        "created_at": {"$lte": end},
    })

    return {
        "start": start,
        "end": end,
        "previous_start": previous_start,
        "previous_end": previous_end,
        "total_enthusiasts": total,
        "active_enthusiasts": len(current["active"]),
        "previously_active_enthusiasts": len(previous["active"]),
        "bookings": current["bookings"],
        "previous_bookings": previous["bookings"],
        "engagement_rate": engagement_rate(len(current["active"]), total),
        "retention_rate": retention_rate(previous["active"], current["active"]),
        "booking_growth_rate": growth_rate(current["bookings"], previous["bookings"]),
    }


# ─── Class bookings (trainer revenue stream) ──────────────────────────────────

async def record_class_booking(
    trainer_id: Any,
    user_id: Any,
    class_id: str,
    amount_paid: float,
    commission_rate: Optional[float] = None,
    now: Optional[datetime] = None,
    booking_date: Optional[datetime] = None,
) -> Dict:
    """Snapshot the trainer's commission and payout on a paid class booking."""
    trainer = await get_partner(trainer_id, user_type=TRAINER)
    user_oid = parse_object_id(user_id)
    if user_oid is None:
        raise InvalidBookingRequest("Invalid user id", user_id=user_id)
    if amount_paid is None or amount_paid < 0:
        raise InvalidBookingRequest("Amount paid cannot be negative", amount_paid=amount_paid)

    if commission_rate is None:
        commission_rate = await get_current_commission_rate(trainer["_id"])
    commission = commission_for_amount(amount_paid, commission_rate)
    now = now or utc_now()

    booking = await db_ops.create(Collections.CLASS_BOOKINGS, {
        "user_id": user_oid,
        "class_id": class_id,
        "trainer_id": trainer["_id"],
        "amount_paid": amount_paid,
        "commission_rate": float(commission_rate),
        "commission_amount": commission,
        "trainer_payout": amount_paid - commission,
        "booking_status": "active",
        "payment_status": "completed",
        "booking_date": as_naive_utc(booking_date) if booking_date else now,
        "created_at": now,
        "updated_at": now,
    })
    logger.info("🏋️ Class booking %s for trainer %s: paid %s, commission %s",
                booking["_id"], trainer["_id"], amount_paid, commission)
    return booking
