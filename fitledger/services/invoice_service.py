"""
Invoice Aggregator – folds a lab partner's unbilled commissions for a billing
period into a platform invoice.

Folding is all-or-nothing without a multi-document transaction:

  1. select the eligible bookings (unbilled, paid within the period, this lab)
  2. flip them unbilled → billed in one guarded update_many, tagged with the
     pre-allocated invoice id
  3. if fewer bookings flipped than were selected, someone else got there
     first: undo our flips and raise ConcurrentModification
  4. number and insert the invoice; if anything fails after the flip, undo
     every flip and raise InvoiceGenerationError

Invoice numbers are unique (see DatabaseConfig.ensure_indexes). A number
taken by a concurrent run is skipped and the next one in sequence is tried.

Runs for the same partner are serialised by an in-process lock so two
overlapping periods cannot race each other into step 3.

An invoice's stored status is only ever payment_due or paid; overdue is
derived from the due date every time an invoice is read.
"""
import asyncio
import calendar
import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from fitledger.config.database import Collections, db_config
from fitledger.config.settings import settings
from fitledger.database.db_operations import db_ops
from fitledger.services import events
from fitledger.services.commission_service import LAB_PARTNER, get_partner, partner_ids_of_type
from fitledger.services.payment_tracker import validate_payment_method
from fitledger.utils.errors import (
    BillingError,
    ConcurrentModification,
    InvalidBillingPeriod,
    InvoiceAlreadyPaid,
    InvoiceGenerationError,
    InvoiceNotFound,
    NoEligibleBookings,
)
from fitledger.utils.helpers import as_naive_utc, clamp_page, parse_object_id, utc_now

logger = logging.getLogger(__name__)

OVERDUE_SUSPENSION = "overdue_invoices"
INVOICE_NUMBER_ATTEMPTS = 5

_partner_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)


# ─── Billing periods ──────────────────────────────────────────────────────────

def _end_of_day(value: datetime) -> datetime:
    return value.replace(hour=23, minute=59, second=59, microsecond=999000)


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def resolve_billing_period(period: Dict) -> Dict[str, Any]:
    """
    Turn a period request into concrete inclusive bounds.

    monthly  {month, year}           1st 00:00 → last day 23:59:59.999
    weekly   {start_date}            start day 00:00 → start + 6 days 23:59:59.999
    custom   {start_date, end_date}  both days inclusive
    """
    period_type = period.get("type") or "monthly"

    if period_type == "monthly":
        month, year = period.get("month"), period.get("year")
        if not month or not year or not 1 <= int(month) <= 12:
            raise InvalidBillingPeriod("Monthly periods need a month (1-12) and a year",
                                       month=month, year=year)
        month, year = int(month), int(year)
        last_day = calendar.monthrange(year, month)[1]
        return {
            "type": "monthly",
            "month": month,
            "year": year,
            "start_date": datetime(year, month, 1),
            "end_date": _end_of_day(datetime(year, month, last_day)),
        }

    if period_type == "weekly":
        if not period.get("start_date"):
            raise InvalidBillingPeriod("Weekly periods need a start date")
        start = _start_of_day(as_naive_utc(period["start_date"]))
        return {
            "type": "weekly",
            "month": None,
            "year": None,
            "start_date": start,
            "end_date": _end_of_day(start + timedelta(days=6)),
        }

    if period_type == "custom":
        if not period.get("start_date") or not period.get("end_date"):
            raise InvalidBillingPeriod("Custom periods need both a start and an end date")
        start = _start_of_day(as_naive_utc(period["start_date"]))
        end = _end_of_day(as_naive_utc(period["end_date"]))
        if end < start:
            raise InvalidBillingPeriod("End date must not be before start date",
                                       start_date=start, end_date=end)
        return {"type": "custom", "month": None, "year": None, "start_date": start, "end_date": end}

    raise InvalidBillingPeriod(f"Unknown billing period type '{period_type}'", type=period_type)


def previous_month_period(now: datetime) -> Dict[str, Any]:
    first_of_month = now.replace(day=1)
    last_month = first_of_month - timedelta(days=1)
    return {"type": "monthly", "month": last_month.month, "year": last_month.year}


# ─── Numbering ────────────────────────────────────────────────────────────────

async def next_invoice_number(partner_id: ObjectId, billing_period: Dict, skip: int = 0) -> str:
    """
    YYYYMM + last 4 of the partner id + 4-digit sequence within that month.
    `skip` moves past sequence numbers already found to be taken.
    """
    anchor = billing_period["start_date"]
    year = billing_period.get("year") or anchor.year
    month = billing_period.get("month") or anchor.month
    prefix = f"{year}{month:02d}"
    issued = await db_ops.count(Collections.PLATFORM_INVOICES, {"invoice_number": {"$regex": f"^{prefix}"}})
    return f"{prefix}{str(partner_id)[-4:].upper()}{issued + 1 + skip:04d}"


# ─── Status ───────────────────────────────────────────────────────────────────

def effective_status(invoice: Dict, now: datetime) -> str:
    if invoice.get("status") == "paid":
        return "paid"
    due_date = invoice.get("due_date")
    if due_date is not None and due_date < now:
        return "overdue"
    return "payment_due"


def with_effective_status(invoice: Dict, now: datetime) -> Dict:
    invoice = dict(invoice)
    invoice["status"] = effective_status(invoice, now)
    return invoice


def _status_query(status: str, now: datetime) -> Dict:
    if status == "paid":
        return {"status": "paid"}
    if status == "overdue":
        return {"status": {"$ne": "paid"}, "due_date": {"$lt": now}}
    if status == "payment_due":
        return {"status": {"$ne": "paid"}, "due_date": {"$gte": now}}
    raise InvalidBillingPeriod(f"Unknown invoice status '{status}'", status=status)


# ─── Generation ───────────────────────────────────────────────────────────────

async def _select_eligible(partner_id: ObjectId, billing_period: Dict) -> List[Dict]:
    return await db_ops.find_all(
        Collections.LAB_BOOKINGS,
        {
            "lab_partner_id": partner_id,
            "commission_status": "unbilled",
            "user_payment_date": {"$gte": billing_period["start_date"], "$lte": billing_period["end_date"]},
        },
        sort=[("user_payment_date", 1), ("_id", 1)],
    )


async def _insert_invoice(invoice: Dict) -> Dict:
    return await db_ops.create(Collections.PLATFORM_INVOICES, invoice)


async def _insert_numbered(invoice: Dict, partner_id: ObjectId, billing_period: Dict) -> Dict:
    for attempt in range(INVOICE_NUMBER_ATTEMPTS):
        invoice["invoice_number"] = await next_invoice_number(partner_id, billing_period, skip=attempt)
        try:
            return await _insert_invoice(invoice)
        except DuplicateKeyError:
            logger.warning("🔁 Invoice number %s already taken, trying the next one", invoice["invoice_number"])
    raise InvoiceGenerationError(
        "Could not allocate a unique invoice number",
        lab_partner_id=partner_id,
        attempts=INVOICE_NUMBER_ATTEMPTS,
    )


async def _revert_fold(invoice_id: ObjectId) -> int:
    reverted = await db_ops.update_many(
        Collections.LAB_BOOKINGS,
        {"billed_invoice_id": invoice_id},
        {"commission_status": "unbilled", "billed_invoice_id": None, "billing_period": None},
    )
    logger.warning("↩️  Reverted %d booking(s) folded into invoice %s", reverted, invoice_id)
    return reverted


def _breakdown_entry(booking: Dict) -> Dict:
    return {
        "booking_id": booking["_id"],
        "fitness_enthusiast_id": booking.get("fitness_enthusiast_id"),
        "fitness_enthusiast_name": booking.get("fitness_enthusiast_name"),
        "test_names": [t.get("test_name") for t in booking.get("selected_tests", [])],
        "booking_date": booking.get("booking_date"),
        "total_amount": booking.get("total_amount", 0),
        "commission_rate": booking.get("commission_rate"),
        "commission_amount": booking.get("commission_amount", 0),
    }


async def _fold(partner: Dict, billing_period: Dict, now: datetime, generated_by: str, notes: Optional[str]) -> Dict:
    partner_id = partner["_id"]
    eligible = await _select_eligible(partner_id, billing_period)
    if not eligible:
        raise NoEligibleBookings(
            lab_partner_id=partner_id,
            period_start=billing_period["start_date"],
            period_end=billing_period["end_date"],
        )

    invoice_id = ObjectId()
    booking_ids = [b["_id"] for b in eligible]
    period_tag = {k: billing_period[k] for k in ("type", "month", "year", "start_date", "end_date")}

    flipped = await db_ops.update_many(
        Collections.LAB_BOOKINGS,
        {"_id": {"$in": booking_ids}, "commission_status": "unbilled"},
        {
            "commission_status": "billed",
            "billed_invoice_id": invoice_id,
            "billing_period": period_tag,
            "updated_at": now,
        },
    )
    if flipped != len(booking_ids):
        await _revert_fold(invoice_id)
        raise ConcurrentModification(
            "Some bookings were billed by another run; reload and try again",
            lab_partner_id=partner_id,
            selected=len(booking_ids),
            flipped=flipped,
            operation="generate_invoice",
        )

    # Each entry is already rounded, so the total is a plain sum of entries
    breakdown = [_breakdown_entry(b) for b in eligible]
    invoice = {
        "_id": invoice_id,
        "invoice_number": None,
        "lab_partner_id": partner_id,
        "billing_period": period_tag,
        "commission_breakdown": breakdown,
        "booking_ids": booking_ids,
        "number_of_bookings": len(breakdown),
        "total_booking_value": sum(e["total_amount"] for e in breakdown),
        "total_commission": sum(e["commission_amount"] for e in breakdown),
        "status": "payment_due",
        "due_date": now + timedelta(days=settings.INVOICE_GRACE_DAYS),
        "generated_date": now,
        "paid_date": None,
        "payment_method": None,
        "payment_reference": None,
        "payment_notes": None,
        "generated_by": generated_by or "system",
        "notes": notes,
        "created_at": now,
        "updated_at": now,
    }

    try:
        invoice = await _insert_numbered(invoice, partner_id, billing_period)
    except InvoiceGenerationError:
        await _revert_fold(invoice_id)
        raise
    except Exception as exc:
        logger.error("❌ Invoice insert failed for lab %s: %s", partner_id, exc)
        await _revert_fold(invoice_id)
        raise InvoiceGenerationError(lab_partner_id=partner_id, reason=str(exc)) from exc

    await events.emit(events.INVOICE_GENERATED, invoice_id, {
        "lab_partner_id": str(partner_id),
        "invoice_number": invoice["invoice_number"],
        "total_commission": invoice["total_commission"],
        "number_of_bookings": invoice["number_of_bookings"],
    }, now=now)
    logger.info("🧾 Invoice %s generated for lab %s: %d booking(s), commission %s",
                invoice["invoice_number"], partner_id, invoice["number_of_bookings"],
                invoice["total_commission"])
    return invoice


async def generate_invoice(
    lab_partner_id: Any,
    period: Dict,
    now: Optional[datetime] = None,
    generated_by: str = "system",
    notes: Optional[str] = None,
) -> Dict:
    partner = await get_partner(lab_partner_id, user_type=LAB_PARTNER)
    billing_period = resolve_billing_period(period)
    now = now or utc_now()
    async with _partner_locks[str(partner["_id"])]:
        invoice = await _fold(partner, billing_period, now, generated_by, notes)
    return with_effective_status(invoice, now)


async def generate_all_invoices(
    period: Dict,
    partner_ids: Optional[List[Any]] = None,
    now: Optional[datetime] = None,
    generated_by: str = "system",
) -> Dict:
    """
    Invoice every (or the listed) lab partner for one period. Partners with
    nothing to bill are skipped; any other failure stops the run and is
    reported alongside what was already generated.
    """
    billing_period = resolve_billing_period(period)
    now = now or utc_now()
    targets = partner_ids if partner_ids is not None else await partner_ids_of_type(LAB_PARTNER)

    generated, skipped = [], []
    failure = None
    for partner_id in targets:
        try:
            generated.append(await generate_invoice(partner_id, period, now=now, generated_by=generated_by))
        except NoEligibleBookings:
            skipped.append(str(partner_id))
        except BillingError as exc:
            logger.error("❌ Batch invoicing aborted at lab %s: %s", partner_id, exc.message)
            failure = {"lab_partner_id": str(partner_id), **exc.to_dict()}
            break

    logger.info("🧾 Batch invoicing: %d generated, %d skipped%s",
                len(generated), len(skipped), ", aborted" if failure else "")
    return {
        "billing_period": billing_period,
        "generated": generated,
        "skipped": skipped,
        "failure": failure,
        "aborted": failure is not None,
    }


# ─── Reads ────────────────────────────────────────────────────────────────────

async def get_invoice(invoice_id: Any, now: Optional[datetime] = None) -> Dict:
    invoice = await db_ops.get_by_id(Collections.PLATFORM_INVOICES, invoice_id)
    if not invoice:
        raise InvoiceNotFound(invoice_id=invoice_id)
    return with_effective_status(invoice, now or utc_now())


async def list_invoices(
    lab_partner_id: Optional[Any] = None,
    status: Optional[str] = None,
    year: Optional[int] = None,
    now: Optional[datetime] = None,
    skip: int = 0,
    limit: int = 20,
) -> List[Dict]:
    now = now or utc_now()
    query: Dict[str, Any] = {}
    if lab_partner_id:
        query["lab_partner_id"] = parse_object_id(lab_partner_id)
    if status:
        query.update(_status_query(status, now))
    if year:
        query["billing_period.start_date"] = {"$gte": datetime(year, 1, 1), "$lt": datetime(year + 1, 1, 1)}
    skip, limit = clamp_page(skip, limit)
    invoices = await db_ops.get_all(
        Collections.PLATFORM_INVOICES, query, skip=skip, limit=limit,
        sort=[("generated_date", -1), ("_id", -1)],
    )
    return [with_effective_status(i, now) for i in invoices]


# ─── Payment & enforcement ────────────────────────────────────────────────────

async def _count_overdue(partner_id: ObjectId, now: datetime) -> int:
    return await db_ops.count(Collections.PLATFORM_INVOICES, {
        "lab_partner_id": partner_id,
        **_status_query("overdue", now),
    })


async def mark_invoice_paid(
    invoice_id: Any,
    method: Optional[str] = None,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict:
    """
    Record the lab's payment of an invoice. Bookings are left as they are.
    A lab suspended for overdue invoices is restored once none remain.
    """
    method = validate_payment_method(method or "bank_transfer", settings.VALID_INVOICE_PAYMENT_METHODS)
    invoice = await db_ops.get_by_id(Collections.PLATFORM_INVOICES, invoice_id)
    if not invoice:
        raise InvoiceNotFound(invoice_id=invoice_id)
    if invoice.get("status") == "paid":
        raise InvoiceAlreadyPaid(invoice_id=invoice["_id"], paid_date=invoice.get("paid_date"))

    now = now or utc_now()
    updated = await db_ops.compare_and_set(
        Collections.PLATFORM_INVOICES,
        invoice["_id"],
        {"status": {"$ne": "paid"}},
        {
            "status": "paid",
            "paid_date": now,
            "payment_method": method,
            "payment_reference": reference,
            "payment_notes": notes,
            "updated_at": now,
        },
    )
    if updated is None:
        raise InvoiceAlreadyPaid(invoice_id=invoice["_id"])

    await events.emit(events.INVOICE_PAID, invoice["_id"], {
        "lab_partner_id": str(invoice["lab_partner_id"]),
        "invoice_number": invoice["invoice_number"],
        "payment_method": method,
    }, now=now)
    logger.info("✅ Invoice %s marked paid (%s)", invoice["invoice_number"], method)

    restored = False
    partner = await db_ops.get_by_id(Collections.USERS, invoice["lab_partner_id"])
    if partner and partner.get("is_suspended") and partner.get("suspension_cause") == OVERDUE_SUSPENSION:
        if await _count_overdue(partner["_id"], now) == 0:
            await db_ops.update(Collections.USERS, partner["_id"], {
                "is_suspended": False,
                "suspension_reason": None,
                "suspension_cause": None,
                "suspended_at": None,
                "updated_at": now,
            })
            await events.emit(events.PARTNER_RESTORED, partner["_id"], {
                "invoice_id": str(invoice["_id"]),
            }, now=now)
            logger.info("🔓 Lab %s restored after paying its overdue invoices", partner["_id"])
            restored = True

    return {"invoice": with_effective_status(updated, now), "partner_restored": restored}


async def grace_period_report(now: Optional[datetime] = None, warning_days: Optional[int] = None) -> Dict:
    now = now or utc_now()
    warning_days = settings.GRACE_WARNING_DAYS if warning_days is None else warning_days
    coll = db_config.get_collection(Collections.PLATFORM_INVOICES)

    entries = []
    summary = {"overdue": 0, "grace_period": 0, "normal": 0, "total_outstanding": 0}
    async for invoice in coll.find({"status": {"$ne": "paid"}}).sort([("due_date", 1), ("_id", 1)]):
        due_date = invoice["due_date"]
        days_until_due = math.ceil((due_date - now).total_seconds() / 86400)
        if due_date < now:
            grace_status = "overdue"
        elif days_until_due <= warning_days:
            grace_status = "grace_period"
        else:
            grace_status = "normal"
        summary[grace_status] += 1
        summary["total_outstanding"] += invoice.get("total_commission", 0)
        entries.append({
            "invoice_id": invoice["_id"],
            "invoice_number": invoice["invoice_number"],
            "lab_partner_id": invoice["lab_partner_id"],
            "total_commission": invoice.get("total_commission", 0),
            "due_date": due_date,
            "days_until_due": days_until_due,
            "grace_status": grace_status,
        })
    return {"invoices": entries, "summary": summary}


async def enforce_overdue_invoices(now: Optional[datetime] = None) -> Dict:
    """Suspend every lab that has at least one overdue invoice."""
    now = now or utc_now()
    coll = db_config.get_collection(Collections.PLATFORM_INVOICES)

    overdue_by_partner: Dict[ObjectId, Dict[str, Any]] = {}
    async for invoice in coll.find(_status_query("overdue", now)).sort([("lab_partner_id", 1)]):
        bucket = overdue_by_partner.setdefault(invoice["lab_partner_id"], {"count": 0, "total": 0})
        bucket["count"] += 1
        bucket["total"] += invoice.get("total_commission", 0)

    newly_suspended, already_suspended = [], []
    for partner_id, overdue in overdue_by_partner.items():
        reason = f"{overdue['count']} overdue invoice(s) totalling {overdue['total']}"
        suspended = await db_ops.compare_and_set(
            Collections.USERS,
            partner_id,
            {"is_suspended": {"$ne": True}},
            {
                "is_suspended": True,
                "suspension_reason": reason,
                "suspension_cause": OVERDUE_SUSPENSION,
                "suspended_at": now,
                "updated_at": now,
            },
        )
        if suspended is None:
            already_suspended.append(str(partner_id))
            continue
        newly_suspended.append({"lab_partner_id": str(partner_id), "reason": reason})
        await events.emit(events.PARTNER_SUSPENDED, partner_id, {"reason": reason, **overdue}, now=now)
        logger.warning("⛔ Lab %s suspended: %s", partner_id, reason)

    return {
        "overdue_partners": len(overdue_by_partner),
        "newly_suspended": newly_suspended,
        "already_suspended": already_suspended,
    }
