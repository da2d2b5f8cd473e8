import asyncio
from datetime import datetime, timedelta

import pytest

from fitledger.config.database import Collections
from fitledger.services import booking_store, invoice_service, payment_tracker
from fitledger.services.invoice_service import effective_status, resolve_billing_period
from fitledger.utils.errors import (
    ConcurrentModification,
    InvalidBillingPeriod,
    InvalidPaymentMethod,
    InvoiceAlreadyPaid,
    InvoiceGenerationError,
    NoEligibleBookings,
    PartnerSuspended,
)

from conftest import NOW

MARCH = {"type": "monthly", "month": 3, "year": 2026}


@pytest.fixture
def paid_booking(make_booking):
    async def _make(tests=None, partner=None, paid_at=NOW, rate=None):
        booking = await make_booking(tests=tests, partner=partner)
        return await payment_tracker.record_user_payment(
            booking["_id"], "cash", commission_rate=rate, now=paid_at
        )
    return _make


# ─── Periods ──────────────────────────────────────────────────────────────────

def test_monthly_period_bounds():
    period = resolve_billing_period({"type": "monthly", "month": 2, "year": 2024})
    assert period["start_date"] == datetime(2024, 2, 1)
    assert period["end_date"] == datetime(2024, 2, 29, 23, 59, 59, 999000)


def test_weekly_period_is_seven_days():
    period = resolve_billing_period({"type": "weekly", "start_date": datetime(2026, 3, 2, 15, 30)})
    assert period["start_date"] == datetime(2026, 3, 2)
    assert period["end_date"] == datetime(2026, 3, 8, 23, 59, 59, 999000)


def test_custom_period_end_inclusive():
    period = resolve_billing_period({
        "type": "custom",
        "start_date": datetime(2026, 3, 1),
        "end_date": datetime(2026, 3, 15),
    })
    assert period["end_date"] == datetime(2026, 3, 15, 23, 59, 59, 999000)


@pytest.mark.parametrize("period", [
    {"type": "monthly", "month": 13, "year": 2026},
    {"type": "monthly", "year": 2026},
    {"type": "weekly"},
    {"type": "custom", "start_date": datetime(2026, 3, 10), "end_date": datetime(2026, 3, 1)},
    {"type": "quarterly"},
])
def test_invalid_periods(period):
    with pytest.raises(InvalidBillingPeriod):
        resolve_billing_period(period)


# ─── Generation ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_totals_reconcile_with_breakdown(paid_booking, lab):
    await paid_booking()
    await paid_booking(tests=[{"test_name": "Vitamin D", "price": 333}], rate=15)
    invoice = await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)

    breakdown = invoice["commission_breakdown"]
    assert invoice["number_of_bookings"] == len(breakdown) == 2
    assert invoice["total_commission"] == sum(e["commission_amount"] for e in breakdown) == 180
    assert invoice["total_booking_value"] == 1633
    assert breakdown[0]["test_names"] == ["CBC", "Lipid Panel"]
    assert invoice["status"] == "payment_due"
    assert invoice["due_date"] == NOW + timedelta(days=15)


@pytest.mark.asyncio
async def test_generation_is_exactly_once(paid_booking, lab):
    booking = await paid_booking()
    invoice = await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)

    with pytest.raises(NoEligibleBookings):
        await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)

    stored = await booking_store.get_booking(booking["_id"])
    assert stored["commission_status"] == "billed"
    assert stored["billed_invoice_id"] == invoice["_id"]


@pytest.mark.asyncio
async def test_overlapping_periods_never_double_bill(paid_booking, lab):
    await paid_booking()
    march = await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)
    with pytest.raises(NoEligibleBookings):
        await invoice_service.generate_invoice(lab["_id"], {
            "type": "custom", "start_date": datetime(2026, 3, 1), "end_date": datetime(2026, 3, 31),
        }, now=NOW)
    assert march["number_of_bookings"] == 1


@pytest.mark.asyncio
async def test_concurrent_generation_for_same_partner(paid_booking, lab, db):
    await paid_booking()
    await paid_booking()
    results = await asyncio.gather(
        invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW),
        invoice_service.generate_invoice(lab["_id"], {"type": "weekly", "start_date": datetime(2026, 3, 9)}, now=NOW),
        return_exceptions=True,
    )
    invoices = [r for r in results if isinstance(r, dict)]
    assert len(invoices) == 1
    assert isinstance([r for r in results if not isinstance(r, dict)][0], NoEligibleBookings)
    assert await db[Collections.PLATFORM_INVOICES].count_documents({}) == 1


@pytest.mark.asyncio
async def test_only_bookings_paid_in_period_are_folded(paid_booking, make_booking, lab):
    in_march = await paid_booking()
    await paid_booking(paid_at=datetime(2026, 4, 1, 0, 0, 1))
    await make_booking()
    invoice = await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)
    assert invoice["booking_ids"] == [in_march["_id"]]


@pytest.mark.asyncio
async def test_other_partners_bookings_not_folded(paid_booking, make_user, lab):
    other_lab = await make_user("lab-partner", commission_rate=10)
    await paid_booking(partner=other_lab)
    with pytest.raises(NoEligibleBookings):
        await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)


@pytest.mark.asyncio
async def test_invoice_number_format(paid_booking, lab):
    await paid_booking()
    first = await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)
    await paid_booking(paid_at=NOW + timedelta(days=1))
    second = await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW + timedelta(days=1))

    suffix = str(lab["_id"])[-4:].upper()
    assert first["invoice_number"] == f"202603{suffix}0001"
    assert second["invoice_number"] == f"202603{suffix}0002"


@pytest.mark.asyncio
async def test_taken_invoice_number_is_skipped(paid_booking, lab, invoice_indexes):
    suffix = str(lab["_id"])[-4:].upper()
    await invoice_indexes[Collections.PLATFORM_INVOICES].insert_one({"invoice_number": f"202603{suffix}0002"})
    await paid_booking()

    invoice = await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)
    assert invoice["invoice_number"] == f"202603{suffix}0003"
    assert await invoice_indexes[Collections.PLATFORM_INVOICES].count_documents({}) == 2


@pytest.mark.asyncio
async def test_failed_insert_rolls_back_every_flip(paid_booking, lab, db, monkeypatch):
    bookings = [await paid_booking() for _ in range(3)]

    async def broken_insert(invoice):
        raise RuntimeError("disk full")

    monkeypatch.setattr(invoice_service, "_insert_invoice", broken_insert)
    with pytest.raises(InvoiceGenerationError):
        await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)

    for booking in bookings:
        stored = await booking_store.get_booking(booking["_id"])
        assert stored["commission_status"] == "unbilled"
        assert stored["billed_invoice_id"] is None
    assert await db[Collections.PLATFORM_INVOICES].count_documents({}) == 0

    monkeypatch.undo()
    invoice = await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)
    assert invoice["number_of_bookings"] == 3


@pytest.mark.asyncio
async def test_failed_numbering_rolls_back_every_flip(paid_booking, lab, db, monkeypatch):
    bookings = [await paid_booking() for _ in range(2)]

    async def broken_count(collection_name, filter_query=None):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(invoice_service.db_ops, "count", broken_count)
    with pytest.raises(InvoiceGenerationError):
        await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)

    for booking in bookings:
        stored = await booking_store.get_booking(booking["_id"])
        assert stored["commission_status"] == "unbilled"
        assert stored["billed_invoice_id"] is None
    assert await db[Collections.PLATFORM_INVOICES].count_documents({}) == 0

    monkeypatch.undo()
    invoice = await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)
    assert invoice["number_of_bookings"] == 2


@pytest.mark.asyncio
async def test_booking_billed_elsewhere_mid_fold_aborts_run(paid_booking, lab, db, monkeypatch):
    first = await paid_booking()
    second = await paid_booking()
    real_select = invoice_service._select_eligible

    async def racing_select(partner_id, billing_period):
        selected = await real_select(partner_id, billing_period)
        await db[Collections.LAB_BOOKINGS].update_one(
            {"_id": second["_id"]}, {"$set": {"commission_status": "billed"}}
        )
        return selected

    monkeypatch.setattr(invoice_service, "_select_eligible", racing_select)
    with pytest.raises(ConcurrentModification):
        await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)

    stored = await booking_store.get_booking(first["_id"])
    assert stored["commission_status"] == "unbilled"
    assert stored["billed_invoice_id"] is None
    assert await db[Collections.PLATFORM_INVOICES].count_documents({}) == 0


@pytest.mark.asyncio
async def test_generate_all_skips_empty_partners(paid_booking, make_user, lab):
    idle_lab = await make_user("lab-partner")
    await paid_booking()
    result = await invoice_service.generate_all_invoices(MARCH, now=NOW)

    assert [i["lab_partner_id"] for i in result["generated"]] == [lab["_id"]]
    assert result["skipped"] == [str(idle_lab["_id"])]
    assert result["aborted"] is False


@pytest.mark.asyncio
async def test_generate_all_aborts_on_failure(paid_booking, monkeypatch):
    await paid_booking()

    async def broken_insert(invoice):
        raise RuntimeError("write conflict")

    monkeypatch.setattr(invoice_service, "_insert_invoice", broken_insert)
    result = await invoice_service.generate_all_invoices(MARCH, now=NOW)
    assert result["aborted"] is True
    assert result["failure"]["code"] == "invoice_generation_failed"
    assert result["generated"] == []


# ─── Status, payment & enforcement ────────────────────────────────────────────

def test_overdue_is_derived_from_due_date():
    invoice = {"status": "payment_due", "due_date": NOW}
    assert effective_status(invoice, NOW - timedelta(seconds=1)) == "payment_due"
    assert effective_status(invoice, NOW + timedelta(seconds=1)) == "overdue"
    assert effective_status({**invoice, "status": "paid"}, NOW + timedelta(days=30)) == "paid"


@pytest.mark.asyncio
async def test_reads_return_derived_status(paid_booking, lab):
    await paid_booking()
    invoice = await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)
    later = NOW + timedelta(days=16)

    fetched = await invoice_service.get_invoice(invoice["_id"], now=later)
    assert fetched["status"] == "overdue"
    overdue = await invoice_service.list_invoices(status="overdue", now=later)
    assert [i["_id"] for i in overdue] == [invoice["_id"]]
    assert await invoice_service.list_invoices(status="payment_due", now=later) == []


@pytest.mark.asyncio
async def test_mark_paid_leaves_bookings_untouched(paid_booking, lab):
    booking = await paid_booking()
    invoice = await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)

    result = await invoice_service.mark_invoice_paid(invoice["_id"], "bank_transfer", "TX-1", now=NOW)
    assert result["invoice"]["status"] == "paid"
    assert result["invoice"]["payment_reference"] == "TX-1"
    assert (await booking_store.get_booking(booking["_id"]))["commission_status"] == "billed"

    with pytest.raises(InvoiceAlreadyPaid):
        await invoice_service.mark_invoice_paid(invoice["_id"], "cash")


@pytest.mark.asyncio
async def test_mark_paid_validates_method(paid_booking, lab):
    await paid_booking()
    invoice = await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)
    with pytest.raises(InvalidPaymentMethod):
        await invoice_service.mark_invoice_paid(invoice["_id"], "barter")


@pytest.mark.asyncio
async def test_grace_period_report(paid_booking, lab):
    await paid_booking()
    invoice = await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)
    due = invoice["due_date"]

    report = await invoice_service.grace_period_report(now=due - timedelta(days=10))
    assert report["invoices"][0]["grace_status"] == "normal"
    report = await invoice_service.grace_period_report(now=due - timedelta(days=3))
    assert report["invoices"][0]["grace_status"] == "grace_period"
    assert report["invoices"][0]["days_until_due"] == 3
    report = await invoice_service.grace_period_report(now=due + timedelta(days=1))
    assert report["summary"]["overdue"] == 1
    assert report["summary"]["total_outstanding"] == 130


@pytest.mark.asyncio
async def test_overdue_suspends_then_payment_restores(paid_booking, make_booking, lab, db):
    await paid_booking()
    invoice = await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)
    later = NOW + timedelta(days=20)

    result = await invoice_service.enforce_overdue_invoices(now=later)
    assert [s["lab_partner_id"] for s in result["newly_suspended"]] == [str(lab["_id"])]
    again = await invoice_service.enforce_overdue_invoices(now=later)
    assert again["already_suspended"] == [str(lab["_id"])]

    with pytest.raises(PartnerSuspended):
        await make_booking()

    paid = await invoice_service.mark_invoice_paid(invoice["_id"], "online", now=later)
    assert paid["partner_restored"] is True
    partner = await db[Collections.USERS].find_one({"_id": lab["_id"]})
    assert partner["is_suspended"] is False
    await make_booking()


@pytest.mark.asyncio
async def test_manual_suspension_not_lifted_by_payment(paid_booking, lab, db):
    await paid_booking()
    invoice = await invoice_service.generate_invoice(lab["_id"], MARCH, now=NOW)
    await db[Collections.USERS].update_one(
        {"_id": lab["_id"]}, {"$set": {"is_suspended": True, "suspension_reason": "audit"}}
    )
    paid = await invoice_service.mark_invoice_paid(invoice["_id"], now=NOW)
    assert paid["partner_restored"] is False
