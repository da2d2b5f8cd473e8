"""
Billing Scheduler
Runs as a background asyncio task on app startup (when enabled).
Every tick it invoices all lab partners for the previous calendar month
and suspends labs whose invoices have gone past their due date.
Re-running a tick is harmless: already billed bookings are never eligible again.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from fitledger.services.invoice_service import (
    enforce_overdue_invoices,
    generate_all_invoices,
    previous_month_period,
)
from fitledger.utils.errors import BillingError
from fitledger.utils.helpers import utc_now

logger = logging.getLogger(__name__)


async def run_billing_cycle(now: Optional[datetime] = None) -> dict:
    """One tick. Errors are logged per step so one failing step never skips the other."""
    now = now or utc_now()
    summary = {"invoices": None, "enforcement": None}

    try:
        batch = await generate_all_invoices(previous_month_period(now), now=now, generated_by="scheduler")
        summary["invoices"] = {
            "generated": len(batch["generated"]),
            "skipped": len(batch["skipped"]),
            "aborted": batch["aborted"],
        }
        if batch["generated"]:
            print(f"🧾 Billing Scheduler: {len(batch['generated'])} invoice(s) generated.")
    except BillingError as exc:
        logger.error("❌ Scheduled invoicing failed: %s", exc.message)
    except Exception as exc:
        logger.error("❌ Scheduled invoicing crashed: %s", exc)

    try:
        enforcement = await enforce_overdue_invoices(now=now)
        summary["enforcement"] = {
            "newly_suspended": len(enforcement["newly_suspended"]),
            "already_suspended": len(enforcement["already_suspended"]),
        }
        if enforcement["newly_suspended"]:
            print(f"⛔ Billing Scheduler: {len(enforcement['newly_suspended'])} lab(s) suspended for overdue invoices.")
    except Exception as exc:
        logger.error("❌ Overdue enforcement failed: %s", exc)

    return summary


async def run_billing_scheduler(interval_seconds: int = 3600) -> None:
    """
    Infinite loop that calls run_billing_cycle() every `interval_seconds`.
    Designed to be launched as an asyncio background task from the app lifespan.
    """
    print(f"🕐 Billing Scheduler started (interval: {interval_seconds}s)")
    await run_billing_cycle()
    while True:
        await asyncio.sleep(interval_seconds)
        await run_billing_cycle()
