"""
Proration

Time-based credit/debit for mid-cycle plan or amount changes.
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from fractions import Fraction
from typing import Optional

from .base import (
    CurrencyMismatchError,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    MissingPriceError,
    Number,
    Plan,
    PriceType,
    ProrationResult,
    round_minor,
    to_decimal,
    utc,
)


logger = logging.getLogger(__name__)

_MICROSECOND = timedelta(microseconds=1)


def _round_fraction(amount: Number, fraction: Fraction) -> int:
    exact = Fraction(to_decimal(amount)) * fraction
    return round_minor(Decimal(exact.numerator) / Decimal(exact.denominator))


class ProrationCalculator:
    """Calculates proration using the remaining fraction of the billing cycle."""

    def remaining_fraction(
        self,
        period_start: datetime,
        period_end: datetime,
        change_date: datetime,
    ) -> Fraction:
        """Exact remaining fraction of the period, clamped to [0, 1]."""
        total = utc(period_end) - utc(period_start)
        if total.total_seconds() <= 0:
            return Fraction(0)

        remaining = utc(period_end) - utc(change_date)
        # timedelta // timedelta is exact integer division on microseconds
        fraction = Fraction(remaining // _MICROSECOND, total // _MICROSECOND)
        return min(Fraction(1), max(Fraction(0), fraction))

    def calculate(
        self,
        old_amount: Number,
        new_amount: Number,
        period_start: datetime,
        period_end: datetime,
        change_date: datetime,
    ) -> ProrationResult:
        """
        Calculate proration for a change at `change_date`.

        fraction = (period_end - change_date) / (period_end - period_start).
        A zero or negative period length yields an all-zero result.
        """
        fraction = self.remaining_fraction(period_start, period_end, change_date)
        if fraction == 0:
            return ProrationResult(credit=0, debit=0, net=0, fraction=0.0)

        credit = _round_fraction(old_amount, fraction)
        debit = _round_fraction(new_amount, fraction)
        return ProrationResult(
            credit=credit,
            debit=debit,
            net=debit - credit,
            fraction=float(fraction),
        )

    def generate_invoice(
        self,
        old_amount: Number,
        new_amount: Number,
        period_start: datetime,
        period_end: datetime,
        change_date: datetime,
        currency: str,
        customer_id: str,
        subscription_id: Optional[str] = None,
    ) -> Invoice:
        """Build a proration invoice: negative credit line, positive debit line."""
        result = self.calculate(old_amount, new_amount, period_start, period_end, change_date)

        items = [
            InvoiceItem(
                description="Proration credit (unused old plan)",
                amount=-result.credit,
                currency=currency,
            ),
            InvoiceItem(
                description="Proration debit (remaining new plan)",
                amount=result.debit,
                currency=currency,
            ),
        ]

        invoice = Invoice(
            id=f"inv_proration_{uuid.uuid4().hex[:16]}",
            customer_id=customer_id,
            subscription_id=subscription_id,
            currency=currency,
            items=items,
            total=result.net,
            status=InvoiceStatus.OPEN,
            issued_at=change_date,
            metadata={"fraction": result.fraction},
        )

        logger.info(
            f"Generated proration invoice {invoice.id} for {customer_id}: "
            f"credit={result.credit} debit={result.debit} net={result.net} {currency}"
        )
        return invoice

    def resolve_plan_amount(self, plan: Plan, seats: Optional[int] = None) -> int:
        """
        Base price of a plan times seats.

        Uses the `base_price_id` price when the plan names one, otherwise the
        first flat price in the plan currency.
        """
        base_price = None
        if plan.base_price_id:
            base_price = next(
                (p for p in plan.pricing if p.id == plan.base_price_id and p.type == PriceType.FLAT),
                None,
            )
        if base_price is None:
            base_price = next(
                (p for p in plan.pricing if p.type == PriceType.FLAT and p.currency == plan.currency),
                None,
            )
        if base_price is None:
            raise MissingPriceError(
                f"ProrationCalculator: plan '{plan.id}' must include a flat/base price "
                f"in currency {plan.currency}",
                plan_id=plan.id,
            )

        return base_price.unit_amount * max(1, int(seats or 0))

    def generate_invoice_from_plans(
        self,
        old_plan: Plan,
        new_plan: Plan,
        period_start: datetime,
        period_end: datetime,
        change_date: datetime,
        customer_id: str,
        seats: Optional[int] = None,
        subscription_id: Optional[str] = None,
    ) -> Invoice:
        """Generate a proration invoice from the base prices of two plans."""
        if old_plan.currency != new_plan.currency:
            raise CurrencyMismatchError(
                old_plan.currency,
                new_plan.currency,
                "ProrationCalculator: currency mismatch between old and new plans",
            )

        return self.generate_invoice(
            old_amount=self.resolve_plan_amount(old_plan, seats),
            new_amount=self.resolve_plan_amount(new_plan, seats),
            period_start=period_start,
            period_end=period_end,
            change_date=change_date,
            currency=new_plan.currency,
            customer_id=customer_id,
            subscription_id=subscription_id,
        )
