"""
Payment netting: one signed total per appointment.

Payment events are deduplicated by (payment_id, status) first, so supplying
the same event twice (replays, overlapping extracts) never double-applies it.
Each payment_id then settles once: it contributes its paid amount, less any
refund or chargeback raised against that same id. Amounts are Decimals and the
aggregation is a plain sum, so the result does not depend on input order.
"""
from dataclasses import dataclass, replace
from decimal import Decimal
from functools import reduce
from typing import Dict, Iterable, List, Sequence

from deduplication import dedupe_payments
from models import PaymentRecord

DEFAULT_REFUND_STATUSES = ("refunded", "chargeback")
DEFAULT_NON_SETTLING_STATUSES = ("failed", "voided")

ZERO = Decimal("0")


@dataclass(frozen=True)
class NetSummary:
    appointment_id: str
    payment_count: int = 0
    gross_paid: Decimal = ZERO
    gross_refunded: Decimal = ZERO

    @property
    def net_amount(self) -> Decimal:
        return self.gross_paid - self.gross_refunded


@dataclass(frozen=True)
class PaymentSettlement:
    """Where one payment_id ended up after all of its events."""

    payment_id: str
    appointment_id: str
    status: str
    amount: Decimal
    event_at: object
    paid: Decimal = ZERO
    reversed: Decimal = ZERO

    @property
    def signed_amount(self) -> Decimal:
        return self.paid - self.reversed


def signed_amount(
    payment: PaymentRecord,
    refund_statuses: Sequence[str] = DEFAULT_REFUND_STATUSES,
    non_settling_statuses: Sequence[str] = DEFAULT_NON_SETTLING_STATUSES,
) -> Decimal:
    """Refunds and chargebacks count negative, failed/voided attempts count zero."""
    if payment.status in refund_statuses:
        return -payment.amount
    if payment.status in non_settling_statuses:
        return ZERO
    return payment.amount


def settle_payments(
    payments: Iterable[PaymentRecord],
    refund_statuses: Sequence[str] = DEFAULT_REFUND_STATUSES,
    non_settling_statuses: Sequence[str] = DEFAULT_NON_SETTLING_STATUSES,
) -> List[PaymentSettlement]:
    """
    Fold the distinct events of each payment_id into one settlement.

    A payment is paid at most once and reversed at most once: several settling
    statuses (e.g. authorized then paid) or a refund followed by a chargeback
    of the same id take the largest amount instead of adding up. The latest
    event supplies status, appointment_id and event_at.
    """

    def accumulate(acc: Dict[str, PaymentSettlement], payment: PaymentRecord):
        signed = signed_amount(payment, refund_statuses, non_settling_statuses)
        prior = acc.get(payment.payment_id)
        paid = prior.paid if prior else ZERO
        reversed_ = prior.reversed if prior else ZERO
        if signed > 0:
            paid = max(paid, signed)
        elif signed < 0:
            reversed_ = max(reversed_, -signed)
        # dedupe_payments returns events in (event_at, status, amount) order
        acc[payment.payment_id] = PaymentSettlement(
            payment_id=payment.payment_id,
            appointment_id=payment.appointment_id,
            status=payment.status,
            amount=payment.amount,
            event_at=payment.event_at,
            paid=paid,
            reversed=reversed_,
        )
        return acc

    settled = reduce(accumulate, dedupe_payments(payments), {})
    return [settled[pid] for pid in sorted(settled)]


def net_summary(
    payments: Iterable[PaymentRecord],
    refund_statuses: Sequence[str] = DEFAULT_REFUND_STATUSES,
    non_settling_statuses: Sequence[str] = DEFAULT_NON_SETTLING_STATUSES,
) -> Dict[str, NetSummary]:
    def accumulate(acc: Dict[str, NetSummary], settlement: PaymentSettlement):
        prior = acc.get(settlement.appointment_id) or NetSummary(settlement.appointment_id)
        acc[settlement.appointment_id] = replace(
            prior,
            payment_count=prior.payment_count + 1,
            gross_paid=prior.gross_paid + settlement.paid,
            gross_refunded=prior.gross_refunded + settlement.reversed,
        )
        return acc

    return reduce(
        accumulate,
        settle_payments(payments, refund_statuses, non_settling_statuses),
        {},
    )


def net(
    payments: Iterable[PaymentRecord],
    refund_statuses: Sequence[str] = DEFAULT_REFUND_STATUSES,
    non_settling_statuses: Sequence[str] = DEFAULT_NON_SETTLING_STATUSES,
) -> Dict[str, Decimal]:
    """appointment_id -> net amount (sum of settled amounts over distinct payments)."""
    return {
        appointment_id: summary.net_amount
        for appointment_id, summary in net_summary(
            payments, refund_statuses, non_settling_statuses
        ).items()
    }
