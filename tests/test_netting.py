# tests/test_netting.py
import random
from datetime import datetime
from decimal import Decimal

import pytest

from errors import MalformedInputError
from models import PaymentRecord, coerce_records
from netting import net, net_summary, settle_payments, signed_amount


def _pay(pid, appt, amount, status, minute=0):
    return {
        "payment_id": pid,
        "appointment_id": appt,
        "amount": amount,
        "status": status,
        "event_at": datetime(2024, 3, 1, 9, minute),
    }


def _records(rows):
    records, rejected = coerce_records(rows, PaymentRecord)
    assert not rejected, f"Unexpected rejects: {[e.message for e in rejected]}"
    return records


def test_paid_then_refunded_nets_to_zero():
    payments = _records([_pay("P1", "A1", 50, "paid"), _pay("P2", "A1", 50, "refunded", 5)])
    assert net(payments) == {"A1": Decimal("0")}

    summary = net_summary(payments)["A1"]
    assert summary.gross_paid == Decimal("50")
    assert summary.gross_refunded == Decimal("50")
    assert summary.payment_count == 2


def test_net_is_order_independent():
    rows = [
        _pay("P1", "A1", "19.99", "paid"),
        _pay("P2", "A1", "5.00", "refunded", 3),
        _pay("P3", "A2", "120.00", "paid", 1),
        _pay("P4", "A2", "120.00", "chargeback", 9),
        _pay("P5", "A3", "30.00", "failed", 2),
        _pay("P6", "A3", "30.00", "paid", 4),
        _pay("P1", "A1", "19.99", "refunded", 20),
    ]
    expected = net(_records(rows))

    rng = random.Random(11)
    for _ in range(10):
        shuffled = rows[:]
        rng.shuffle(shuffled)
        assert net(_records(shuffled)) == expected


def test_resupplied_payments_collapse():
    rows = [_pay("P1", "A1", 80, "paid"), _pay("P2", "A1", 30, "refunded", 2)]
    once = net(_records(rows))
    twice = net(_records(rows + rows))
    assert once == twice == {"A1": Decimal("50")}


def test_refund_of_paid_payment_cancels_it():
    rows = [_pay("P1", "A1", 40, "paid", 0), _pay("P1", "A1", 40, "refunded", 10)]
    assert net(_records(rows)) == {"A1": Decimal("0")}
    assert net(_records(rows[::-1] + rows)) == {"A1": Decimal("0")}

    summary = net_summary(_records(rows))["A1"]
    assert summary.payment_count == 1
    assert (summary.gross_paid, summary.gross_refunded) == (Decimal("40"), Decimal("40"))


def test_payment_settles_once_across_statuses():
    rows = [
        _pay("P1", "A1", 40, "authorized", 0),
        _pay("P1", "A1", 40, "paid", 1),
        _pay("P1", "A1", 40, "refunded", 10),
        _pay("P1", "A1", 40, "chargeback", 20),
    ]
    assert net(_records(rows[:2])) == {"A1": Decimal("40")}
    assert net(_records(rows)) == {"A1": Decimal("0")}

    (settlement,) = settle_payments(_records(rows))
    assert settlement.status == "chargeback"
    assert settlement.signed_amount == Decimal("0")


def test_extra_refund_decreases_net():
    base = [_pay("P1", "A1", 100, "paid")]
    before = net(_records(base))["A1"]
    after = net(_records(base + [_pay("P2", "A1", 25, "refunded", 1)]))["A1"]
    assert after == before - Decimal("25")


def test_signed_amount_by_status():
    paid, refund, chargeback, failed = _records(
        [
            _pay("P1", "A1", 10, "PAID"),
            _pay("P2", "A1", 10, "refunded"),
            _pay("P3", "A1", 10, "chargeback"),
            _pay("P4", "A1", 10, "failed"),
        ]
    )
    assert signed_amount(paid) == Decimal("10")
    assert signed_amount(refund) == Decimal("-10")
    assert signed_amount(chargeback) == Decimal("-10")
    assert signed_amount(failed) == Decimal("0")


def test_configured_refund_statuses():
    (p,) = _records([_pay("P1", "A1", 10, "reversed")])
    assert signed_amount(p) == Decimal("10")
    assert signed_amount(p, refund_statuses=("reversed",)) == Decimal("-10")


def test_negative_and_missing_amounts_are_malformed():
    records, rejected = coerce_records(
        [_pay("P1", "A1", -5, "paid"), _pay("P2", "A1", None, "paid"), _pay("P3", "A1", "abc", "paid")],
        PaymentRecord,
    )
    assert records == []
    assert len(rejected) == 3
    assert all(isinstance(e, MalformedInputError) for e in rejected)


def test_to_amount_rejects_negative_directly():
    with pytest.raises(MalformedInputError):
        PaymentRecord.from_dict(_pay("P1", "A1", "-0.01", "paid"))


def test_empty_payments():
    assert net([]) == {}
