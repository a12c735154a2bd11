# tests/test_fact_assembler.py
"""
Fact assembly: one row per natural key, point-in-time attribution, netted
measures and idempotent rebuilds.
"""
from datetime import datetime, timedelta
from decimal import Decimal

import duckdb
import pytest

import setup_database as db_setup
from errors import MalformedInputError, UnresolvedIdentityError
from fact_assembler import (
    assemble_appointment_facts,
    assemble_payment_facts,
    assemble_session_facts,
    upsert_insurance_plans,
    upsert_providers,
)
from identity_merge import apply_batch
from identity_store import IdentityStore

T0 = datetime(2024, 3, 1, 9, 0)


@pytest.fixture()
def temp_duckdb(tmp_path):
    db_path = tmp_path / "test_facts.db"
    db_setup.DB_FILE = str(db_path)
    db_setup.setup_database()
    con = duckdb.connect(str(db_path), read_only=False)
    try:
        yield con
    finally:
        con.close()


@pytest.fixture()
def store(temp_duckdb):
    s = IdentityStore(temp_duckdb)
    apply_batch(
        s,
        [
            {
                "login_user_id": "L1",
                "device_id": "D1",
                "canonical_user_id_hint": "U1",
                "observed_at": T0,
                "attributes": {"region": "EU"},
            },
            {
                "login_user_id": "L1",
                "canonical_user_id_hint": "U1",
                "observed_at": T0 + timedelta(days=1),
                "attributes": {"region": "US"},
            },
        ],
    )
    upsert_providers(temp_duckdb, [{"provider_id": "P1", "provider_name": "Dr. A", "specialty": "derm"}])
    upsert_insurance_plans(temp_duckdb, [{"insurance_plan_id": "I1", "plan_name": "Gold", "payer": "Acme"}])
    return s


def _appt(aid, login=None, device=None, hours=1, provider="P1", plan="I1", status="booked", updated_minutes=0):
    return {
        "appointment_id": aid,
        "login_user_id": login,
        "device_id": device,
        "provider_id": provider,
        "insurance_plan_id": plan,
        "booked_at": T0 + timedelta(hours=hours),
        "updated_at": T0 + timedelta(hours=hours, minutes=updated_minutes),
        "status": status,
    }


def _pay(pid, aid, amount, status, minutes=0):
    return {
        "payment_id": pid,
        "appointment_id": aid,
        "amount": amount,
        "status": status,
        "event_at": T0 + timedelta(hours=2, minutes=minutes),
    }


APPOINTMENTS = [
    _appt("A1", login="L1"),
    _appt("A1", login="L1", status="completed", updated_minutes=30),
    _appt("A2", device="D5", provider="P1", hours=3),
    _appt("A3", login="L1", hours=30),
]
PAYMENTS = [
    _pay("P-1", "A1", 50, "paid"),
    _pay("P-2", "A1", 50, "refunded", 10),
    _pay("P-1", "A1", 50, "paid"),  # re-supplied
    _pay("P-3", "A2", "20.00", "paid"),
    _pay("P-4", "A3", "75.50", "paid"),
]


def _build(store):
    appt = assemble_appointment_facts(store, APPOINTMENTS, PAYMENTS)
    pay = assemble_payment_facts(store, PAYMENTS)
    return appt, pay


def test_appointment_facts_are_netted_and_attributed(store, temp_duckdb):
    appt, _ = _build(store)
    assert appt.rows_written == 3
    assert not appt.rejected

    rows = temp_duckdb.execute(
        """
        SELECT appointment_id, canonical_user_id, status, payment_count,
               gross_paid, gross_refunded, net_amount,
               user_sk IS NOT NULL, provider_sk IS NOT NULL, insurance_plan_sk IS NOT NULL
        FROM fact_appointment ORDER BY appointment_id
        """
    ).fetchall()
    a1, a2, a3 = rows
    assert a1[:4] == ("A1", "U1", "completed", 2)
    assert a1[4:7] == (Decimal("50.00"), Decimal("50.00"), Decimal("0.00"))
    assert a1[7:] == (True, True, True)

    assert a2[1] == "ANON-D5"
    assert a2[6] == Decimal("20.00")
    assert a2[7] is False, "Anonymous users have no dim_user version"

    assert a3[6] == Decimal("75.50")


def test_user_sk_is_the_version_valid_at_booking(store, temp_duckdb):
    _build(store)
    regions = dict(
        temp_duckdb.execute(
            """
            SELECT f.appointment_id, json_extract_string(u.attributes, '$.region')
            FROM fact_appointment f JOIN dim_user u ON u.user_sk = f.user_sk
            """
        ).fetchall()
    )
    assert regions == {"A1": "EU", "A3": "US"}


def test_rebuild_keeps_one_row_per_key(store, temp_duckdb):
    _build(store)
    first = temp_duckdb.execute(
        "SELECT appointment_id, canonical_user_id, net_amount FROM fact_appointment ORDER BY 1"
    ).fetchall()
    _build(store)
    _build(store)

    dupes = temp_duckdb.execute(
        """
        SELECT 'appt' AS t, appointment_id AS k, COUNT(*) FROM fact_appointment GROUP BY 1, 2 HAVING COUNT(*) > 1
        UNION ALL
        SELECT 'pay', payment_id, COUNT(*) FROM fact_payment GROUP BY 1, 2 HAVING COUNT(*) > 1
        """
    ).fetchall()
    assert dupes == [], f"Duplicate fact keys after rebuild: {dupes}"
    assert temp_duckdb.execute(
        "SELECT appointment_id, canonical_user_id, net_amount FROM fact_appointment ORDER BY 1"
    ).fetchall() == first


def test_payment_facts_carry_signed_amounts(store, temp_duckdb):
    _, pay = _build(store)
    assert pay.rows_written == 4
    rows = temp_duckdb.execute(
        "SELECT payment_id, canonical_user_id, signed_amount FROM fact_payment ORDER BY payment_id"
    ).fetchall()
    assert rows == [
        ("P-1", "U1", Decimal("50.00")),
        ("P-2", "U1", Decimal("-50.00")),
        ("P-3", "ANON-D5", Decimal("20.00")),
        ("P-4", "U1", Decimal("75.50")),
    ]


def test_unresolvable_and_malformed_rows_are_returned(store, temp_duckdb):
    res = assemble_appointment_facts(
        store,
        [
            _appt("A9"),  # neither login nor device
            {"appointment_id": None, "booked_at": T0},
            _appt("A1", login="L1"),
        ],
        [],
    )
    assert res.rows_written == 1
    kinds = sorted(type(e).__name__ for e in res.rejected)
    assert kinds == ["MalformedInputError", "UnresolvedIdentityError"]
    assert temp_duckdb.execute("SELECT COUNT(*) FROM fact_appointment").fetchone()[0] == 1


def test_session_facts_dedupe_and_resolve(store, temp_duckdb):
    sessions = [
        {"session_id": "S1", "login_user_id": "L1", "started_at": T0 + timedelta(minutes=1),
         "updated_at": T0 + timedelta(minutes=10), "page_views": 3, "channel": "web"},
        {"session_id": "S1", "login_user_id": "L1", "started_at": T0 + timedelta(minutes=1),
         "updated_at": T0 + timedelta(minutes=20), "page_views": 8, "channel": "web"},
        {"session_id": "S2", "device_id": "D1", "started_at": T0 - timedelta(hours=1),
         "updated_at": T0, "page_views": 1, "channel": "ios"},
        {"session_id": "S3", "started_at": T0, "updated_at": T0},
    ]
    res = assemble_session_facts(store, sessions)
    assert res.rows_written == 2
    assert len(res.rejected) == 1 and isinstance(res.rejected[0], UnresolvedIdentityError)

    rows = temp_duckdb.execute(
        "SELECT session_id, canonical_user_id, page_views FROM fact_session ORDER BY session_id"
    ).fetchall()
    # S2 started before D1 was ever mapped
    assert rows == [("S1", "U1", 8), ("S2", "ANON-D1", 1)]


def test_lookup_upsert_is_type_1(store, temp_duckdb):
    sk_before = temp_duckdb.execute(
        "SELECT provider_sk FROM dim_provider WHERE provider_id = 'P1'"
    ).fetchone()[0]
    res = upsert_providers(
        temp_duckdb,
        [
            {"provider_id": "P1", "provider_name": "Dr. A", "specialty": "dermatology"},
            {"provider_id": None, "provider_name": "nobody"},
        ],
    )
    assert res.rows_written == 1
    assert len(res.rejected) == 1 and isinstance(res.rejected[0], MalformedInputError)
    row = temp_duckdb.execute(
        "SELECT provider_sk, specialty FROM dim_provider WHERE provider_id = 'P1'"
    ).fetchone()
    assert row == (sk_before, "dermatology")

    upsert_insurance_plans(
        temp_duckdb, [{"insurance_plan_id": "I1", "plan_name": "Gold", "payer": "Acme Health"}]
    )
    plans = temp_duckdb.execute(
        "SELECT insurance_plan_id, payer, updated_at IS NOT NULL FROM dim_insurance_plan"
    ).fetchall()
    assert plans == [("I1", "Acme Health", True)]


def test_refund_of_paid_payment_nets_to_zero(store, temp_duckdb):
    payments = [
        _pay("P-7", "A1", 40, "paid"),
        _pay("P-7", "A1", 40, "refunded", 10),
    ]
    assemble_appointment_facts(store, APPOINTMENTS[:2], payments)
    assemble_payment_facts(store, payments)

    appt = temp_duckdb.execute(
        "SELECT payment_count, gross_paid, gross_refunded, net_amount FROM fact_appointment"
    ).fetchone()
    assert appt == (1, Decimal("40.00"), Decimal("40.00"), Decimal("0.00"))
    pay = temp_duckdb.execute(
        "SELECT payment_id, status, signed_amount FROM fact_payment"
    ).fetchall()
    assert pay == [("P-7", "refunded", Decimal("0.00"))]
