# tests/test_deduplication.py
import random
from datetime import datetime

import pandas as pd

from deduplication import dedupe, dedupe_frame, dedupe_payments, dedupe_sessions
from models import PaymentRecord, SessionRecord, coerce_records


def _session(sid, updated_minute, views=1, device="D1"):
    return {
        "session_id": sid,
        "updated_at": datetime(2024, 1, 1, 10, updated_minute),
        "started_at": datetime(2024, 1, 1, 10, 0),
        "device_id": device,
        "channel": "web",
        "page_views": views,
    }


def test_latest_updated_at_wins():
    rows = [_session("S1", 10, views=3), _session("S1", 20, views=7)]
    records, rejected = coerce_records(rows, SessionRecord)
    out = dedupe_sessions(records)

    assert not rejected
    assert len(out) == 1, f"Expected one S1 row, got {len(out)}"
    assert out[0].updated_at == datetime(2024, 1, 1, 10, 20)
    assert out[0].page_views == 7


def test_result_independent_of_input_order():
    rows = [
        _session("S1", 10),
        _session("S1", 20, views=9),
        _session("S2", 5),
        _session("S2", 30, views=4),
        _session("S3", 1),
    ]
    records, _ = coerce_records(rows, SessionRecord)
    expected = {(s.session_id, s.updated_at, s.page_views) for s in dedupe_sessions(records)}

    rng = random.Random(7)
    for _ in range(10):
        shuffled = rows[:]
        rng.shuffle(shuffled)
        recs, _ = coerce_records(shuffled, SessionRecord)
        got = {(s.session_id, s.updated_at, s.page_views) for s in dedupe_sessions(recs)}
        assert got == expected, f"Dedup changed with input order: {got} vs {expected}"


def test_ties_go_to_later_ingestion():
    rows = [_session("S1", 10, views=1), _session("S1", 10, views=2)]
    records, _ = coerce_records(rows, SessionRecord)
    out = dedupe_sessions(records)
    assert [s.page_views for s in out] == [2]


def test_empty_input():
    assert dedupe([], key=lambda r: r, order=lambda r: r) == []
    assert dedupe_sessions([]) == []


def test_generic_dedupe_on_dicts():
    rows = [{"k": "a", "v": 1}, {"k": "b", "v": 5}, {"k": "a", "v": 3}]
    out = dedupe(rows, key=lambda r: r["k"], order=lambda r: r["v"])
    assert out == [{"k": "a", "v": 3}, {"k": "b", "v": 5}]


def test_malformed_session_rejected_not_raised():
    rows = [_session("S1", 10), {"session_id": None, "updated_at": "2024-01-01"}]
    records, rejected = coerce_records(rows, SessionRecord)
    assert len(records) == 1
    assert len(rejected) == 1
    assert rejected[0].message == "missing_required:session_id"


def test_dedupe_frame_keeps_max_order_and_uses_tiebreak():
    df = pd.DataFrame(
        [
            {"session_id": "S1", "updated_at": pd.Timestamp("2024-01-01 10:10"), "seq": 1, "v": "old"},
            {"session_id": "S1", "updated_at": pd.Timestamp("2024-01-01 10:20"), "seq": 2, "v": "new"},
            {"session_id": "S2", "updated_at": pd.Timestamp("2024-01-01 09:00"), "seq": 4, "v": "b"},
            {"session_id": "S2", "updated_at": pd.Timestamp("2024-01-01 09:00"), "seq": 3, "v": "a"},
            {"session_id": None, "updated_at": pd.Timestamp("2024-01-01 11:00"), "seq": 5, "v": "x"},
        ]
    )
    out = dedupe_frame(df, ["session_id"], "updated_at", tiebreak_col="seq")

    assert sorted(out["session_id"]) == ["S1", "S2"]
    by_id = dict(zip(out["session_id"], out["v"]))
    assert by_id == {"S1": "new", "S2": "b"}


def test_dedupe_frame_empty():
    df = pd.DataFrame(columns=["session_id", "updated_at"])
    assert dedupe_frame(df, ["session_id"], "updated_at").empty


def test_payment_events_collapse_per_status():
    rows = [
        {"payment_id": "P1", "appointment_id": "A1", "amount": 40, "status": "paid",
         "event_at": datetime(2024, 1, 1, 9, 0)},
        {"payment_id": "P1", "appointment_id": "A1", "amount": 40, "status": "refunded",
         "event_at": datetime(2024, 1, 2, 9, 0)},
    ]
    payments, _ = coerce_records(rows + rows[::-1], PaymentRecord)
    kept = dedupe_payments(payments)
    assert [(p.payment_id, p.status) for p in kept] == [("P1", "paid"), ("P1", "refunded")]
