# tests/test_process_staging.py
"""
End-to-end batch run: staging JSONL -> identity merge -> facts -> checks,
including dead letters, skipped reruns and re-attribution after new identities.
"""
import json
import logging
import os
import shutil

import duckdb
import pytest

import config_loader
from identity_merge import mint_canonical_id
from models import IdentityFact
from process_staging import read_jsonl, run


def _write_jsonl(path, rows, extra_lines=()):
    with open(path, "w") as f:
        for row in rows:
            f.write(json.dumps(row) + "\n")
        for line in extra_lines:
            f.write(line + "\n")


@pytest.fixture()
def workspace(tmp_path, monkeypatch):
    with open(os.path.join(os.path.dirname(__file__), "..", "config.json")) as f:
        cfg = json.load(f)
    cfg["database_path"] = str(tmp_path / "warehouse.db")
    for key in ("staging_dir", "processed_dir", "dead_letter_dir", "logs_dir", "cache_dir"):
        cfg["paths"][key] = str(tmp_path / key)
    os.makedirs(cfg["paths"]["staging_dir"])
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps(cfg))

    monkeypatch.setenv("ETL_CONFIG", str(config_path))
    monkeypatch.setattr(config_loader.ConfigLoader, "_instance", None)
    monkeypatch.setattr(config_loader, "_loader", None)
    return config_loader.load_config()


def _stage(cfg, name, rows, extra_lines=()):
    path = os.path.join(cfg.get("paths.staging_dir"), name)
    _write_jsonl(path, rows, extra_lines)
    return path


def _run(cfg, run_ts):
    logger = logging.getLogger("test_process_staging")
    return run(cfg, run_ts, logger, logging.Formatter())


def _first_batch(cfg):
    _stage(
        cfg,
        "identity_facts_001.jsonl",
        [
            {"login_user_id": "L1", "device_id": "D1", "canonical_user_id_hint": "U1",
             "observed_at": "2024-05-01T08:00:00", "source_batch_id": "b1",
             "attributes": {"region": "EU"}},
            {"observed_at": "2024-05-01T08:00:00", "source_batch_id": "b1"},
        ],
        extra_lines=["{not json"],
    )
    _stage(cfg, "providers_001.jsonl", [{"provider_id": "P1", "provider_name": "Dr. C", "specialty": "gp"}])
    _stage(
        cfg,
        "sessions_001.jsonl",
        [
            {"session_id": "S1", "login_user_id": "L1", "started_at": "2024-05-01T09:00:00",
             "updated_at": "2024-05-01T09:10:00", "page_views": 2, "channel": "web"},
            {"session_id": "S1", "login_user_id": "L1", "started_at": "2024-05-01T09:00:00",
             "updated_at": "2024-05-01T09:20:00", "page_views": 6, "channel": "web"},
            {"session_id": "S2", "device_id": "D5", "started_at": "2024-05-01T12:00:00",
             "updated_at": "2024-05-01T12:05:00", "page_views": 1, "channel": "ios"},
        ],
    )
    _stage(
        cfg,
        "appointments_001.jsonl",
        [
            {"appointment_id": "A1", "login_user_id": "L1", "provider_id": "P1",
             "booked_at": "2024-05-01T09:15:00", "updated_at": "2024-05-01T09:15:00", "status": "booked"},
        ],
    )
    _stage(
        cfg,
        "payments_001.jsonl",
        [
            {"payment_id": "X1", "appointment_id": "A1", "amount": 50, "status": "paid",
             "event_at": "2024-05-01T09:16:00"},
            {"payment_id": "X2", "appointment_id": "A1", "amount": 50, "status": "refunded",
             "event_at": "2024-05-02T10:00:00"},
            {"payment_id": "X1", "appointment_id": "A1", "amount": 50, "status": "paid",
             "event_at": "2024-05-01T09:16:00"},
        ],
    )


def _facts(cfg):
    con = duckdb.connect(cfg.get("database_path"), read_only=True)
    try:
        appts = con.execute(
            "SELECT appointment_id, canonical_user_id, payment_count, net_amount FROM fact_appointment ORDER BY 1"
        ).fetchall()
        sessions = con.execute(
            "SELECT session_id, canonical_user_id, page_views FROM fact_session ORDER BY 1"
        ).fetchall()
        payments = con.execute("SELECT COUNT(*) FROM fact_payment").fetchone()[0]
    finally:
        con.close()
    return appts, sessions, payments


def test_full_run_builds_facts_and_dead_letters(workspace):
    cfg = workspace
    _first_batch(cfg)

    checks = _run(cfg, "T1")

    for name, frame in checks.items():
        assert frame.empty, f"{name} reported violations:\n{frame}"

    appts, sessions, payments = _facts(cfg)
    assert appts == [("A1", "U1", 2, 0)]
    assert sessions == [("S1", "U1", 6), ("S2", "ANON-D5", 1)]
    assert payments == 2

    assert os.listdir(cfg.get("paths.staging_dir")) == []
    assert len(os.listdir(cfg.get("paths.processed_dir"))) == 5

    dlq = os.path.join(cfg.get("paths.dead_letter_dir"), "identity_facts_failures_T1.jsonl")
    dead, bad = read_jsonl(dlq)
    assert bad == []
    assert sorted(d["stage"] for d in dead) == ["parse", "validate"]


def test_rerun_of_applied_files_is_skipped(workspace):
    cfg = workspace
    _first_batch(cfg)
    _run(cfg, "T1")
    before = _facts(cfg)

    processed = cfg.get("paths.processed_dir")
    for name in os.listdir(processed):
        shutil.copy(os.path.join(processed, name), os.path.join(cfg.get("paths.staging_dir"), name))
    _run(cfg, "T2")

    assert _facts(cfg) == before
    assert os.listdir(cfg.get("paths.staging_dir")) == []
    con = duckdb.connect(cfg.get("database_path"), read_only=True)
    try:
        staged = con.execute("SELECT COUNT(*) FROM stg_payments").fetchone()[0]
    finally:
        con.close()
    assert staged == 3, "Skipped files must not be staged twice"


def test_new_identity_reattributes_existing_facts(workspace):
    cfg = workspace
    _first_batch(cfg)
    _run(cfg, "T1")

    new_fact = {"login_user_id": "L2", "device_id": "D5", "observed_at": "2024-05-01T11:00:00",
                "source_batch_id": "b2"}
    _stage(cfg, "identity_facts_002.jsonl", [new_fact])
    _run(cfg, "T2")

    _, sessions, _ = _facts(cfg)
    expected = mint_canonical_id(IdentityFact.from_dict(new_fact))
    assert ("S2", expected, 1) in sessions
    assert ("S1", "U1", 6) in sessions


def test_refunded_payment_nets_to_zero_end_to_end(workspace):
    cfg = workspace
    _stage(
        cfg,
        "identity_facts_001.jsonl",
        [{"login_user_id": "L1", "canonical_user_id_hint": "U1",
          "observed_at": "2024-05-01T08:00:00", "source_batch_id": "b1"}],
    )
    _stage(
        cfg,
        "appointments_001.jsonl",
        [{"appointment_id": "A1", "login_user_id": "L1", "booked_at": "2024-05-01T09:15:00",
          "updated_at": "2024-05-01T09:15:00", "status": "cancelled"}],
    )
    _stage(
        cfg,
        "payments_001.jsonl",
        [
            {"payment_id": "P1", "appointment_id": "A1", "amount": 40, "status": "paid",
             "event_at": "2024-05-01T09:16:00"},
            {"payment_id": "P1", "appointment_id": "A1", "amount": 40, "status": "refunded",
             "event_at": "2024-05-01T10:16:00"},
        ],
    )

    checks = _run(cfg, "T1")

    assert checks["netting_discrepancies"].empty, f"\n{checks['netting_discrepancies']}"
    appts, _, payments = _facts(cfg)
    assert appts == [("A1", "U1", 1, 0)]
    assert payments == 1


def test_retried_older_identity_batch_does_not_rewrite_history(workspace):
    cfg = workspace
    older = {"login_user_id": "L1", "canonical_user_id_hint": "U9",
             "observed_at": "2024-05-01T08:00:00", "source_batch_id": "b1"}
    newer = dict(older, canonical_user_id_hint="U10", source_batch_id="b2")

    _stage(cfg, "identity_facts_001.jsonl", [older])
    _run(cfg, "T1")
    _stage(cfg, "identity_facts_002.jsonl", [newer])
    _run(cfg, "T2")
    # Same facts under a new batch id, so the file is not skipped as already applied
    _stage(cfg, "identity_facts_003.jsonl", [dict(older, source_batch_id="b1-retry")])
    checks = _run(cfg, "T3")

    assert checks["interval_overlaps"].empty
    con = duckdb.connect(cfg.get("database_path"), read_only=True)
    try:
        current = con.execute(
            "SELECT canonical_user_id FROM user_identity_map WHERE natural_key = 'L1' AND is_current"
        ).fetchall()
        conflicts = con.execute("SELECT COUNT(*) FROM identity_merge_conflicts").fetchone()[0]
    finally:
        con.close()
    assert current == [("U10",)]
    assert conflicts == 0
    assert not os.path.exists(
        os.path.join(cfg.get("paths.dead_letter_dir"), "identity_facts_failures_T3.jsonl")
    )
