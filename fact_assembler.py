"""
Fact assembly: deduplicated staging records + point-in-time identities +
netted payments -> fact_session, fact_appointment, fact_payment.

Facts are derived data. Each assemble_* call deletes and re-inserts the rows
for the natural keys it is given inside one transaction, so re-running over
the same staging input rebuilds identical facts and never duplicates a key.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Sequence

import duckdb
import pandas as pd

from deduplication import dedupe_appointments, dedupe_sessions
from errors import EngineError, MalformedInputError, UnresolvedIdentityError
from identity_merge import DEFAULT_ANONYMOUS_PREFIX
from identity_resolver import resolve_frame
from identity_store import IdentityStore
from logging_utils import get_logger
from models import (
    AppointmentRecord,
    PaymentRecord,
    SessionRecord,
    clean_str,
    coerce_records,
)
from netting import (
    DEFAULT_NON_SETTLING_STATUSES,
    DEFAULT_REFUND_STATUSES,
    net_summary,
    settle_payments,
)


@dataclass
class AssemblyResult:
    table: str
    rows_written: int = 0
    rejected: List[EngineError] = field(default_factory=list)


def _unresolved_errors(unresolved: pd.DataFrame, key_col: str) -> List[EngineError]:
    return [
        UnresolvedIdentityError(
            f"{key_col}={row[key_col]} has no login_user_id/device_id or timestamp",
            {k: v for k, v in row.items()},
        )
        for row in unresolved.to_dict("records")
    ]


def _replace_rows(
    cur: duckdb.DuckDBPyConnection,
    table: str,
    key_col: str,
    frame: pd.DataFrame,
    insert_sql: str,
) -> int:
    """Delete the frame's keys from table and insert the frame, atomically."""
    cur.register("_fact_rows", frame)
    cur.begin()
    try:
        cur.execute(
            f"DELETE FROM {table} WHERE {key_col} IN (SELECT CAST({key_col} AS VARCHAR) FROM _fact_rows)"
        )
        cur.execute(insert_sql)
        cur.commit()
    except Exception:
        cur.rollback()
        raise
    finally:
        cur.unregister("_fact_rows")
    return len(frame)


# --- Lookup dimensions (Type 1) ----------------------------------------------------


def upsert_providers(
    con: duckdb.DuckDBPyConnection, rows: Iterable[Dict[str, Any]], logger=None
) -> AssemblyResult:
    logger = get_logger(logger, "fact_assembler")
    return _upsert_lookup(
        con,
        rows,
        table="dim_provider",
        key_col="provider_id",
        attr_cols=("provider_name", "specialty"),
        logger=logger,
    )


def upsert_insurance_plans(
    con: duckdb.DuckDBPyConnection, rows: Iterable[Dict[str, Any]], logger=None
) -> AssemblyResult:
    logger = get_logger(logger, "fact_assembler")
    return _upsert_lookup(
        con,
        rows,
        table="dim_insurance_plan",
        key_col="insurance_plan_id",
        attr_cols=("plan_name", "payer"),
        logger=logger,
    )


def _upsert_lookup(con, rows, table, key_col, attr_cols, logger) -> AssemblyResult:
    result = AssemblyResult(table=table)
    good = []
    for row in rows:
        key = clean_str(row.get(key_col))
        if key is None:
            result.rejected.append(
                MalformedInputError(f"missing_required:{key_col}", dict(row))
            )
            continue
        good.append({key_col: key, **{c: clean_str(row.get(c)) for c in attr_cols}})
    if not good:
        return result

    # Last row per key wins (staging order)
    latest = {r[key_col]: r for r in good}
    cur = con.cursor()
    cols = [key_col] + list(attr_cols)
    cur.executemany(
        f"""
        INSERT INTO {table} ({", ".join(cols)})
        VALUES ({", ".join(["?"] * len(cols))})
        ON CONFLICT ({key_col}) DO UPDATE SET
            {", ".join(f"{c} = EXCLUDED.{c}" for c in attr_cols)},
            updated_at = now()
        """,
        [[r[c] for c in cols] for r in latest.values()],
    )
    result.rows_written = len(latest)
    logger.info(f"Upserted {result.rows_written} rows into {table}")
    return result


# --- Facts ------------------------------------------------------------------------


def assemble_session_facts(
    store: IdentityStore,
    sessions: Iterable[Any],
    anonymous_prefix: str = DEFAULT_ANONYMOUS_PREFIX,
    logger: logging.Logger = None,
) -> AssemblyResult:
    """One fact_session row per session_id, identity resolved at started_at."""
    logger = get_logger(logger, "fact_assembler")
    result = AssemblyResult(table="fact_session")

    records, rejected = coerce_records(sessions, SessionRecord)
    result.rejected.extend(rejected)
    deduped = dedupe_sessions(records)
    logger.info(
        f"Sessions: input_ok={len(records)}, deduped={len(deduped)}, malformed={len(rejected)}"
    )
    if not deduped:
        return result

    frame = pd.DataFrame([asdict(s) for s in deduped])
    resolved, unresolved = resolve_frame(
        store, frame, as_of_col="started_at", anonymous_prefix=anonymous_prefix
    )
    result.rejected.extend(_unresolved_errors(unresolved, "session_id"))
    if resolved.empty:
        return result

    result.rows_written = _replace_rows(
        store.cursor(),
        "fact_session",
        "session_id",
        resolved,
        """
        INSERT INTO fact_session (
            session_id, canonical_user_id, user_sk, channel,
            started_at, updated_at, page_views, date_id
        )
        SELECT
            CAST(s.session_id AS VARCHAR),
            CAST(s.canonical_user_id AS VARCHAR),
            u.user_sk,
            CAST(s.channel AS VARCHAR),
            CAST(s.started_at AS TIMESTAMP),
            CAST(s.updated_at AS TIMESTAMP),
            CAST(s.page_views AS INTEGER),
            CAST(CAST(s.started_at AS TIMESTAMP) AS DATE)
        FROM _fact_rows s
        LEFT JOIN dim_user u
          ON u.canonical_user_id = CAST(s.canonical_user_id AS VARCHAR)
         AND u.valid_from <= CAST(s.started_at AS TIMESTAMP)
         AND (u.valid_to IS NULL OR CAST(s.started_at AS TIMESTAMP) < u.valid_to)
        """,
    )
    logger.info(f"fact_session rows written: {result.rows_written}")
    return result


def assemble_appointment_facts(
    store: IdentityStore,
    appointments: Iterable[Any],
    payments: Iterable[Any],
    refund_statuses: Sequence[str] = DEFAULT_REFUND_STATUSES,
    non_settling_statuses: Sequence[str] = DEFAULT_NON_SETTLING_STATUSES,
    anonymous_prefix: str = DEFAULT_ANONYMOUS_PREFIX,
    logger: logging.Logger = None,
) -> AssemblyResult:
    """
    One fact_appointment row per appointment_id carrying the canonical user
    valid at booked_at and the netted payment amounts. payments must hold
    every known payment for the given appointments.
    """
    logger = get_logger(logger, "fact_assembler")
    result = AssemblyResult(table="fact_appointment")

    appt_records, rejected = coerce_records(appointments, AppointmentRecord)
    pay_records, pay_rejected = coerce_records(payments, PaymentRecord)
    result.rejected.extend(rejected + pay_rejected)
    deduped = dedupe_appointments(appt_records)
    if not deduped:
        return result

    netted = net_summary(pay_records, refund_statuses, non_settling_statuses)
    frame = pd.DataFrame([asdict(a) for a in deduped])
    frame["payment_count"] = [
        netted[a.appointment_id].payment_count if a.appointment_id in netted else 0
        for a in deduped
    ]
    for col, attr in (
        ("gross_paid", "gross_paid"),
        ("gross_refunded", "gross_refunded"),
        ("net_amount", "net_amount"),
    ):
        frame[col] = [
            str(getattr(netted[a.appointment_id], attr)) if a.appointment_id in netted else "0"
            for a in deduped
        ]

    resolved, unresolved = resolve_frame(
        store, frame, as_of_col="booked_at", anonymous_prefix=anonymous_prefix
    )
    result.rejected.extend(_unresolved_errors(unresolved, "appointment_id"))
    if resolved.empty:
        return result

    result.rows_written = _replace_rows(
        store.cursor(),
        "fact_appointment",
        "appointment_id",
        resolved,
        """
        INSERT INTO fact_appointment (
            appointment_id, canonical_user_id, user_sk,
            provider_id, provider_sk, insurance_plan_id, insurance_plan_sk,
            booked_at, scheduled_for, status, date_id,
            payment_count, gross_paid, gross_refunded, net_amount
        )
        SELECT
            CAST(a.appointment_id AS VARCHAR),
            CAST(a.canonical_user_id AS VARCHAR),
            u.user_sk,
            CAST(a.provider_id AS VARCHAR),
            p.provider_sk,
            CAST(a.insurance_plan_id AS VARCHAR),
            ip.insurance_plan_sk,
            CAST(a.booked_at AS TIMESTAMP),
            CAST(a.scheduled_for AS TIMESTAMP),
            CAST(a.status AS VARCHAR),
            CAST(CAST(a.booked_at AS TIMESTAMP) AS DATE),
            CAST(a.payment_count AS INTEGER),
            CAST(a.gross_paid AS DECIMAL(14, 2)),
            CAST(a.gross_refunded AS DECIMAL(14, 2)),
            CAST(a.net_amount AS DECIMAL(14, 2))
        FROM _fact_rows a
        LEFT JOIN dim_user u
          ON u.canonical_user_id = CAST(a.canonical_user_id AS VARCHAR)
         AND u.valid_from <= CAST(a.booked_at AS TIMESTAMP)
         AND (u.valid_to IS NULL OR CAST(a.booked_at AS TIMESTAMP) < u.valid_to)
        LEFT JOIN dim_provider p
          ON p.provider_id = CAST(a.provider_id AS VARCHAR)
        LEFT JOIN dim_insurance_plan ip
          ON ip.insurance_plan_id = CAST(a.insurance_plan_id AS VARCHAR)
        """,
    )
    logger.info(f"fact_appointment rows written: {result.rows_written}")
    return result


def assemble_payment_facts(
    store: IdentityStore,
    payments: Iterable[Any],
    refund_statuses: Sequence[str] = DEFAULT_REFUND_STATUSES,
    non_settling_statuses: Sequence[str] = DEFAULT_NON_SETTLING_STATUSES,
    logger: logging.Logger = None,
) -> AssemblyResult:
    """
    One fact_payment row per payment_id (latest status, settled signed amount),
    attributed to the canonical user of its appointment fact. Run after
    assemble_appointment_facts.
    """
    logger = get_logger(logger, "fact_assembler")
    result = AssemblyResult(table="fact_payment")

    records, rejected = coerce_records(payments, PaymentRecord)
    result.rejected.extend(rejected)
    settled = settle_payments(records, refund_statuses, non_settling_statuses)
    if not settled:
        return result

    frame = pd.DataFrame(
        {
            "payment_id": [p.payment_id for p in settled],
            "appointment_id": [p.appointment_id for p in settled],
            "status": [p.status for p in settled],
            "amount": [str(p.amount) for p in settled],
            "signed_amount": [str(p.signed_amount) for p in settled],
            "event_at": [p.event_at for p in settled],
        }
    )
    result.rows_written = _replace_rows(
        store.cursor(),
        "fact_payment",
        "payment_id",
        frame,
        """
        INSERT INTO fact_payment (
            payment_id, appointment_id, canonical_user_id, user_sk,
            status, amount, signed_amount, event_at, date_id
        )
        SELECT
            CAST(p.payment_id AS VARCHAR),
            CAST(p.appointment_id AS VARCHAR),
            fa.canonical_user_id,
            fa.user_sk,
            CAST(p.status AS VARCHAR),
            CAST(p.amount AS DECIMAL(12, 2)),
            CAST(p.signed_amount AS DECIMAL(12, 2)),
            CAST(p.event_at AS TIMESTAMP),
            CAST(CAST(p.event_at AS TIMESTAMP) AS DATE)
        FROM _fact_rows p
        LEFT JOIN fact_appointment fa
          ON fa.appointment_id = CAST(p.appointment_id AS VARCHAR)
        """,
    )
    logger.info(f"fact_payment rows written: {result.rows_written}")
    return result

