import glob
import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

import duckdb
import pandas as pd
from diskcache import Cache
from dotenv import load_dotenv

from config_loader import load_config
from deduplication import dedupe_frame
from errors import EngineError, IntervalIntegrityViolation
from fact_assembler import (
    assemble_appointment_facts,
    assemble_payment_facts,
    assemble_session_facts,
    upsert_insurance_plans,
    upsert_providers,
)
from gold_transforms import run_gold_transforms
from identity_merge import apply_batch
from identity_store import IdentityStore
from logging_utils import configure_logging
from models import DEVICE, IDENTITY_SPACES, LOGIN, PaymentRecord, coerce_records
from setup_database import create_schema
from validation_checks import run_validation_checks

# Entities are applied in this order: identities first so facts resolve
# against the newest mappings, lookups before the facts that reference them.
ENTITY_ORDER = [
    "identity_facts",
    "providers",
    "insurance_plans",
    "sessions",
    "appointments",
    "payments",
]

STAGING_TABLES = {
    "identity_facts": (
        "stg_identity_facts",
        ["login_user_id", "device_id", "canonical_user_id_hint", "observed_at", "source_batch_id", "attributes"],
    ),
    "sessions": (
        "stg_sessions",
        ["session_id", "login_user_id", "device_id", "channel", "started_at", "updated_at", "page_views"],
    ),
    "appointments": (
        "stg_appointments",
        ["appointment_id", "login_user_id", "device_id", "provider_id", "insurance_plan_id",
         "booked_at", "scheduled_for", "status", "updated_at"],
    ),
    "payments": (
        "stg_payments",
        ["payment_id", "appointment_id", "amount", "status", "event_at"],
    ),
}


@dataclass
class TouchedKeys:
    """Natural keys whose facts must be rebuilt after this run."""

    session_ids: Set[str] = field(default_factory=set)
    appointment_ids: Set[str] = field(default_factory=set)
    payment_ids: Set[str] = field(default_factory=set)
    identities: Dict[str, Set[str]] = field(
        default_factory=lambda: {space: set() for space in IDENTITY_SPACES}
    )

    def is_empty(self) -> bool:
        return not (
            self.session_ids
            or self.appointment_ids
            or self.payment_ids
            or any(self.identities.values())
        )


def append_dead_letters(records: List[Dict], dlq_path: str):
    if not records:
        return
    os.makedirs(os.path.dirname(dlq_path), exist_ok=True)
    with open(dlq_path, "a") as dlq:
        for rec in records:
            dlq.write(json.dumps(rec, default=str) + "\n")


def dead_letters_from_errors(errors: List[EngineError], filepath: str = None) -> List[Dict]:
    out = []
    for err in errors:
        rec = err.to_dead_letter()
        if filepath:
            rec["filepath"] = filepath
        out.append(rec)
    return out


def file_digest(filepath: str) -> str:
    sha = hashlib.sha256()
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            sha.update(chunk)
    return sha.hexdigest()


def read_jsonl(filepath: str) -> Tuple[List[Dict[str, Any]], List[Dict]]:
    """Parse per line so one poison pill doesn't lose the file."""
    rows, parse_dead = [], []
    with open(filepath, "r") as f:
        for i, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                row = json.loads(line)
                if not isinstance(row, dict):
                    raise json.JSONDecodeError("expected a JSON object", line, 0)
                rows.append(row)
            except json.JSONDecodeError as e:
                parse_dead.append(
                    {
                        "stage": "parse",
                        "filepath": filepath,
                        "line_number": i,
                        "error": str(e),
                        "raw_event": line.strip(),
                    }
                )
    return rows, parse_dead


_TIMESTAMP_COLUMNS = {"observed_at", "started_at", "updated_at", "booked_at", "scheduled_for", "event_at"}


def _staging_type(column: str) -> str:
    if column in _TIMESTAMP_COLUMNS:
        return "TIMESTAMP"
    if column == "amount":
        return "DECIMAL(12, 2)"
    if column == "page_views":
        return "INTEGER"
    if column == "attributes":
        return "JSON"
    return "VARCHAR"


def _stage_value(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def load_staging_rows(
    con: duckdb.DuckDBPyConnection, entity: str, rows: List[Dict[str, Any]], logger
) -> int:
    """Append raw rows to the entity's staging table (append-only, no dedup)."""
    if entity not in STAGING_TABLES or not rows:
        return 0
    table, columns = STAGING_TABLES[entity]
    df = pd.DataFrame(
        [{c: _stage_value(row.get(c)) for c in columns} for row in rows],
        columns=columns,
        dtype="object",
    )
    select_expr = ", ".join(f"TRY_CAST(_df.{c} AS {_staging_type(c)})" for c in columns)
    con.register("_df", df)
    try:
        # Strings in; values that don't parse land as NULL and are rejected downstream
        con.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) SELECT {select_expr} FROM _df"
        )
    finally:
        con.unregister("_df")
    logger.info(f"Staged {len(df)} rows into {table}")
    return len(df)


def _staged_frame(
    con: duckdb.DuckDBPyConnection, table: str, where_col: str, keys: Set[str]
) -> pd.DataFrame:
    keys_df = pd.DataFrame({"k": sorted(keys)})
    con.register("_keys", keys_df)
    try:
        return con.execute(
            f"""
            SELECT *, ROW_NUMBER() OVER (ORDER BY ingestion_timestamp, rowid) AS _ingest_order
            FROM {table}
            WHERE {where_col} IN (SELECT CAST(k AS VARCHAR) FROM _keys)
            ORDER BY _ingest_order
            """
        ).df()
    finally:
        con.unregister("_keys")


def _frame_records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    return df.drop(columns=["_ingest_order"], errors="ignore").to_dict("records")


def rebuild_facts(store: IdentityStore, touched: TouchedKeys, cfg, logger) -> List[EngineError]:
    """Rebuild facts for every touched key from the full staging history."""
    con = store.cursor()
    rejected: List[EngineError] = []
    refund_statuses = cfg.get_list("netting.refund_statuses")
    non_settling = cfg.get_list("netting.non_settling_statuses")
    anon = cfg.get("identity.anonymous_prefix", "ANON-")

    # Identity changes can re-attribute sessions/appointments of those identifiers
    for space, col in ((LOGIN, "login_user_id"), (DEVICE, "device_id")):
        ids = touched.identities[space]
        if ids:
            touched.session_ids |= set(_staged_frame(con, "stg_sessions", col, ids)["session_id"].dropna())
            touched.appointment_ids |= set(
                _staged_frame(con, "stg_appointments", col, ids)["appointment_id"].dropna()
            )

    if touched.session_ids:
        sessions = dedupe_frame(
            _staged_frame(con, "stg_sessions", "session_id", touched.session_ids),
            ["session_id"],
            "updated_at",
            tiebreak_col="_ingest_order",
        )
        res = assemble_session_facts(store, _frame_records(sessions), anon, logger)
        rejected.extend(res.rejected)

    if touched.payment_ids:
        touched.appointment_ids |= set(
            _staged_frame(con, "stg_payments", "payment_id", touched.payment_ids)["appointment_id"].dropna()
        )

    if touched.appointment_ids:
        appointments = dedupe_frame(
            _staged_frame(con, "stg_appointments", "appointment_id", touched.appointment_ids),
            ["appointment_id"],
            "updated_at",
            tiebreak_col="_ingest_order",
        )
        payments, pay_rejected = coerce_records(
            _frame_records(
                _staged_frame(con, "stg_payments", "appointment_id", touched.appointment_ids)
            ),
            PaymentRecord,
        )
        rejected.extend(pay_rejected)
        res = assemble_appointment_facts(
            store,
            _frame_records(appointments),
            payments,
            refund_statuses=refund_statuses,
            non_settling_statuses=non_settling,
            anonymous_prefix=anon,
            logger=logger,
        )
        rejected.extend(res.rejected)
        res = assemble_payment_facts(
            store,
            payments,
            refund_statuses=refund_statuses,
            non_settling_statuses=non_settling,
            logger=logger,
        )
        rejected.extend(res.rejected)
    return rejected


def process_staging_file(
    filepath: str,
    entity: str,
    con: duckdb.DuckDBPyConnection,
    store: IdentityStore,
    touched: TouchedKeys,
    cfg,
    run_ts: str,
    logger,
    fmt,
) -> bool:
    """Stage one file and apply it. Returns False when the file must be retried."""
    logs_dir = cfg.get("paths.logs_dir", "logs")
    file_basename = os.path.basename(filepath).replace(".jsonl", "")
    os.makedirs(logs_dir, exist_ok=True)
    file_fh = logging.FileHandler(os.path.join(logs_dir, f"processing_{file_basename}_{run_ts}.log"))
    file_fh.setFormatter(fmt)
    logger.addHandler(file_fh)

    dlq_path = os.path.join(
        cfg.get("paths.dead_letter_dir", "dead_letter"), f"{entity}_failures_{run_ts}.jsonl"
    )
    started = datetime.now()
    logger.info(f"Processing staging file: {filepath} ({entity})")

    try:
        rows, parse_dead = read_jsonl(filepath)
        append_dead_letters(parse_dead, dlq_path)
        logger.info(f"Parsed ok={len(rows)}, parse_dead={len(parse_dead)}")
        if not rows:
            logger.warning(f"No valid rows after parsing. Skipping file {filepath}.")
            return True

        con.begin()
        try:
            staged = load_staging_rows(con, entity, rows, logger)
            con.commit()
        except Exception:
            con.rollback()
            raise

        rejected: List[EngineError] = []
        if entity == "identity_facts":
            result = apply_batch(
                store,
                rows,
                tracked_attributes=cfg.get_list("identity.tracked_user_attributes"),
                minted_prefix=cfg.get("identity.minted_prefix", "USR-"),
                anonymous_prefix=cfg.get("identity.anonymous_prefix", "ANON-"),
                logger=logger,
            )
            rejected.extend(result.rejected)
            for space, key in result.committed_keys:
                if space in touched.identities:
                    touched.identities[space].add(key)
        elif entity == "providers":
            rejected.extend(upsert_providers(con, rows, logger).rejected)
        elif entity == "insurance_plans":
            rejected.extend(upsert_insurance_plans(con, rows, logger).rejected)
        elif entity == "sessions":
            touched.session_ids |= {r["session_id"] for r in rows if r.get("session_id")}
        elif entity == "appointments":
            touched.appointment_ids |= {r["appointment_id"] for r in rows if r.get("appointment_id")}
        elif entity == "payments":
            touched.payment_ids |= {r["payment_id"] for r in rows if r.get("payment_id")}

        append_dead_letters(dead_letters_from_errors(rejected, filepath), dlq_path)
        took = (datetime.now() - started).total_seconds()
        logger.info(
            f"File done: {filepath} rows={len(rows)} staged={staged} "
            f"rejected={len(rejected)} duration_s={took:.2f}"
        )
        return True

    except IntervalIntegrityViolation:
        # Engine bug, not bad data: stop the run
        raise
    except Exception as e:
        logger.error(f"Fatal error processing {filepath}: {e}", exc_info=True)
        return False
    finally:
        logger.removeHandler(file_fh)
        file_fh.close()


def connect_with_retries(db_file: str, logger) -> Optional[duckdb.DuckDBPyConnection]:
    """DuckDB connect with retries ONLY for transient file lock issues."""
    for attempt in range(3):
        try:
            return duckdb.connect(database=db_file, read_only=False)
        except (IOError, OSError) as e:
            error_msg = str(e).lower()
            if "lock" in error_msg or "permission" in error_msg:
                logger.warning(f"DuckDB connect failed (attempt {attempt+1}/3): {e}")
                if attempt < 2:
                    time.sleep(0.5 * (2**attempt))
            else:
                logger.error(f"DuckDB connect failed with non-retryable IO error: {e}")
                return None
        except duckdb.Error as e:
            logger.error(
                f"DuckDB connect failed with non-retryable error: {type(e).__name__}: {e}"
            )
            return None
    logger.error("Failed to connect to DuckDB after retries")
    return None


def staging_files(cfg) -> List[Tuple[str, str]]:
    staging_dir = cfg.get("paths.staging_dir", "staging")
    patterns = cfg.get("staging.file_patterns", {})
    out = []
    for entity in ENTITY_ORDER:
        pattern = patterns.get(entity)
        if pattern:
            out.extend((entity, p) for p in sorted(glob.glob(os.path.join(staging_dir, pattern))))
    return out


def run(cfg, run_ts: str, logger, fmt) -> Dict[str, pd.DataFrame]:
    """One batch run over every pending staging file."""
    processed_dir = str(cfg.get_path("paths.processed_dir", create=True))

    con = connect_with_retries(cfg.get("database_path"), logger)
    if con is None:
        return {}

    applied = Cache(str(cfg.get_path("paths.cache_dir", create=True)))
    applied_ttl = cfg.get("staging.applied_file_ttl_seconds", 1209600)
    try:
        create_schema(con)
        store = IdentityStore(con, logger)
        touched = TouchedKeys()

        files = staging_files(cfg)
        if not files:
            logger.info("No files found in staging directory.")

        for entity, filepath in files:
            digest = file_digest(filepath)
            if digest in applied:
                logger.info(f"{filepath} already applied (digest {digest[:12]}). Skipping.")
            elif not process_staging_file(
                filepath, entity, con, store, touched, cfg, run_ts, logger, fmt
            ):
                logger.warning(f"{filepath} failed and stays in staging for retry.")
                continue
            else:
                applied.set(digest, filepath, expire=applied_ttl)

            dest_path = os.path.join(processed_dir, os.path.basename(filepath))
            os.rename(filepath, dest_path)
            logger.info(f"Moved {filepath} to {dest_path}")

        if not touched.is_empty():
            logger.info("Rebuilding facts for touched keys...")
            rejected = rebuild_facts(store, touched, cfg, logger)
            dlq_path = os.path.join(
                cfg.get("paths.dead_letter_dir", "dead_letter"), f"facts_failures_{run_ts}.jsonl"
            )
            append_dead_letters(dead_letters_from_errors(rejected), dlq_path)
            logger.info(f"Fact rebuild done, rejected={len(rejected)}")

        con.begin()
        try:
            run_gold_transforms(con, logger)
            con.commit()
        except Exception:
            con.rollback()
            raise

        checks = run_validation_checks(
            con,
            logger,
            tolerance=cfg.get("validation.netting_tolerance", 0.005),
            anonymous_prefix=cfg.get("identity.anonymous_prefix", "ANON-"),
        )
        if cfg.get("validation.fail_on_violations", False) and any(
            not frame.empty for frame in checks.values()
        ):
            raise RuntimeError("Validation checks reported violations")
        return checks
    finally:
        applied.close()
        con.close()


def main():
    load_dotenv()
    cfg = load_config()
    run_ts = os.getenv("RUN_TS") or datetime.now().strftime(
        cfg.get("run_ts_format", "%Y%m%d_%H%M%S")
    )
    logger, fmt = configure_logging(
        os.path.join(cfg.get("paths.logs_dir", "logs"), f"process_staging_{run_ts}.log"),
        logger_name="process_staging",
    )
    logger.info("--- Starting Staging Processing ---")
    run(cfg, run_ts, logger, fmt)
    logger.info("--- Staging Processing Finished ---")


if __name__ == "__main__":
    main()
