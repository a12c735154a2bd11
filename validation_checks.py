"""
Self-check result sets emitted on demand:

  (a) SCD2 interval overlaps / current-row violations
  (b) orphaned references from facts to dimensions
  (c) netting discrepancies between fact_appointment and fact_payment

Each check returns a DataFrame; an empty frame means the check passed.
"""
import logging
from typing import Dict

import duckdb
import pandas as pd

from logging_utils import get_logger


def find_interval_overlaps(con: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    """
    Pairs of non-empty versions of the same key whose intervals overlap, plus
    keys without exactly one current (open) version.
    """
    return con.execute(
        """
        WITH versions AS (
            SELECT
                'user_identity_map' AS table_name,
                key_type,
                natural_key,
                identity_sk AS version_sk,
                valid_from,
                valid_to,
                is_current
            FROM user_identity_map
            UNION ALL
            SELECT
                'dim_user',
                'user',
                canonical_user_id,
                user_sk,
                valid_from,
                valid_to,
                is_current
            FROM dim_user
        ),
        spans AS (
            SELECT * FROM versions
            WHERE valid_to IS NULL OR valid_from < valid_to   -- empty intervals cover nothing
        ),
        overlap_pairs AS (
            SELECT
                a.table_name,
                a.key_type,
                a.natural_key,
                'overlap' AS violation,
                a.version_sk AS version_sk,
                b.version_sk AS other_version_sk,
                a.valid_from,
                a.valid_to,
                b.valid_from AS other_valid_from,
                b.valid_to AS other_valid_to
            FROM spans a
            JOIN spans b
              ON a.table_name = b.table_name
             AND a.key_type = b.key_type
             AND a.natural_key = b.natural_key
             AND a.version_sk < b.version_sk
             AND a.valid_from < COALESCE(b.valid_to, TIMESTAMP '9999-12-31')
             AND b.valid_from < COALESCE(a.valid_to, TIMESTAMP '9999-12-31')
        ),
        current_counts AS (
            SELECT
                table_name,
                key_type,
                natural_key,
                COUNT(*) FILTER (WHERE is_current) AS current_rows,
                COUNT(*) FILTER (WHERE valid_to IS NULL) AS open_rows,
                COUNT(*) FILTER (WHERE is_current AND valid_to IS NOT NULL) AS closed_current_rows
            FROM versions
            GROUP BY table_name, key_type, natural_key
        )
        SELECT * FROM overlap_pairs
        UNION ALL
        SELECT
            table_name,
            key_type,
            natural_key,
            CASE
                WHEN current_rows <> 1 THEN 'current_rows=' || CAST(current_rows AS VARCHAR)
                WHEN open_rows <> 1 THEN 'open_rows=' || CAST(open_rows AS VARCHAR)
                ELSE 'current_row_closed'
            END,
            NULL, NULL, NULL, NULL, NULL, NULL
        FROM current_counts
        WHERE current_rows <> 1 OR open_rows <> 1 OR closed_current_rows > 0
        ORDER BY table_name, key_type, natural_key
        """
    ).df()


def find_orphaned_references(
    con: duckdb.DuckDBPyConnection, anonymous_prefix: str = "ANON-"
) -> pd.DataFrame:
    """
    Fact rows whose dimension references do not resolve. Anonymous canonical
    ids may legitimately have no dim_user row; a set user_sk must always exist.
    """
    return con.execute(
        """
        -- user_sk pointing at no dim_user row
        SELECT 'fact_appointment' AS fact_table, f.appointment_id AS fact_key,
               'user_sk' AS reference, CAST(f.user_sk AS VARCHAR) AS reference_value
        FROM fact_appointment f
        LEFT JOIN dim_user u ON u.user_sk = f.user_sk
        WHERE f.user_sk IS NOT NULL AND u.user_sk IS NULL
        UNION ALL
        SELECT 'fact_session', f.session_id, 'user_sk', CAST(f.user_sk AS VARCHAR)
        FROM fact_session f
        LEFT JOIN dim_user u ON u.user_sk = f.user_sk
        WHERE f.user_sk IS NOT NULL AND u.user_sk IS NULL
        UNION ALL
        SELECT 'fact_payment', f.payment_id, 'user_sk', CAST(f.user_sk AS VARCHAR)
        FROM fact_payment f
        LEFT JOIN dim_user u ON u.user_sk = f.user_sk
        WHERE f.user_sk IS NOT NULL AND u.user_sk IS NULL
        UNION ALL

        -- non-anonymous canonical ids never seen by the merge engine
        SELECT 'fact_appointment', f.appointment_id, 'canonical_user_id', f.canonical_user_id
        FROM fact_appointment f
        WHERE NOT starts_with(f.canonical_user_id, ?)
          AND NOT EXISTS (
              SELECT 1 FROM dim_user u WHERE u.canonical_user_id = f.canonical_user_id
          )
        UNION ALL
        SELECT 'fact_session', f.session_id, 'canonical_user_id', f.canonical_user_id
        FROM fact_session f
        WHERE NOT starts_with(f.canonical_user_id, ?)
          AND NOT EXISTS (
              SELECT 1 FROM dim_user u WHERE u.canonical_user_id = f.canonical_user_id
          )
        UNION ALL

        -- lookup dimensions
        SELECT 'fact_appointment', f.appointment_id, 'provider_id', f.provider_id
        FROM fact_appointment f
        LEFT JOIN dim_provider p ON p.provider_id = f.provider_id
        WHERE f.provider_id IS NOT NULL AND p.provider_id IS NULL
        UNION ALL
        SELECT 'fact_appointment', f.appointment_id, 'insurance_plan_id', f.insurance_plan_id
        FROM fact_appointment f
        LEFT JOIN dim_insurance_plan ip ON ip.insurance_plan_id = f.insurance_plan_id
        WHERE f.insurance_plan_id IS NOT NULL AND ip.insurance_plan_id IS NULL
        UNION ALL

        -- payments for appointments with no fact row
        SELECT 'fact_payment', f.payment_id, 'appointment_id', f.appointment_id
        FROM fact_payment f
        LEFT JOIN fact_appointment a ON a.appointment_id = f.appointment_id
        WHERE a.appointment_id IS NULL
        ORDER BY 1, 2, 3
        """,
        [anonymous_prefix, anonymous_prefix],
    ).df()


def find_netting_discrepancies(
    con: duckdb.DuckDBPyConnection, tolerance: float = 0.005
) -> pd.DataFrame:
    """
    Appointments where the stored net differs from gross_paid - gross_refunded
    or from the sum of signed payment facts, or where refunds exceed payments.
    """
    return con.execute(
        """
        WITH payment_sums AS (
            SELECT
                appointment_id,
                COUNT(*) AS payment_rows,
                SUM(signed_amount) AS payment_net
            FROM fact_payment
            GROUP BY appointment_id
        )
        SELECT
            a.appointment_id,
            a.gross_paid,
            a.gross_refunded,
            a.net_amount,
            COALESCE(p.payment_net, 0) AS payment_net,
            a.payment_count,
            COALESCE(p.payment_rows, 0) AS payment_rows,
            CASE
                WHEN ABS(a.net_amount - (a.gross_paid - a.gross_refunded)) > ?
                    THEN 'gross_net_mismatch'
                WHEN ABS(a.net_amount - COALESCE(p.payment_net, 0)) > ?
                    THEN 'fact_payment_mismatch'
                WHEN a.payment_count <> COALESCE(p.payment_rows, 0)
                    THEN 'payment_count_mismatch'
                ELSE 'negative_net'
            END AS discrepancy
        FROM fact_appointment a
        LEFT JOIN payment_sums p USING (appointment_id)
        WHERE ABS(a.net_amount - (a.gross_paid - a.gross_refunded)) > ?
           OR ABS(a.net_amount - COALESCE(p.payment_net, 0)) > ?
           OR a.payment_count <> COALESCE(p.payment_rows, 0)
           OR a.net_amount + ? < 0
        ORDER BY a.appointment_id
        """,
        [tolerance] * 5,
    ).df()


def run_validation_checks(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger = None,
    tolerance: float = 0.005,
    anonymous_prefix: str = "ANON-",
) -> Dict[str, pd.DataFrame]:
    """Run all three checks and log their sizes."""
    logger = get_logger(logger, "validation_checks")
    results = {
        "interval_overlaps": find_interval_overlaps(con),
        "orphaned_references": find_orphaned_references(con, anonymous_prefix),
        "netting_discrepancies": find_netting_discrepancies(con, tolerance),
    }
    for name, frame in results.items():
        if frame.empty:
            logger.info(f"Validation {name}: OK")
        else:
            logger.warning(f"Validation {name}: {len(frame)} violation(s)")
    return results
