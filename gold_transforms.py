import logging
import os
from datetime import datetime

import duckdb

from logging_utils import configure_logging

DB_FILE = "identity_warehouse.db"


def run_gold_transforms(con: duckdb.DuckDBPyConnection, logger: logging.Logger):
    """
    Main function to run all gold layer transformations.
    Creates the semantic views consumed by the BI layer.
    """
    logger.info("--- Starting Gold Layer Transformations ---")
    try:
        create_gold_spend_views(con, logger)
        create_gold_identity_views(con, logger)

        logger.info("--- Gold Layer Transformations Completed Successfully ---")

    except Exception as e:
        logger.error(f"An error occurred during gold transformations: {e}", exc_info=True)
        raise  # Re-raise to allow transaction rollback in the caller


def create_gold_spend_views(con, logger):
    logger.info("Creating gold spend views...")

    # 1) Per-user net spend: one appointment counted once, under the user it
    #    resolved to at booking time.
    con.execute(
        """
        CREATE OR REPLACE VIEW vw_gold_user_net_spend AS
        WITH current_users AS (
            SELECT
                canonical_user_id,
                json_extract_string(attributes, '$.region')           AS region,
                json_extract_string(attributes, '$.customer_segment') AS customer_segment
            FROM dim_user
            WHERE is_current = TRUE
        )
        SELECT
            f.canonical_user_id,
            cu.region,
            cu.customer_segment,
            COUNT(DISTINCT f.appointment_id)   AS appointments,
            SUM(f.payment_count)               AS payments,
            SUM(f.gross_paid)                  AS gross_paid,
            SUM(f.gross_refunded)              AS gross_refunded,
            SUM(f.net_amount)                  AS net_spend,
            MIN(f.booked_at)                   AS first_booked_at,
            MAX(f.booked_at)                   AS last_booked_at
        FROM fact_appointment f
        LEFT JOIN current_users cu USING (canonical_user_id)
        GROUP BY f.canonical_user_id, cu.region, cu.customer_segment;
        """
    )

    # 2) Spend by segment using the dim_user version valid at booking time
    con.execute(
        """
        CREATE OR REPLACE VIEW vw_gold_segment_net_spend_daily AS
        SELECT
            f.date_id,
            COALESCE(json_extract_string(u.attributes, '$.region'), 'UNKNOWN')           AS region,
            COALESCE(json_extract_string(u.attributes, '$.customer_segment'), 'UNKNOWN') AS customer_segment,
            COUNT(DISTINCT f.canonical_user_id) AS users,
            COUNT(*)                            AS appointments,
            SUM(f.net_amount)                   AS net_spend,
            SUM(f.net_amount) / NULLIF(COUNT(DISTINCT f.canonical_user_id), 0) AS net_spend_per_user
        FROM fact_appointment f
        LEFT JOIN dim_user u ON u.user_sk = f.user_sk
        GROUP BY 1, 2, 3;
        """
    )

    # 3) Daily payment flow (signed), for reconciling against finance extracts
    con.execute(
        """
        CREATE OR REPLACE VIEW vw_gold_daily_payment_flow AS
        SELECT
            date_id,
            COUNT(*)                                              AS payments,
            SUM(CASE WHEN signed_amount > 0 THEN signed_amount ELSE 0 END)  AS collected,
            SUM(CASE WHEN signed_amount < 0 THEN -signed_amount ELSE 0 END) AS refunded,
            SUM(signed_amount)                                    AS net_flow
        FROM fact_payment
        GROUP BY date_id;
        """
    )
    logger.info("Gold spend views created.")


def create_gold_identity_views(con, logger):
    logger.info("Creating gold identity views...")
    con.execute(
        """
        CREATE OR REPLACE VIEW vw_gold_identity_history AS
        SELECT
            key_type,
            natural_key,
            LAG(canonical_user_id) OVER (
                PARTITION BY key_type, natural_key ORDER BY valid_from, identity_sk
            ) AS previous_canonical_user_id,
            canonical_user_id,
            valid_from,
            valid_to,
            is_current,
            source_batch_id
        FROM user_identity_map
        WHERE valid_to IS NULL OR valid_from < valid_to;

        -- Identifiers currently collapsed into each canonical user
        CREATE OR REPLACE VIEW vw_gold_user_identifiers AS
        SELECT
            canonical_user_id,
            COUNT(*) FILTER (WHERE key_type = 'login')  AS login_ids,
            COUNT(*) FILTER (WHERE key_type = 'device') AS device_ids,
            LIST(natural_key ORDER BY natural_key) FILTER (WHERE key_type = 'login')  AS logins,
            LIST(natural_key ORDER BY natural_key) FILTER (WHERE key_type = 'device') AS devices
        FROM user_identity_map
        WHERE is_current = TRUE
        GROUP BY canonical_user_id;
        """
    )
    logger.info("Gold identity views created.")


if __name__ == "__main__":
    run_ts = os.getenv("RUN_TS") or datetime.now().strftime("%Y%m%d_%H%M%S")
    logger, _ = configure_logging(
        f"logs/gold_transforms_{run_ts}.log", logger_name="gold_transforms"
    )

    con = None
    try:
        con = duckdb.connect(database=DB_FILE, read_only=False)
        logger.info("Successfully connected to DuckDB for standalone run.")

        con.begin()
        run_gold_transforms(con, logger)
        con.commit()
        logger.info("Standalone gold transforms committed.")

    except Exception as e:
        logger.error(f"Standalone gold transformations run failed: {e}", exc_info=True)
        if con:
            con.rollback()
            logger.info("Transaction rolled back.")
    finally:
        if con:
            con.close()
            logger.info("DuckDB connection closed.")
