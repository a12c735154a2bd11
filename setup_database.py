import logging

import duckdb

# --- Configuration ---
DB_FILE = "identity_warehouse.db"
LOG_FILE = "etl.log"

logger = logging.getLogger("setup_database")


def create_schema(con: duckdb.DuckDBPyConnection) -> None:
    """Create staging, dimension, fact and audit tables if they don't exist."""

    # Staging tables - APPEND-ONLY (duplicates allowed, deduped downstream)
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS stg_identity_facts (
        login_user_id VARCHAR,
        device_id VARCHAR,
        canonical_user_id_hint VARCHAR,
        observed_at TIMESTAMP,
        source_batch_id VARCHAR,
        attributes JSON,
        ingestion_timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS stg_sessions (
        session_id VARCHAR,
        login_user_id VARCHAR,
        device_id VARCHAR,
        channel VARCHAR,
        started_at TIMESTAMP,
        updated_at TIMESTAMP,
        page_views INTEGER,
        ingestion_timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS stg_appointments (
        appointment_id VARCHAR,
        login_user_id VARCHAR,
        device_id VARCHAR,
        provider_id VARCHAR,
        insurance_plan_id VARCHAR,
        booked_at TIMESTAMP,
        scheduled_for TIMESTAMP,
        status VARCHAR,
        updated_at TIMESTAMP,
        ingestion_timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS stg_payments (
        payment_id VARCHAR,
        appointment_id VARCHAR,
        amount DECIMAL(12, 2),
        status VARCHAR,
        event_at TIMESTAMP,
        ingestion_timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """
    )
    logger.info("Staging tables are set up (append-only, duplicates allowed).")

    # Identity map (SCD2). valid_to NULL = open-ended; login and device ids are
    # independent key spaces distinguished by key_type.
    con.execute(
        """
    CREATE SEQUENCE IF NOT EXISTS identity_sk_seq START 1;

    CREATE TABLE IF NOT EXISTS user_identity_map (
        identity_sk BIGINT PRIMARY KEY DEFAULT NEXTVAL('identity_sk_seq'),
        key_type VARCHAR NOT NULL,                    -- 'login' | 'device'
        natural_key VARCHAR NOT NULL,                 -- NK
        canonical_user_id VARCHAR NOT NULL,

        -- SCD window
        valid_from TIMESTAMP NOT NULL,
        valid_to TIMESTAMP,                           -- NULL = open
        is_current BOOLEAN DEFAULT TRUE,
        change_hash VARCHAR NOT NULL,

        -- Audit
        source_batch_id VARCHAR,
        recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """
    )
    con.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_identity_nk ON user_identity_map(key_type, natural_key);
        CREATE INDEX IF NOT EXISTS idx_identity_canonical ON user_identity_map(canonical_user_id);
        """
    )

    con.execute(
        """
    CREATE SEQUENCE IF NOT EXISTS user_sk_seq START 1;

    CREATE TABLE IF NOT EXISTS dim_user (
        user_sk BIGINT PRIMARY KEY DEFAULT NEXTVAL('user_sk_seq'),
        canonical_user_id VARCHAR NOT NULL,           -- NK
        attributes JSON,                              -- tracked descriptive attributes

        -- SCD window
        valid_from TIMESTAMP NOT NULL,
        valid_to TIMESTAMP,
        is_current BOOLEAN DEFAULT TRUE,
        change_hash VARCHAR NOT NULL,

        -- Audit
        source_batch_id VARCHAR,
        recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """
    )
    con.execute(
        "CREATE INDEX IF NOT EXISTS idx_user_nk ON dim_user(canonical_user_id);"
    )

    # Late-arriving updates are flagged here for manual/backfill handling
    con.execute(
        """
    CREATE SEQUENCE IF NOT EXISTS conflict_id_seq START 1;

    CREATE TABLE IF NOT EXISTS identity_merge_conflicts (
        conflict_id BIGINT PRIMARY KEY DEFAULT NEXTVAL('conflict_id_seq'),
        key_type VARCHAR NOT NULL,
        natural_key VARCHAR NOT NULL,
        observed_at TIMESTAMP,
        current_valid_from TIMESTAMP,
        proposed_change_hash VARCHAR,
        source_batch_id VARCHAR,
        fact JSON,
        detected_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """
    )

    # Lookup dimensions (Type 1)
    con.execute(
        """
    CREATE SEQUENCE IF NOT EXISTS provider_sk_seq START 1;

    CREATE TABLE IF NOT EXISTS dim_provider (
        provider_sk BIGINT PRIMARY KEY DEFAULT NEXTVAL('provider_sk_seq'),
        provider_id VARCHAR UNIQUE NOT NULL,
        provider_name VARCHAR,
        specialty VARCHAR,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE SEQUENCE IF NOT EXISTS insurance_plan_sk_seq START 1;

    CREATE TABLE IF NOT EXISTS dim_insurance_plan (
        insurance_plan_sk BIGINT PRIMARY KEY DEFAULT NEXTVAL('insurance_plan_sk_seq'),
        insurance_plan_id VARCHAR UNIQUE NOT NULL,
        plan_name VARCHAR,
        payer VARCHAR,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """
    )
    logger.info("Dimension tables are set up.")

    # Fact tables. Uniqueness per natural key is maintained by the assembler
    # (delete + insert by key in one transaction); facts are rebuildable.
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS fact_appointment (
        appointment_id VARCHAR NOT NULL,
        canonical_user_id VARCHAR NOT NULL,
        user_sk BIGINT,
        provider_id VARCHAR,
        provider_sk BIGINT,
        insurance_plan_id VARCHAR,
        insurance_plan_sk BIGINT,
        booked_at TIMESTAMP,
        scheduled_for TIMESTAMP,
        status VARCHAR,
        date_id DATE,

        -- Payment measures (netted)
        payment_count INTEGER,
        gross_paid DECIMAL(14, 2),
        gross_refunded DECIMAL(14, 2),
        net_amount DECIMAL(14, 2),

        assembled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS fact_payment (
        payment_id VARCHAR NOT NULL,
        appointment_id VARCHAR NOT NULL,
        canonical_user_id VARCHAR,
        user_sk BIGINT,
        status VARCHAR,
        amount DECIMAL(12, 2),
        signed_amount DECIMAL(12, 2),
        event_at TIMESTAMP,
        date_id DATE,
        assembled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS fact_session (
        session_id VARCHAR NOT NULL,
        canonical_user_id VARCHAR NOT NULL,
        user_sk BIGINT,
        channel VARCHAR,
        started_at TIMESTAMP,
        updated_at TIMESTAMP,
        page_views INTEGER,
        date_id DATE,
        assembled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """
    )
    con.execute(
        """
    CREATE INDEX IF NOT EXISTS idx_fact_appt_user ON fact_appointment (canonical_user_id, booked_at);
    CREATE INDEX IF NOT EXISTS idx_fact_pay_appt ON fact_payment (appointment_id);
    CREATE INDEX IF NOT EXISTS idx_fact_session_user ON fact_session (canonical_user_id, started_at);
    """
    )
    logger.info("Fact tables are set up.")


def setup_database(db_file: str = None):
    """
    Connects to the DuckDB database and creates the necessary tables
    if they don't exist.
    """
    db_file = db_file or DB_FILE
    con = duckdb.connect(db_file)
    logger.info(f"Successfully connected to DuckDB database: {db_file}")
    try:
        create_schema(con)
    finally:
        con.close()
    logger.info("Database setup complete. Connection closed.")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.FileHandler(LOG_FILE, mode="a"), logging.StreamHandler()],
    )
    logger.info("--- Starting Database Setup ---")
    setup_database()
    logger.info("--- Database Setup Finished ---")
