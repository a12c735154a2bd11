"""
DuckDB-backed store for the SCD2 identity tables (user_identity_map, dim_user).

The store is passed explicitly to the merge engine and resolver. Writes for a
natural key happen under that key's lock, in one transaction on a dedicated
cursor; reads use fresh cursors and only ever see committed versions.
"""
import json
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import duckdb

from errors import IntervalIntegrityViolation, LateArrivingConflictError
from logging_utils import get_logger
from models import (
    DEVICE,
    LOGIN,
    USER,
    VERSION_TYPES,
    Scd2Version,
    check_intervals,
)

_IDENTITY_COLUMNS = """
    identity_sk, key_type, natural_key, canonical_user_id,
    valid_from, valid_to, is_current, change_hash, source_batch_id
"""
_USER_COLUMNS = """
    user_sk, 'user' AS key_type, canonical_user_id, attributes,
    valid_from, valid_to, is_current, change_hash, source_batch_id
"""


class IdentityStore:
    def __init__(self, con: duckdb.DuckDBPyConnection, logger: logging.Logger = None):
        self._con = con
        self._logger = get_logger(logger, "identity_store")
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        return self._con

    def cursor(self) -> duckdb.DuckDBPyConnection:
        """A per-caller cursor; DuckDB cursors may be used from separate threads."""
        return self._con.cursor()

    def key_lock(self, space: str, natural_key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get((space, natural_key))
            if lock is None:
                lock = self._locks[(space, natural_key)] = threading.Lock()
            return lock

    # --- Reads ----------------------------------------------------------------

    def _select(self, space: str) -> Tuple[str, str, List]:
        if space in (LOGIN, DEVICE):
            return (
                f"SELECT {_IDENTITY_COLUMNS} FROM user_identity_map "
                "WHERE key_type = ? AND natural_key = ?",
                "identity_sk",
                [space],
            )
        if space == USER:
            return (
                f"SELECT {_USER_COLUMNS} FROM dim_user WHERE canonical_user_id = ?",
                "user_sk",
                [],
            )
        raise ValueError(f"Unknown key space: {space}")

    @staticmethod
    def _to_version(space: str, row) -> Scd2Version:
        sk, _, natural_key, value, valid_from, valid_to, is_current, change_hash, batch = row
        if space == USER:
            values = json.loads(value) if isinstance(value, str) else dict(value or {})
        else:
            values = {"canonical_user_id": value}
        return VERSION_TYPES[space](
            space=space,
            natural_key=natural_key,
            values=values,
            valid_from=valid_from,
            valid_to=valid_to,
            is_current=bool(is_current),
            change_hash=change_hash,
            source_batch_id=batch,
            surrogate_key=sk,
        )

    def history(self, space: str, natural_key: str, cur=None) -> List[Scd2Version]:
        """All versions for a key ordered by valid_from."""
        sql, sk_col, params = self._select(space)
        cur = cur or self.cursor()
        rows = cur.execute(
            f"{sql} ORDER BY valid_from, {sk_col}", params + [natural_key]
        ).fetchall()
        return [self._to_version(space, r) for r in rows]

    def current(self, space: str, natural_key: str, cur=None) -> Optional[Scd2Version]:
        sql, _, params = self._select(space)
        cur = cur or self.cursor()
        row = cur.execute(
            f"{sql} AND is_current = TRUE", params + [natural_key]
        ).fetchone()
        return self._to_version(space, row) if row else None

    def as_of(
        self, space: str, natural_key: str, as_of: datetime, cur=None
    ) -> Optional[Scd2Version]:
        """The version whose [valid_from, valid_to) contains as_of, if any."""
        sql, sk_col, params = self._select(space)
        cur = cur or self.cursor()
        row = cur.execute(
            f"""
            {sql}
              AND valid_from <= ?
              AND (valid_to IS NULL OR ? < valid_to)
            ORDER BY valid_from DESC, {sk_col} DESC
            LIMIT 1
            """,
            params + [natural_key, as_of, as_of],
        ).fetchone()
        return self._to_version(space, row) if row else None

    # --- Writes ---------------------------------------------------------------

    def _insert(self, cur, version: Scd2Version) -> Scd2Version:
        if version.space == USER:
            sk = cur.execute(
                """
                INSERT INTO dim_user (
                    canonical_user_id, attributes, valid_from, valid_to,
                    is_current, change_hash, source_batch_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                RETURNING user_sk
                """,
                [
                    version.natural_key,
                    json.dumps(version.values, sort_keys=True, default=str),
                    version.valid_from,
                    version.valid_to,
                    version.is_current,
                    version.change_hash,
                    version.source_batch_id,
                ],
            ).fetchone()[0]
        else:
            sk = cur.execute(
                """
                INSERT INTO user_identity_map (
                    key_type, natural_key, canonical_user_id, valid_from, valid_to,
                    is_current, change_hash, source_batch_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING identity_sk
                """,
                [
                    version.space,
                    version.natural_key,
                    version.values["canonical_user_id"],
                    version.valid_from,
                    version.valid_to,
                    version.is_current,
                    version.change_hash,
                    version.source_batch_id,
                ],
            ).fetchone()[0]
        return replace(version, surrogate_key=sk)

    def _close(self, cur, version: Scd2Version) -> None:
        table, sk_col = (
            ("dim_user", "user_sk")
            if version.space == USER
            else ("user_identity_map", "identity_sk")
        )
        cur.execute(
            f"""
            UPDATE {table}
            SET valid_to = ?, is_current = FALSE
            WHERE {sk_col} = ? AND is_current = TRUE
            """,
            [version.valid_to, version.surrogate_key],
        )

    def commit_key(
        self,
        space: str,
        natural_key: str,
        to_close: Sequence[Scd2Version],
        to_insert: Sequence[Scd2Version],
        cur=None,
    ) -> List[Scd2Version]:
        """
        Apply one key's planned changes atomically. The caller holds the key
        lock. The interval post-condition is checked before commit; a failure
        rolls the key back and raises IntervalIntegrityViolation.
        """
        if not to_close and not to_insert:
            return []
        cur = cur or self.cursor()
        cur.begin()
        try:
            for version in to_close:
                self._close(cur, version)
            inserted = [self._insert(cur, version) for version in to_insert]

            problems = check_intervals(self.history(space, natural_key, cur))
            if problems:
                raise IntervalIntegrityViolation(
                    f"{space}:{natural_key} failed interval check: {'; '.join(problems)}",
                    table="dim_user" if space == USER else "user_identity_map",
                    natural_key=natural_key,
                )
            cur.commit()
        except Exception:
            cur.rollback()
            self._logger.error(f"Rolled back SCD2 update for {space}:{natural_key}")
            raise
        return inserted

    def record_conflicts(
        self, conflicts: Sequence[LateArrivingConflictError], cur=None
    ) -> None:
        if not conflicts:
            return
        cur = cur or self.cursor()
        for c in conflicts:
            record = c.record or {}
            observed_at = record.get("observed_at")
            proposed = record.get("proposed_change_hash")
            # Re-running a batch must not duplicate an already-flagged conflict
            cur.execute(
                """
                INSERT INTO identity_merge_conflicts (
                    key_type, natural_key, observed_at, current_valid_from,
                    proposed_change_hash, source_batch_id, fact
                )
                SELECT ?, ?, ?, ?, ?, ?, ?
                WHERE NOT EXISTS (
                    SELECT 1 FROM identity_merge_conflicts
                    WHERE key_type = ?
                      AND natural_key = ?
                      AND observed_at IS NOT DISTINCT FROM ?
                      AND proposed_change_hash IS NOT DISTINCT FROM ?
                )
                """,
                [
                    c.key_type,
                    c.natural_key,
                    observed_at,
                    c.current_valid_from,
                    proposed,
                    record.get("source_batch_id"),
                    json.dumps(record, default=str),
                    c.key_type,
                    c.natural_key,
                    observed_at,
                    proposed,
                ],
            )
        self._logger.warning(
            f"Flagged {len(conflicts)} late-arriving identity conflicts"
        )
