"""
Point-in-time identity resolution against user_identity_map.

The canonical id returned is the one valid at as_of, not the latest one, so
rebuilding facts from staging always reproduces the same attribution.
"""
from datetime import datetime
from typing import Optional, Tuple

import pandas as pd

from errors import UnresolvedIdentityError
from identity_merge import DEFAULT_ANONYMOUS_PREFIX
from identity_store import IdentityStore
from models import DEVICE, LOGIN, clean_str, to_timestamp


def anonymous_id(
    login_user_id: Optional[str],
    device_id: Optional[str],
    anonymous_prefix: str = DEFAULT_ANONYMOUS_PREFIX,
) -> str:
    if device_id:
        return f"{anonymous_prefix}{device_id}"
    if login_user_id:
        return f"{anonymous_prefix}L-{login_user_id}"
    raise UnresolvedIdentityError(
        "no login_user_id or device_id to resolve",
        {"login_user_id": login_user_id, "device_id": device_id},
    )


def resolve(
    store: IdentityStore,
    login_user_id: Optional[str],
    device_id: Optional[str],
    as_of: datetime,
    anonymous_prefix: str = DEFAULT_ANONYMOUS_PREFIX,
) -> str:
    """
    Canonical user id valid at as_of: login mapping, then device mapping,
    then a deterministic anonymous id. Raises UnresolvedIdentityError when
    neither identifier is present.
    """
    login_user_id = clean_str(login_user_id)
    device_id = clean_str(device_id)
    if login_user_id is None and device_id is None:
        raise UnresolvedIdentityError(
            "no login_user_id or device_id to resolve", {"as_of": as_of}
        )
    as_of = to_timestamp(as_of, "as_of", {"login_user_id": login_user_id, "device_id": device_id})

    # Read-only transaction: both lookups see the same committed snapshot
    cur = store.cursor()
    cur.begin()
    try:
        for space, key in ((LOGIN, login_user_id), (DEVICE, device_id)):
            if key is None:
                continue
            version = store.as_of(space, key, as_of, cur)
            if version is not None:
                return version.values["canonical_user_id"]
    finally:
        cur.rollback()
    return anonymous_id(login_user_id, device_id, anonymous_prefix)


def resolve_frame(
    store: IdentityStore,
    df: pd.DataFrame,
    as_of_col: str,
    login_col: str = "login_user_id",
    device_col: str = "device_id",
    anonymous_prefix: str = DEFAULT_ANONYMOUS_PREFIX,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Resolve every row of df in one interval join.

    Returns (resolved, unresolved): resolved is df plus a canonical_user_id
    column; unresolved holds rows with no identifier or no as_of timestamp.
    """
    if df.empty:
        out = df.copy()
        out["canonical_user_id"] = pd.Series(dtype="object")
        return out, df.copy()

    work = df.reset_index(drop=True).copy()
    login = work[login_col].map(clean_str) if login_col in work else None
    device = work[device_col].map(clean_str) if device_col in work else None
    lookup_rows = pd.DataFrame(
        {
            "_row_id": range(len(work)),
            "_login": login if login is not None else None,
            "_device": device if device is not None else None,
            "_as_of": pd.to_datetime(work[as_of_col], utc=True).dt.tz_localize(None),
        }
    )
    lookup_rows["_login"] = lookup_rows["_login"].astype("object")
    lookup_rows["_device"] = lookup_rows["_device"].astype("object")

    unresolved_mask = (
        lookup_rows["_login"].isna() & lookup_rows["_device"].isna()
    ) | lookup_rows["_as_of"].isna()
    resolvable = lookup_rows[~unresolved_mask]

    resolved = work[~unresolved_mask.values].copy()
    unresolved = work[unresolved_mask.values].copy().reset_index(drop=True)
    if resolvable.empty:
        resolved["canonical_user_id"] = pd.Series(dtype="object")
        return resolved.reset_index(drop=True), unresolved

    cur = store.cursor()
    cur.register("_resolve_rows", resolvable)
    try:
        matched = cur.execute(
            """
            WITH p AS (
                SELECT
                    _row_id,
                    CAST(_login AS VARCHAR) AS _login,
                    CAST(_device AS VARCHAR) AS _device,
                    CAST(_as_of AS TIMESTAMP) AS _as_of
                FROM _resolve_rows
            )
            SELECT
                p._row_id,
                COALESCE(
                    l.canonical_user_id,
                    d.canonical_user_id,
                    CASE
                        WHEN p._device IS NOT NULL THEN ? || p._device
                        ELSE ? || 'L-' || p._login
                    END
                ) AS canonical_user_id
            FROM p
            LEFT JOIN user_identity_map l
              ON l.key_type = 'login'
             AND l.natural_key = p._login
             AND l.valid_from <= p._as_of
             AND (l.valid_to IS NULL OR p._as_of < l.valid_to)
            LEFT JOIN user_identity_map d
              ON d.key_type = 'device'
             AND d.natural_key = p._device
             AND d.valid_from <= p._as_of
             AND (d.valid_to IS NULL OR p._as_of < d.valid_to)
            """,
            [anonymous_prefix, anonymous_prefix],
        ).df()
    finally:
        cur.unregister("_resolve_rows")

    canonical = dict(zip(matched["_row_id"], matched["canonical_user_id"]))
    resolved["canonical_user_id"] = [canonical[i] for i in resolvable["_row_id"]]
    return resolved.reset_index(drop=True), unresolved
