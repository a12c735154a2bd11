"""
Latest-wins deduplication.

Both renditions keep exactly one row per key: the one with the maximal order
value, ties going to the later input position. The result depends only on
the input rows, never on how a caller happened to sort them beforehand.
"""
from functools import reduce
from typing import Callable, Dict, Hashable, Iterable, List, Sequence, Tuple, TypeVar

import pandas as pd

R = TypeVar("R")


def dedupe(
    records: Iterable[R],
    key: Callable[[R], Hashable],
    order: Callable[[R], object],
) -> List[R]:
    """
    Return one record per distinct key(record), the one with the largest
    order(record). Ties are broken by input position (later wins).

    Output is sorted by (order, position) of the survivors so repeated runs
    over the same input return the same list.
    """

    def keep_best(
        best: Dict[Hashable, Tuple[object, int, R]], item: Tuple[int, R]
    ) -> Dict[Hashable, Tuple[object, int, R]]:
        position, record = item
        k = key(record)
        candidate = (order(record), position, record)
        current = best.get(k)
        if current is None or (candidate[0], candidate[1]) >= (current[0], current[1]):
            best[k] = candidate
        return best

    survivors = reduce(keep_best, enumerate(records), {})
    return [
        record
        for _, _, record in sorted(survivors.values(), key=lambda t: (t[0], t[1]))
    ]


def dedupe_frame(
    df: pd.DataFrame,
    key_cols: Sequence[str],
    order_col: str,
    tiebreak_col: str = None,
) -> pd.DataFrame:
    """
    DataFrame rendition: keep the max order_col row per key_cols.

    tiebreak_col (e.g. an ingestion sequence) decides ties; without it the
    original row position does. Rows with a null key are dropped.
    """
    if df.empty:
        return df.copy()

    key_cols = list(key_cols)
    work = df.dropna(subset=key_cols).copy()
    work["_input_pos"] = range(len(work))
    sort_cols = [order_col] + ([tiebreak_col] if tiebreak_col else []) + ["_input_pos"]
    work = work.sort_values(sort_cols, kind="mergesort", na_position="first")
    deduped = work.drop_duplicates(subset=key_cols, keep="last")
    return (
        deduped.sort_values(["_input_pos"], kind="mergesort")
        .drop(columns=["_input_pos"])
        .reset_index(drop=True)
    )


def dedupe_sessions(sessions):
    """Latest updated_at per session_id; ingestion order breaks ties."""
    return dedupe(
        sessions, key=lambda s: s.session_id, order=lambda s: (s.updated_at, s.ingest_seq)
    )


def dedupe_appointments(appointments):
    return dedupe(
        appointments,
        key=lambda a: a.appointment_id,
        order=lambda a: (a.updated_at, a.ingest_seq),
    )


def dedupe_payments(payments):
    """
    One event per (payment_id, status): a paid event and the refund of the
    same payment both survive, replays of either collapse. Amount breaks
    event_at ties, so replays in any order pick the same row.
    """
    return dedupe(
        payments,
        key=lambda p: (p.payment_id, p.status),
        order=lambda p: (p.event_at, p.status, p.amount),
    )
