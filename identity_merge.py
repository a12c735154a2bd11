"""
SCD2 merge engine for identity resolution.

apply_batch() takes a batch of identity facts and maintains two SCD2 tables:

  - user_identity_map: login id / device id (independent key spaces) ->
    canonical_user_id, one validity interval per mapping version
  - dim_user: canonical_user_id -> tracked descriptive attributes

Per natural key the new state is computed as a pure fold over the key's
committed history and the batch's facts for that key (ascending
observed_at). The resulting plan is committed per key: one bad key never
blocks the others, and re-applying a batch is a no-op.
"""
import hashlib
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from functools import reduce
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

from errors import (
    IntervalIntegrityViolation,
    LateArrivingConflictError,
    MalformedInputError,
)
from identity_store import IdentityStore
from logging_utils import get_logger
from models import (
    DEVICE,
    LOGIN,
    USER,
    VERSION_TYPES,
    IdentityFact,
    MergeResult,
    Scd2Version,
    compute_change_hash,
)

DEFAULT_TRACKED_ATTRIBUTES = ("region", "customer_segment", "signup_channel")
DEFAULT_ANONYMOUS_PREFIX = "ANON-"
DEFAULT_MINTED_PREFIX = "USR-"


@dataclass(frozen=True)
class Candidate:
    """One proposed state for a natural key, derived from a fact."""

    observed_at: datetime
    values: Dict[str, Any]
    position: int
    source_batch_id: Optional[str]
    fact: IdentityFact
    # positions of earlier same-instant facts folded into this one
    merged_positions: Tuple[int, ...] = ()

    @property
    def positions(self) -> Tuple[int, ...]:
        return self.merged_positions + (self.position,)


class KeyPlan(NamedTuple):
    to_close: List[Scd2Version]
    to_insert: List[Scd2Version]
    unchanged: int
    conflicts: List[LateArrivingConflictError]
    rejected_positions: Tuple[int, ...] = ()


class _FoldState(NamedTuple):
    versions: Tuple[Scd2Version, ...]
    unchanged: int
    conflicts: Tuple[LateArrivingConflictError, ...]
    rejected_positions: Tuple[int, ...] = ()


def layer_values(base: Optional[Dict[str, Any]], update: Dict[str, Any]) -> Dict[str, Any]:
    """Non-null values in update win over base."""
    merged = dict(base or {})
    merged.update({k: v for k, v in update.items() if v is not None})
    for k in update:
        merged.setdefault(k, None)
    return merged


def mint_canonical_id(
    fact: IdentityFact,
    minted_prefix: str = DEFAULT_MINTED_PREFIX,
    anonymous_prefix: str = DEFAULT_ANONYMOUS_PREFIX,
) -> str:
    """Deterministic id for a never-seen person; device-only facts stay anonymous."""
    if fact.login_user_id:
        digest = hashlib.sha256(f"login:{fact.login_user_id}".encode()).hexdigest()
        return f"{minted_prefix}{digest[:16]}"
    return f"{anonymous_prefix}{fact.device_id}"


# --- Pure fold -----------------------------------------------------------------


def plan_key(
    space: str,
    natural_key: str,
    history: Sequence[Scd2Version],
    candidates: Sequence[Candidate],
) -> KeyPlan:
    """
    Fold a key's candidates (ascending observed_at) over its committed history.

    - no current version: open one at observed_at
    - hash differs from current: close current at observed_at, open a new one
    - hash equal: no-op
    - observed_at before current.valid_from: a replay of the version that
      already covers observed_at is a no-op, anything else is a late-arriving
      conflict and is not applied
    - observed_at equal to current.valid_from when an earlier version was
      already superseded at that instant: a replay of any version opened at
      that instant is a no-op, anything else is a conflict. Re-running an
      older batch never flips the current version back.
    """
    version_type = VERSION_TYPES[space]

    def reject(state: _FoldState, cand: Candidate, current: Scd2Version, proposed: str):
        record = cand.fact.to_record()
        record["proposed_change_hash"] = proposed
        if cand.observed_at < current.valid_from:
            message = (
                f"{space}:{natural_key} observed_at {cand.observed_at} precedes "
                f"current valid_from {current.valid_from}"
            )
        else:
            message = (
                f"{space}:{natural_key} observed_at {cand.observed_at} was already "
                f"superseded at that instant"
            )
        conflict = LateArrivingConflictError(
            message,
            record=record,
            key_type=space,
            natural_key=natural_key,
            current_valid_from=current.valid_from,
        )
        return state._replace(
            conflicts=state.conflicts + (conflict,),
            rejected_positions=state.rejected_positions + cand.positions,
        )

    def open_version(cand: Candidate, values: Dict[str, Any], change_hash: str):
        return version_type(
            space=space,
            natural_key=natural_key,
            values=values,
            valid_from=cand.observed_at,
            valid_to=None,
            is_current=True,
            change_hash=change_hash,
            source_batch_id=cand.source_batch_id,
        )

    def step(state: _FoldState, cand: Candidate) -> _FoldState:
        current_idx = next(
            (i for i in range(len(state.versions) - 1, -1, -1) if state.versions[i].is_current),
            None,
        )
        if current_idx is None:
            values = layer_values(None, cand.values)
            return state._replace(
                versions=state.versions
                + (open_version(cand, values, compute_change_hash(values)),)
            )

        current = state.versions[current_idx]
        if cand.observed_at < current.valid_from:
            covering = next(
                (v for v in state.versions if not v.is_empty and v.contains(cand.observed_at)),
                None,
            )
            proposed = compute_change_hash(
                layer_values(covering.values if covering else None, cand.values)
            )
            if covering is not None and proposed == covering.change_hash:
                return state._replace(unchanged=state.unchanged + 1)
            return reject(state, cand, current, proposed)

        values = layer_values(current.values, cand.values)
        change_hash = compute_change_hash(values)
        if change_hash == current.change_hash:
            return state._replace(unchanged=state.unchanged + 1)

        opened_here = [v for v in state.versions if v.valid_from == cand.observed_at]
        if len(opened_here) > 1:
            if any(
                compute_change_hash(layer_values(v.values, cand.values)) == v.change_hash
                for v in opened_here
            ):
                return state._replace(unchanged=state.unchanged + 1)
            return reject(state, cand, current, change_hash)

        # Same-instant supersede leaves the old version as an empty [t, t) interval
        closed = current.close(cand.observed_at)
        versions = (
            state.versions[:current_idx]
            + (closed,)
            + state.versions[current_idx + 1 :]
            + (open_version(cand, values, change_hash),)
        )
        return state._replace(versions=versions)

    ordered = sorted(candidates, key=lambda c: (c.observed_at, c.position))
    final = reduce(step, ordered, _FoldState(tuple(history), 0, ()))

    originals = {v.surrogate_key: v for v in history}
    to_close = [
        v
        for v in final.versions
        if v.surrogate_key is not None and v != originals[v.surrogate_key]
    ]
    to_insert = [v for v in final.versions if v.surrogate_key is None]
    return KeyPlan(
        to_close,
        to_insert,
        final.unchanged,
        list(final.conflicts),
        tuple(sorted(set(final.rejected_positions))),
    )


def collapse_same_instant(candidates: Iterable[Candidate]) -> List[Candidate]:
    """Facts for one key at the same observed_at merge into one, later position wins."""
    by_ts: Dict[datetime, Candidate] = {}
    for cand in sorted(candidates, key=lambda c: (c.observed_at, c.position)):
        prior = by_ts.get(cand.observed_at)
        if prior is None:
            by_ts[cand.observed_at] = cand
        else:
            by_ts[cand.observed_at] = Candidate(
                observed_at=cand.observed_at,
                values=layer_values(prior.values, cand.values),
                position=cand.position,
                source_batch_id=cand.source_batch_id,
                fact=cand.fact,
                merged_positions=prior.positions,
            )
    return [by_ts[ts] for ts in sorted(by_ts)]


# --- Canonical id resolution for incoming facts -----------------------------------


class _BatchOverlay:
    """Mappings assigned earlier in the same batch, consulted before the store."""

    def __init__(self, store: IdentityStore, cur):
        self._store = store
        self._cur = cur
        self._assigned: Dict[Tuple[str, str], List[Tuple[datetime, str]]] = defaultdict(list)

    def lookup(self, space: str, natural_key: str, as_of: datetime) -> Optional[str]:
        batch_hit = None
        for ts, canonical in self._assigned.get((space, natural_key), []):
            if ts <= as_of:
                batch_hit = (ts, canonical)
        stored = self._store.as_of(space, natural_key, as_of, self._cur)
        if stored is not None and (batch_hit is None or stored.valid_from > batch_hit[0]):
            return stored.values["canonical_user_id"]
        return batch_hit[1] if batch_hit else None

    def assign(self, space: str, natural_key: str, as_of: datetime, canonical: str):
        self._assigned[(space, natural_key)].append((as_of, canonical))


def resolve_fact_canonical_ids(
    store: IdentityStore,
    facts: Sequence[Tuple[int, IdentityFact]],
    minted_prefix: str = DEFAULT_MINTED_PREFIX,
    anonymous_prefix: str = DEFAULT_ANONYMOUS_PREFIX,
) -> Dict[int, str]:
    """
    Canonical id for each fact, in ascending (observed_at, position):
    hint -> login mapping -> minted from login -> device mapping -> anonymous.

    A login-bearing fact therefore re-points its device to the login's user;
    a device alone never decides which person a login belongs to.
    """
    overlay = _BatchOverlay(store, store.cursor())
    resolved: Dict[int, str] = {}
    for position, fact in sorted(facts, key=lambda pf: (pf[1].observed_at, pf[0])):
        canonical = fact.canonical_user_id_hint
        if canonical is None and fact.login_user_id:
            canonical = overlay.lookup(LOGIN, fact.login_user_id, fact.observed_at)
            if canonical is None:
                canonical = mint_canonical_id(fact, minted_prefix, anonymous_prefix)
        if canonical is None:
            canonical = overlay.lookup(DEVICE, fact.device_id, fact.observed_at)
        if canonical is None:
            canonical = mint_canonical_id(fact, minted_prefix, anonymous_prefix)
        for space, key in fact.identifiers():
            overlay.assign(space, key, fact.observed_at, canonical)
        resolved[position] = canonical
    return resolved


# --- Batch application ------------------------------------------------------------


def build_candidates(
    facts: Sequence[Tuple[int, IdentityFact]],
    canonical_ids: Dict[int, str],
    tracked_attributes: Sequence[str],
) -> Dict[Tuple[str, str], List[Candidate]]:
    grouped: Dict[Tuple[str, str], List[Candidate]] = defaultdict(list)
    for position, fact in facts:
        canonical = canonical_ids[position]
        for space, key in fact.identifiers():
            grouped[(space, key)].append(
                Candidate(
                    observed_at=fact.observed_at,
                    values={"canonical_user_id": canonical},
                    position=position,
                    source_batch_id=fact.source_batch_id,
                    fact=fact,
                )
            )
        grouped[(USER, canonical)].append(
            Candidate(
                observed_at=fact.observed_at,
                values={a: fact.attributes.get(a) for a in tracked_attributes},
                position=position,
                source_batch_id=fact.source_batch_id,
                fact=fact,
            )
        )
    return grouped


def _coerce_facts(
    facts: Iterable[Union[IdentityFact, Dict[str, Any]]], result: MergeResult
) -> List[Tuple[int, IdentityFact]]:
    good = []
    for position, raw in enumerate(facts):
        if isinstance(raw, IdentityFact):
            if not raw.identifiers():
                result.rejected.append(
                    MalformedInputError(
                        "missing_required:login_user_id|device_id", raw.to_record()
                    )
                )
                continue
            good.append((position, raw))
            continue
        try:
            good.append((position, IdentityFact.from_dict(raw)))
        except MalformedInputError as e:
            result.rejected.append(e)
    return good


def apply_batch(
    store: IdentityStore,
    facts: Iterable[Union[IdentityFact, Dict[str, Any]]],
    tracked_attributes: Sequence[str] = DEFAULT_TRACKED_ATTRIBUTES,
    minted_prefix: str = DEFAULT_MINTED_PREFIX,
    anonymous_prefix: str = DEFAULT_ANONYMOUS_PREFIX,
    logger: logging.Logger = None,
) -> MergeResult:
    """
    Apply a batch of identity facts to user_identity_map and dim_user.

    Malformed facts and late-arriving conflicts are returned in
    result.rejected; everything else is committed key by key. An interval
    integrity failure rolls back the offending key and aborts the batch
    (keys already committed stay); the partial result is attached to the
    raised IntervalIntegrityViolation as .partial_result.
    """
    logger = get_logger(logger, "identity_merge")
    result = MergeResult()

    good = _coerce_facts(facts, result)
    logger.info(
        f"Identity batch: facts_ok={len(good)}, malformed={len(result.rejected)}"
    )
    if not good:
        return result

    canonical_ids = resolve_fact_canonical_ids(
        store, good, minted_prefix=minted_prefix, anonymous_prefix=anonymous_prefix
    )
    grouped = build_candidates(good, canonical_ids, tracked_attributes)

    identifier_count = {position: len(fact.identifiers()) for position, fact in good}
    rejected_keys: Dict[int, int] = defaultdict(int)

    # Identity keys first so dim_user rows follow the mappings that reference them
    space_rank = {LOGIN: 0, DEVICE: 1, USER: 2}
    cur = store.cursor()
    for space, key in sorted(grouped, key=lambda sk: (space_rank[sk[0]], sk[1])):
        candidates = grouped[(space, key)]
        if space == USER:
            # A fact rejected for every identifier it carries is not applied at all
            candidates = [
                c for c in candidates if rejected_keys[c.position] < identifier_count[c.position]
            ]
            if not candidates:
                continue
        candidates = collapse_same_instant(candidates)
        with store.key_lock(space, key):
            history = store.history(space, key, cur)
            plan = plan_key(space, key, history, candidates)
            try:
                inserted = store.commit_key(
                    space, key, plan.to_close, plan.to_insert, cur
                )
            except IntervalIntegrityViolation as violation:
                logger.error(f"Aborting identity batch: {violation.message}")
                violation.partial_result = result
                raise

        if plan.to_close or plan.to_insert:
            result.committed_keys.append((space, key))
        result.closed.extend(plan.to_close)
        result.inserted.extend(inserted)
        result.unchanged += plan.unchanged
        for position in plan.rejected_positions:
            rejected_keys[position] += 1
        if plan.conflicts:
            store.record_conflicts(plan.conflicts, cur)
            result.rejected.extend(plan.conflicts)

    logger.info(f"Identity batch applied: {result.summary()}")
    return result
