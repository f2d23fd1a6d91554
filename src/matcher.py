"""Matching of left records against right records."""

import logging
from typing import Iterable, List, Optional, Sequence

from indexer import RecordIndex, build_index, find_duplicates
from models import (
    DuplicateGroup,
    MatchedPair,
    MatchMode,
    MissingColumnError,
    ReconConfig,
    ReconResult,
    ReconSummary,
    Record,
    Side,
    UnmatchedRecords,
)
from normalize import normalize_amount

logger = logging.getLogger(__name__)

KEY_MATCH_REASON = "amount match within key group"
KEY_MATCH_CONFIDENCE = 1.0
PROXIMITY_MATCH_REASON = "sum match"
PROXIMITY_MATCH_CONFIDENCE = 0.8


def validate_columns(
    records: Sequence[Record], columns: Iterable[Optional[str]], side: Side
) -> None:
    """
    Fail fast when a configured column is absent from every record of a side.

    An empty side has no schema to check against and is accepted.
    """
    if not records:
        return
    schema = set()
    for record in records:
        schema.update(record.cells.keys())
    for column in columns:
        if column and column not in schema:
            raise MissingColumnError(column, side)


def summarize(
    matched: Sequence[MatchedPair],
    left_unmatched: Sequence[Record],
    right_unmatched: Sequence[Record],
) -> ReconSummary:
    """Counts and match percentage; 0% when there is nothing to count."""
    total_matched = len(matched)
    total_unmatched = len(left_unmatched) + len(right_unmatched)
    denominator = total_matched + total_unmatched
    percentage = total_matched / denominator * 100 if denominator else 0.0
    return ReconSummary(
        total_matched=total_matched,
        total_unmatched=total_unmatched,
        match_percentage=percentage,
    )


# =========================================================================
# Key mode
# =========================================================================

def collect_key_pairs(
    left_index: RecordIndex,
    right_index: RecordIndex,
    amount_left: str,
    amount_right: str,
) -> List[MatchedPair]:
    """
    Pair records sharing a key and an equal normalized amount.

    Every right record is paired with every left record of equal amount
    under the same key; one-to-many groups stay visible as several pairs.
    """
    pairs: List[MatchedPair] = []
    for key, left_records in left_index.items():
        right_records = right_index.get(key)
        if not right_records:
            continue

        left_amounts = {normalize_amount(r.get(amount_left)) for r in left_records}
        for right in right_records:
            amount = normalize_amount(right.get(amount_right))
            if amount not in left_amounts:
                continue
            for left in left_records:
                if normalize_amount(left.get(amount_left)) == amount:
                    pairs.append(MatchedPair(
                        left=left,
                        right=right,
                        confidence=KEY_MATCH_CONFIDENCE,
                        reason=KEY_MATCH_REASON,
                    ))
    return pairs


def find_left_unmatched(
    left_index: RecordIndex,
    right_index: RecordIndex,
    amount_left: str,
    amount_right: str,
) -> List[Record]:
    """Left records with no right record of equal amount under their key."""
    unmatched: List[Record] = []
    for key, left_records in left_index.items():
        right_records = right_index.get(key)
        if not right_records:
            unmatched.extend(left_records)
            continue

        right_amounts = {normalize_amount(r.get(amount_right)) for r in right_records}
        unmatched.extend(
            r for r in left_records
            if normalize_amount(r.get(amount_left)) not in right_amounts
        )
    return unmatched


def find_right_unmatched(
    left_index: RecordIndex,
    right_index: RecordIndex,
    amount_left: str,
    amount_right: str,
) -> List[Record]:
    """Right records with no left record of equal amount under their key."""
    unmatched: List[Record] = []
    for key, right_records in right_index.items():
        left_records = left_index.get(key)
        if not left_records:
            unmatched.extend(right_records)
            continue

        left_amounts = {normalize_amount(r.get(amount_left)) for r in left_records}
        unmatched.extend(
            r for r in right_records
            if normalize_amount(r.get(amount_right)) not in left_amounts
        )
    return unmatched


def match_by_key(
    left: Sequence[Record], right: Sequence[Record], config: ReconConfig
) -> ReconResult:
    """Key-first, amount-confirming reconciliation."""
    if not config.has_keys:
        raise ValueError("Key columns for both sides are required in key mode")

    left_index = build_index(left, config.key_col_left, Side.LEFT)
    right_index = build_index(right, config.key_col_right, Side.RIGHT)
    amount_left, amount_right = config.amount_col_left, config.amount_col_right

    matched = collect_key_pairs(left_index, right_index, amount_left, amount_right)
    left_unmatched = find_left_unmatched(left_index, right_index, amount_left, amount_right)
    right_unmatched = find_right_unmatched(left_index, right_index, amount_left, amount_right)

    return ReconResult(
        config=config,
        summary=summarize(matched, left_unmatched, right_unmatched),
        matched=matched,
        unmatched=UnmatchedRecords(left=left_unmatched, right=right_unmatched),
        duplicates=find_duplicates(left_index, right_index),
    )


# =========================================================================
# Proximity mode
# =========================================================================

def match_by_proximity(
    left: Sequence[Record], right: Sequence[Record], config: ReconConfig
) -> ReconResult:
    """
    Match each left record to the first right record within tolerance.

    Keys are ignored for matching. A right record may be chosen by several
    left records; right records never chosen are unmatched. The difference
    must be strictly below ``config.amount_tolerance``.
    """
    tolerance = config.amount_tolerance
    right_amounts = [(r, normalize_amount(r.get(config.amount_col_right))) for r in right]

    matched: List[MatchedPair] = []
    left_unmatched: List[Record] = []
    used = set()
    for record in left:
        amount = normalize_amount(record.get(config.amount_col_left))
        for candidate, candidate_amount in right_amounts:
            difference = abs(amount - candidate_amount)
            if difference < tolerance:
                matched.append(MatchedPair(
                    left=record,
                    right=candidate,
                    confidence=PROXIMITY_MATCH_CONFIDENCE,
                    reason=PROXIMITY_MATCH_REASON,
                    amount_difference=difference,
                ))
                used.add(id(candidate))
                break
        else:
            left_unmatched.append(record)

    right_unmatched = [r for r in right if id(r) not in used]

    duplicates: List[DuplicateGroup] = []
    if config.has_keys:
        duplicates = find_duplicates(
            build_index(left, config.key_col_left, Side.LEFT),
            build_index(right, config.key_col_right, Side.RIGHT),
        )

    return ReconResult(
        config=config,
        summary=summarize(matched, left_unmatched, right_unmatched),
        matched=matched,
        unmatched=UnmatchedRecords(left=left_unmatched, right=right_unmatched),
        duplicates=duplicates,
    )


def reconcile(
    left: Sequence[Record], right: Sequence[Record], config: ReconConfig
) -> ReconResult:
    """
    Reconcile two record sets with the strategy selected in ``config``.

    Raises:
        ValueError: If an amount column is not configured
        MissingColumnError: If a configured column is absent from a side
    """
    if not (config.amount_col_left and config.amount_col_right):
        raise ValueError("Amount columns for both sides are required")
    validate_columns(left, (config.key_col_left, config.amount_col_left), Side.LEFT)
    validate_columns(right, (config.key_col_right, config.amount_col_right), Side.RIGHT)

    if config.mode is MatchMode.PROXIMITY:
        result = match_by_proximity(left, right, config)
    else:
        result = match_by_key(left, right, config)

    summary = result.summary
    logger.info(
        "Reconciled %d left / %d right records (%s mode): "
        "%d matched, %d unmatched, %d duplicate groups, %.1f%%",
        len(left), len(right), config.mode.value,
        summary.total_matched, summary.total_unmatched,
        len(result.duplicates), summary.match_percentage,
    )
    return result
