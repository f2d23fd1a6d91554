"""Commission / net arithmetic checks over one side's records."""

import logging
from typing import List, Sequence

from matcher import validate_columns
from models import ArithmeticCheck, ArithmeticIssue, Record, Side
from normalize import format_amount, normalize_amount, round_money

logger = logging.getLogger(__name__)

# Agent commission as a share of the base amount
COMMISSION_RATE = 0.12
ARITHMETIC_TOLERANCE = 0.01


def check_arithmetic(
    records: Sequence[Record],
    base_column: str,
    commission_column: str,
    net_column: str,
    side: Side = Side.LEFT,
    commission_rate: float = COMMISSION_RATE,
    tolerance: float = ARITHMETIC_TOLERANCE,
) -> List[ArithmeticIssue]:
    """
    Verify ``commission == base * rate`` and ``net == base - commission``.

    Expected values and differences are rounded half-up to cents before
    comparing, so a deviation of exactly one cent is accepted. A row
    failing both checks is reported twice, commission first.

    Args:
        records: Rows to check
        base_column: Column holding the base amount
        commission_column: Column holding the charged commission
        net_column: Column holding the amount net of commission
        side: Side the records come from, used in column errors
        commission_rate: Commission share of the base amount
        tolerance: Largest accepted absolute deviation

    Returns:
        Issues in row order

    Raises:
        MissingColumnError: If one of the columns is absent
    """
    validate_columns(records, (base_column, commission_column, net_column), side)
    rate_label = format_amount(commission_rate * 100)

    issues: List[ArithmeticIssue] = []
    for record in records:
        base = normalize_amount(record.get(base_column))
        commission = normalize_amount(record.get(commission_column))
        net = normalize_amount(record.get(net_column))

        expected_commission = round_money(base * commission_rate)
        expected_net = round_money(base - expected_commission)

        if round_money(abs(commission - expected_commission)) > tolerance:
            issues.append(ArithmeticIssue(
                record=record,
                check=ArithmeticCheck.COMMISSION,
                reason=(
                    f"commission != {rate_label}% of base amount "
                    f"(got {format_amount(commission)}, "
                    f"expected {format_amount(expected_commission)})"
                ),
            ))
        if round_money(abs(net - expected_net)) > tolerance:
            issues.append(ArithmeticIssue(
                record=record,
                check=ArithmeticCheck.NET,
                reason=(
                    f"net != base amount - commission "
                    f"(got {format_amount(net)}, "
                    f"expected {format_amount(expected_net)})"
                ),
            ))

    logger.info("Arithmetic check over %d rows: %d issues", len(records), len(issues))
    return issues
