"""Flag reconciliation results that need a manual look."""

from typing import List, Sequence

from models import ArithmeticIssue, ReconResult, ReviewCase

UNMATCHED_RATIO_THRESHOLD = 0.3
AMOUNT_DIFFERENCE_THRESHOLD = 100.0
FORMULA_ERROR_RATIO = 0.2

_PRIORITY_ORDER = {"high": 3, "medium": 2, "low": 1}


def identify_review_cases(
    result: ReconResult, arithmetic_issues: Sequence[ArithmeticIssue] = ()
) -> List[ReviewCase]:
    """Return review cases, highest priority first."""
    cases: List[ReviewCase] = []
    summary = result.summary

    total = summary.total_matched + summary.total_unmatched
    if total:
        ratio = summary.total_unmatched / total
        if ratio > UNMATCHED_RATIO_THRESHOLD:
            cases.append(ReviewCase(
                case="high_unmatched_ratio",
                description=f"High share of unmatched records: {ratio * 100:.0f}%",
                priority="high",
            ))

    if any(p.amount_difference > AMOUNT_DIFFERENCE_THRESHOLD for p in result.matched):
        cases.append(ReviewCase(
            case="large_amount_differences",
            description="Matched pairs with large amount differences",
            priority="medium",
        ))

    if arithmetic_issues and len(arithmetic_issues) > summary.total_matched * FORMULA_ERROR_RATIO:
        cases.append(ReviewCase(
            case="formula_errors",
            description=f"{len(arithmetic_issues)} commission formula errors",
            priority="medium",
        ))

    # stable sort keeps detection order within a priority
    return sorted(cases, key=lambda c: _PRIORITY_ORDER[c.priority], reverse=True)
