"""Near-match classification.

Decides whether two transactions record the same real-world event with a
minor difference. Rules are checked in a fixed order and the first one that
applies wins, because a pair can loosely satisfy more than one:

1. Same amount and day, only moderately similar description -> description_diff
2. Similar description, same day, amount within the percent threshold -> amount_diff
3. Similar description, same amount, date within the day threshold -> date_diff
"""

from decimal import Decimal

from ledgerlink.fingerprint import description_similarity
from ledgerlink.models import NearMatchCheck, NearMatchThresholds, NearMatchType, Transaction

EXACT_AMOUNT_TOLERANCE = Decimal("0.01")
MIN_DESCRIPTION_SIMILARITY = 50


def amount_diff_percent(first: Decimal, second: Decimal) -> Decimal:
    """Absolute difference as a percentage of the larger absolute amount.

    Args:
        first: First amount
        second: Second amount

    Returns:
        Percentage (0 when both amounts are zero)
    """
    larger = max(abs(first), abs(second))
    if larger == 0:
        return Decimal(0)
    return abs(first - second) / larger * 100


def is_near_match(
    first: Transaction,
    second: Transaction,
    thresholds: NearMatchThresholds | None = None,
) -> NearMatchCheck:
    """Classify a pair of transactions.

    Args:
        first: Incoming transaction
        second: Existing transaction
        thresholds: Classifier thresholds (defaults: 1%, 3 days, 80)

    Returns:
        NearMatchCheck with the match type and the measured delta
    """
    thresholds = thresholds or NearMatchThresholds()

    similarity = description_similarity(first.description, second.description)
    date_diff = abs((first.date - second.date).days)
    amount_diff = abs(first.amount - second.amount)

    exact_amount = amount_diff < EXACT_AMOUNT_TOLERANCE
    same_day = date_diff < 1
    similar_description = similarity >= thresholds.description_similarity

    if exact_amount and same_day and not similar_description and similarity >= MIN_DESCRIPTION_SIMILARITY:
        return NearMatchCheck(True, NearMatchType.DESCRIPTION_DIFF, similarity)

    if (
        similar_description
        and same_day
        and amount_diff_percent(first.amount, second.amount) <= thresholds.amount_diff_percent
    ):
        return NearMatchCheck(True, NearMatchType.AMOUNT_DIFF, amount_diff)

    if similar_description and exact_amount and date_diff <= thresholds.date_diff_days:
        return NearMatchCheck(True, NearMatchType.DATE_DIFF, date_diff)

    return NearMatchCheck(is_near_match=False)


__all__ = ["amount_diff_percent", "is_near_match"]
