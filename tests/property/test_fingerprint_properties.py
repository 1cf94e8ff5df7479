"""Property-based tests for fingerprinting and near-match classification.

Uses hypothesis to generate test cases and verify invariants.
"""

import string
from datetime import date, timedelta
from decimal import Decimal

from hypothesis import given, strategies as st
from hypothesis.strategies import composite

from ledgerlink.fingerprint import description_similarity, fingerprint
from ledgerlink.models import Transaction
from ledgerlink.near_match import is_near_match

descriptions = st.text(alphabet=string.ascii_letters + " ", min_size=1, max_size=40)
amounts = st.decimals(min_value=Decimal("-10000"), max_value=Decimal("10000"), places=2)
dates = st.dates(min_value=date(2020, 1, 1), max_value=date(2025, 12, 31))


@composite
def draw_transaction_pair(draw):
    """Generate two transactions that differ slightly in some fields.

    Returns:
        Tuple of (first, second)
    """
    description = draw(descriptions)
    amount = draw(amounts)
    txn_date = draw(dates)

    first = Transaction(description=description, amount=amount, date=txn_date)
    second = Transaction(
        description=description + draw(st.sampled_from(["", " ltd", "*1", " store 42"])),
        amount=amount + draw(st.sampled_from([Decimal("0"), Decimal("0.05"), Decimal("-1.00"), Decimal("25")])),
        date=txn_date + timedelta(days=draw(st.integers(min_value=-5, max_value=5))),
    )
    return first, second


class TestFingerprintProperties:
    """Property-based tests for fingerprint stability."""

    @given(descriptions, amounts, dates)
    def test_deterministic(self, description, amount, txn_date) -> None:
        assert fingerprint(description, amount, txn_date) == fingerprint(description, amount, txn_date)

    @given(descriptions, amounts, dates)
    def test_case_and_padding_ignored(self, description, amount, txn_date) -> None:
        assert fingerprint(description, amount, txn_date) == fingerprint(
            f"  {description.upper()}\t", amount, txn_date
        )

    @given(descriptions, amounts, dates)
    def test_amount_representation_ignored(self, description, amount, txn_date) -> None:
        expected = fingerprint(description, amount, txn_date)

        assert fingerprint(description, str(amount), txn_date) == expected
        assert fingerprint(description, float(amount), txn_date) == expected

    @given(descriptions, amounts, dates, dates)
    def test_date_matters(self, description, amount, first_date, second_date) -> None:
        same = fingerprint(description, amount, first_date) == fingerprint(description, amount, second_date)

        assert same == (first_date == second_date)


class TestSimilarityProperties:
    """Property-based tests for description similarity."""

    @given(descriptions, descriptions)
    def test_bounded_and_symmetric(self, first, second) -> None:
        score = description_similarity(first, second)

        assert 0 <= score <= 100
        assert score == description_similarity(second, first)

    @given(descriptions)
    def test_identical_is_100(self, description) -> None:
        assert description_similarity(description, description.upper()) == 100


class TestNearMatchProperties:
    """Property-based tests for the near-match classifier."""

    @given(draw_transaction_pair())
    def test_symmetric(self, pair) -> None:
        """Swapping the pair never changes the verdict or the rule that fired."""
        first, second = pair

        forward = is_near_match(first, second)
        backward = is_near_match(second, first)

        assert forward.is_near_match == backward.is_near_match
        assert forward.match_type == backward.match_type
        assert forward.difference == backward.difference

    @given(draw_transaction_pair())
    def test_far_apart_never_match(self, pair) -> None:
        first, second = pair
        moved = Transaction(description=second.description, amount=second.amount, date=first.date + timedelta(days=10))

        assert not is_near_match(first, moved).is_near_match
