"""Tests for the near-match classifier."""

from datetime import date
from decimal import Decimal

from ledgerlink.models import NearMatchThresholds, NearMatchType
from ledgerlink.near_match import amount_diff_percent, is_near_match
from tests.factories import TestDataFactory

make = TestDataFactory.create_transaction


class TestDescriptionDiff:
    """Same amount and day, moderately similar text."""

    def test_coffee_shop_pair(self) -> None:
        """The two rows of one batch are flagged as the same event, whatever the detector says."""
        first = make("Coffee Shop", "-4.50", date(2024, 1, 5))
        second = make("Coffee Shop Ltd", "-4.50", date(2024, 1, 5))

        check = is_near_match(first, second)

        assert check.is_near_match
        assert check.match_type == NearMatchType.DESCRIPTION_DIFF
        assert check.difference == 73

    def test_below_minimum_similarity(self) -> None:
        first = make("Coffee", "-4.50", date(2024, 1, 5))
        second = make("Hardware Store", "-4.50", date(2024, 1, 5))

        assert not is_near_match(first, second).is_near_match

    def test_requires_same_day(self) -> None:
        first = make("Coffee Shop", "-4.50", date(2024, 1, 5))
        second = make("Coffee Shop Ltd", "-4.50", date(2024, 1, 6))

        assert not is_near_match(first, second).is_near_match


class TestAmountDiff:
    """Similar text, same day, amount within the percentage threshold."""

    def test_rounded_amount(self) -> None:
        first = make("Netflix Subscription", "-15.99", date(2024, 1, 15))
        second = make("Netflix Subscription", "-16.05", date(2024, 1, 15))

        check = is_near_match(first, second)

        assert check.match_type == NearMatchType.AMOUNT_DIFF
        assert check.difference == Decimal("0.06")

    def test_amount_beyond_threshold(self) -> None:
        first = make("Netflix Subscription", "-15.99", date(2024, 1, 15))
        second = make("Netflix Subscription", "-17.00", date(2024, 1, 15))

        assert not is_near_match(first, second).is_near_match

    def test_wins_over_date_diff(self) -> None:
        """A same-day pair with equal amounts also fits the date rule; the amount rule is checked first."""
        first = make("AMAZON MKTP US", "-23.10", date(2024, 3, 2))
        second = make("AMAZON MKTP US*1", "-23.10", date(2024, 3, 2))

        check = is_near_match(first, second)

        assert check.match_type == NearMatchType.AMOUNT_DIFF
        assert check.difference == Decimal("0")


class TestDateDiff:
    """Similar text, same amount, dates a few days apart."""

    def test_post_date_skew(self) -> None:
        first = make("Uber Trip", "-18.40", date(2024, 1, 10))
        second = make("Uber Trip", "-18.40", date(2024, 1, 12))

        check = is_near_match(first, second)

        assert check.match_type == NearMatchType.DATE_DIFF
        assert check.difference == 2

    def test_beyond_day_threshold(self) -> None:
        first = make("Uber Trip", "-18.40", date(2024, 1, 10))
        second = make("Uber Trip", "-18.40", date(2024, 1, 14))

        assert not is_near_match(first, second).is_near_match

    def test_custom_thresholds(self) -> None:
        first = make("Uber Trip", "-18.40", date(2024, 1, 10))
        second = make("Uber Trip", "-18.40", date(2024, 1, 14))

        check = is_near_match(first, second, NearMatchThresholds(date_diff_days=5))

        assert check.match_type == NearMatchType.DATE_DIFF
        assert check.difference == 4


class TestAmountDiffPercent:
    def test_relative_to_larger_amount(self) -> None:
        assert amount_diff_percent(Decimal("100"), Decimal("99")) == Decimal("1")
        assert amount_diff_percent(Decimal("-100"), Decimal("-99")) == Decimal("1")

    def test_both_zero(self) -> None:
        assert amount_diff_percent(Decimal("0"), Decimal("0")) == 0
