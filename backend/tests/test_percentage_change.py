"""
Tests for flow/percentage_change.py

Sentinel values drive the dashboard badges, so each branch is pinned.
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from flow.percentage_change import (
    calculate_percentage_change,
    format_percentage_change,
    get_trend_info,
)


class TestCalculatePercentageChange:

    def test_regular_increase(self):
        c = calculate_percentage_change(15, 10)
        assert c.change_percent == 50.0
        assert c.has_current_data and c.has_previous_data
        assert not c.is_no_data

    def test_regular_decrease_rounds_to_one_decimal(self):
        assert calculate_percentage_change(2, 3).change_percent == -33.3

    def test_small_change_rounds_half_up(self):
        # 1/64 = 1.5625% → 1.6
        assert calculate_percentage_change(65, 64).change_percent == 1.6

    def test_new_data_is_plus_hundred(self):
        c = calculate_percentage_change(5, 0)
        assert c.change_percent == 100.0
        assert c.has_current_data and not c.has_previous_data

    def test_dropped_to_zero_is_minus_hundred(self):
        c = calculate_percentage_change(0, 5)
        assert c.change_percent == -100.0
        assert not c.has_current_data and c.has_previous_data

    def test_zero_to_zero_is_no_data(self):
        c = calculate_percentage_change(0, 0)
        assert c.change_percent == 0
        assert c.is_no_data is True
        assert c.is_zero_to_zero is True

    def test_none_counts_as_zero(self):
        c = calculate_percentage_change(None, None)
        assert c.is_no_data is True
        assert c.change_percent == 0

    def test_to_dict_is_camel_case(self):
        d = calculate_percentage_change(15, 10).to_dict()
        assert d == {
            "changePercent": 50.0,
            "hasCurrentData": True,
            "hasPreviousData": True,
            "isNoData": False,
            "isZeroToZero": False,
        }


class TestTrendInfo:

    def test_small_changes_are_stable(self):
        assert get_trend_info(4.9).direction == "stable"
        assert get_trend_info(-4.9, is_time_metric=True).color == "gray"

    def test_time_metric_decrease_is_good(self):
        t = get_trend_info(-20, is_time_metric=True)
        assert (t.direction, t.color, t.label) == ("down", "green", "Faster")

    def test_time_metric_increase_is_bad(self):
        t = get_trend_info(20, is_time_metric=True)
        assert (t.direction, t.color, t.label) == ("up", "red", "Slower")

    def test_value_metric_increase_is_good(self):
        t = get_trend_info(20)
        assert (t.direction, t.color, t.label) == ("up", "green", "Better")

    def test_value_metric_decrease_is_bad(self):
        assert get_trend_info(-20).label == "Worse"


class TestFormat:

    @pytest.mark.parametrize("value,expected", [
        (12.34, "+12.3%"),
        (-5, "-5.0%"),
        (0, "0.0%"),
    ])
    def test_format(self, value, expected):
        assert format_percentage_change(value) == expected
