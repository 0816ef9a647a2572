from datetime import datetime
from decimal import Decimal

import pytest

from app.modules.payouts.earnings_calculator import (
    EarningsBreakdown, calculate_delivery_earnings, courier_credit, is_peak_hour,
    platform_commission, to_money
)

OFF_PEAK = datetime(2026, 10, 19, 16, 0)
PEAK = datetime(2026, 10, 19, 20, 15)


def test_short_off_peak_delivery_is_base_fee_only():
    earnings = calculate_delivery_earnings(3.50, 2.0, 5, 0, OFF_PEAK)

    assert earnings.distance_bonus == Decimal("0.00")
    assert earnings.wait_time_bonus == Decimal("0.00")
    assert earnings.peak_hour_bonus == Decimal("0.00")
    assert earnings.total == Decimal("3.50")


def test_long_peak_delivery_with_wait_and_tip():
    earnings = calculate_delivery_earnings(4.00, 6.0, 15, 3.00, PEAK)

    assert earnings.distance_bonus == Decimal("1.50")
    assert earnings.wait_time_bonus == Decimal("0.75")
    assert earnings.peak_hour_bonus == Decimal("1.10")
    assert earnings.tip == Decimal("3.00")
    assert earnings.total == Decimal("10.35")


@pytest.mark.parametrize("hour,expected", [
    (10, False), (11, True), (13, True), (14, False),
    (17, False), (18, True), (21, True), (22, False),
])
def test_peak_hour_windows(hour, expected):
    assert is_peak_hour(datetime(2026, 10, 19, hour, 30)) is expected


@pytest.mark.parametrize("distance,wait,when", [
    (0.0, 0, OFF_PEAK), (3.3, 11.5, PEAK), (12.75, 42, OFF_PEAK), (7.1, 9.9, PEAK),
])
def test_total_is_sum_of_components(distance, wait, when):
    earnings = calculate_delivery_earnings(3.00, distance, wait, 1.25, when)
    components = (
        earnings.base_fee + earnings.distance_bonus + earnings.wait_time_bonus
        + earnings.peak_hour_bonus + earnings.tip
    )
    assert earnings.total == components


def test_courier_credit_keeps_full_tip():
    earnings = calculate_delivery_earnings(4.00, 6.0, 15, 3.00, PEAK)
    # 80% de 7.35 = 5.88 + propina 3.00
    assert courier_credit(earnings, 0.80) == Decimal("8.88")
    assert platform_commission(earnings, 0.80) == Decimal("1.47")


def test_with_tip_recomputes_total():
    earnings = calculate_delivery_earnings(3.00, 4.0, 0, 0, OFF_PEAK)
    tipped = earnings.with_tip(2)

    assert tipped.tip == Decimal("2.00")
    assert tipped.total == Decimal("5.50")
    assert tipped.total_without_tip == earnings.total


def test_breakdown_survives_json_round_trip():
    earnings = calculate_delivery_earnings(4.00, 6.0, 15, 3.00, PEAK)
    assert EarningsBreakdown.from_dict(earnings.to_dict()) == earnings


def test_to_money_rounds_half_up():
    assert to_money(1.005) == Decimal("1.01")
    assert to_money("2.344") == Decimal("2.34")
