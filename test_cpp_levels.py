#!/usr/bin/env python3
"""Tests for the CPP level (tier) engine"""

import pytest

import cpp_levels
from cpp_levels import (
    calculate_cpp_progress,
    get_cpp_level,
    get_cpp_status_message,
    get_current_cpp,
    get_expected_cpp,
    get_tier,
    is_work_type_technical,
)


@pytest.mark.parametrize('count, level, name, rate, technical_rate', [
    (0, 1, 'Starter', 150, 170),
    (2, 1, 'Starter', 150, 170),
    (3, 2, 'Rising', 160, 180),
    (7, 2, 'Rising', 160, 180),
    (8, 3, 'Established', 170, 190),
    (10, 3, 'Established', 170, 190),
    (23, 4, 'Expert', 180, 200),
    (49, 4, 'Expert', 180, 200),
    (50, 5, 'Master', 200, 220),
    (1000, 5, 'Master', 200, 220),
])
def test_tier_boundaries(count, level, name, rate, technical_rate):
    assert get_tier(count, False) == {'tier': level, 'level_name': name, 'rate': rate}
    assert get_tier(count, True)['rate'] == technical_rate


def test_tier_rate_never_decreases():
    for is_technical in (False, True):
        previous = 0
        for count in range(0, 120):
            rate = get_current_cpp(count, is_technical)
            assert rate >= previous, f"rate dropped at {count} orders"
            previous = rate


@pytest.mark.parametrize('bad', [None, -5, 'abc', float('inf')])
def test_invalid_counts_are_starter(bad):
    assert get_cpp_level(bad)['level_name'] == 'Starter'


def test_technical_premium_is_twenty():
    for level in cpp_levels.get_all_cpp_levels():
        assert level['cpp_technical'] - level['cpp_non_technical'] == 20


def test_progress_mid_level():
    """5 orders is 2 of the 5 needed to go from Rising to Established"""
    status = calculate_cpp_progress(5)

    assert status['current_level'] == 2
    assert status['orders_in_current_level'] == 2
    assert status['next_level_orders_required'] == 3
    assert status['progress_percentage'] == 40.0
    assert status['current_cpp'] == 160
    assert status['next_level_cpp'] == 170


def test_progress_at_master():
    status = calculate_cpp_progress(75, is_technical=True)

    assert status['level_name'] == 'Master'
    assert status['progress_percentage'] == 100.0
    assert status['next_level_orders_required'] == 0
    assert status['current_cpp'] == status['next_level_cpp'] == 220
    assert 'Master' in get_cpp_status_message(status)


def test_progress_percentage_bounds():
    for count in range(0, 80):
        status = calculate_cpp_progress(count)
        assert 0.0 <= status['progress_percentage'] <= 100.0


def test_status_message_counts_orders():
    message = get_cpp_status_message(calculate_cpp_progress(9))
    assert message == '1/15 orders completed in Established tier. 14 more to advance!'


def test_expected_cpp():
    expected = get_expected_cpp(23, True)
    assert expected['level']['level_name'] == 'Expert'
    assert expected['cpp'] == 200


@pytest.mark.parametrize('work_type, expected', [
    ('data-analysis', True),
    ('Data-Analysis', True),
    ('Data Analysis', False),
    ('web_development', False),
    (' programming', False),
    ('Programming', True),
    ('Essay', False),
    ('SPSS Analysis', False),
    ('', False),
    (None, False),
])
def test_is_work_type_technical(work_type, expected):
    assert is_work_type_technical(work_type) is expected
