"""
CPP Level System for TaskLynk
=============================

Freelancers progress through five CPP (cost per page) levels as their
lifetime completed-order count grows. Each level pays a fixed per-page rate
for non-technical work and a technical rate that is always 20 above it.

Level selection:
- The correct level is the HIGHEST level whose threshold is <= the count
- Master is terminal: once reached, the rate never changes again
- Counts are clamped to 0, so every function here is total and safe to call
  from preview screens where the count may not be known yet
"""

from typing import Dict, List, Optional

TECHNICAL_PREMIUM = 20

# Ordered lowest to highest. Thresholds must stay strictly increasing.
CPP_LEVELS = [
    {
        'level': 1,
        'level_name': 'Starter',
        'description': 'Beginning your journey with us',
        'completed_orders_required': 0,
        'cpp_non_technical': 150,
        'cpp_technical': 150 + TECHNICAL_PREMIUM,
        'progress_bar_color': '#10b981',
    },
    {
        'level': 2,
        'level_name': 'Rising',
        'description': 'Showing consistent quality work',
        'completed_orders_required': 3,
        'cpp_non_technical': 160,
        'cpp_technical': 160 + TECHNICAL_PREMIUM,
        'progress_bar_color': '#06b6d4',
    },
    {
        'level': 3,
        'level_name': 'Established',
        'description': 'Building a strong reputation',
        'completed_orders_required': 8,
        'cpp_non_technical': 170,
        'cpp_technical': 170 + TECHNICAL_PREMIUM,
        'progress_bar_color': '#3b82f6',
    },
    {
        'level': 4,
        'level_name': 'Expert',
        'description': 'Trusted by many clients',
        'completed_orders_required': 23,
        'cpp_non_technical': 180,
        'cpp_technical': 180 + TECHNICAL_PREMIUM,
        'progress_bar_color': '#8b5cf6',
    },
    {
        'level': 5,
        'level_name': 'Master',
        'description': 'Excellence in every project',
        'completed_orders_required': 50,
        'cpp_non_technical': 200,
        'cpp_technical': 200 + TECHNICAL_PREMIUM,
        'progress_bar_color': '#fbbf24',
    },
]

# Work-type slugs the CPP level system treats as technical. This list is
# maintained separately from payment_calculations.TECHNICAL_KEYWORDS and the
# two must not be merged: payouts already issued depend on each of them.
TECHNICAL_WORK_TYPES = [
    'data-analysis',
    'programming',
    'web-development',
    'software-design',
    'technical-writing',
    'system-design',
]


def _clamp_count(completed_orders) -> int:
    try:
        count = int(completed_orders or 0)
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, count)


def get_cpp_level(completed_orders) -> Dict:
    """Return the highest level whose threshold is <= completed_orders"""
    count = _clamp_count(completed_orders)
    for level in reversed(CPP_LEVELS):
        if level['completed_orders_required'] <= count:
            return level
    return CPP_LEVELS[0]


def get_level_rate(level: Dict, is_technical: bool) -> int:
    return level['cpp_technical'] if is_technical else level['cpp_non_technical']


def get_current_cpp(completed_orders, is_technical: bool) -> int:
    """Per-page rate for a freelancer with this many completed orders"""
    return get_level_rate(get_cpp_level(completed_orders), is_technical)


def get_tier(completed_orders, is_technical: bool) -> Dict:
    """
    Map a completed-order count to its tier and applicable rate.

    Returns:
        dict with 'tier' (level number), 'level_name' and 'rate'
    """
    level = get_cpp_level(completed_orders)
    return {
        'tier': level['level'],
        'level_name': level['level_name'],
        'rate': get_level_rate(level, is_technical),
    }


def get_cpp_level_details(level: int) -> Optional[Dict]:
    for item in CPP_LEVELS:
        if item['level'] == level:
            return item
    return None


def get_all_cpp_levels() -> List[Dict]:
    return list(CPP_LEVELS)


def get_next_cpp_level(current: Dict) -> Optional[Dict]:
    """Level after `current`, or None at the terminal (Master) level"""
    return get_cpp_level_details(current['level'] + 1)


def calculate_cpp_progress(completed_orders, is_technical: bool = False) -> Dict:
    """
    Compute a freelancer's progress towards the next CPP level.

    progress_percentage is always within [0, 100]. At the Master level
    progress is reported as 100% with nothing remaining.

    Args:
        completed_orders: Lifetime completed-order count (clamped to >= 0)
        is_technical: Whether the freelancer's work type is specialized

    Returns:
        dict describing the current level, progress and next-level rate
    """
    count = _clamp_count(completed_orders)
    current = get_cpp_level(count)
    next_level = get_next_cpp_level(current)
    orders_in_current_level = count - current['completed_orders_required']
    current_cpp = get_level_rate(current, is_technical)

    if next_level is None:
        return {
            'current_level': current['level'],
            'level_name': current['level_name'],
            'total_completed_orders': count,
            'orders_in_current_level': orders_in_current_level,
            'progress_percentage': 100.0,
            'next_level_orders_required': 0,
            'current_cpp': current_cpp,
            'next_level_cpp': current_cpp,
            'is_work_type_specialized': bool(is_technical),
        }

    orders_needed = next_level['completed_orders_required'] - current['completed_orders_required']
    progress = min(100.0, orders_in_current_level / orders_needed * 100)

    return {
        'current_level': current['level'],
        'level_name': current['level_name'],
        'total_completed_orders': count,
        'orders_in_current_level': orders_in_current_level,
        'progress_percentage': round(max(0.0, progress), 2),
        'next_level_orders_required': max(0, orders_needed - orders_in_current_level),
        'current_cpp': current_cpp,
        'next_level_cpp': get_level_rate(next_level, is_technical),
        'is_work_type_specialized': bool(is_technical),
    }


def get_expected_cpp(target_order_count, is_technical: bool) -> Dict:
    """Level and rate a freelancer would earn at target_order_count"""
    level = get_cpp_level(target_order_count)
    return {'level': level, 'cpp': get_level_rate(level, is_technical)}


def get_cpp_status_message(status: Dict) -> str:
    """Human-readable progress line for the freelancer dashboard"""
    if status['next_level_orders_required'] == 0:
        return f"You've reached Master tier! Enjoy CPP {status['current_cpp']} for all your work."

    done = status['orders_in_current_level']
    total = done + status['next_level_orders_required']
    return (
        f"{done}/{total} orders completed in {status['level_name']} tier. "
        f"{status['next_level_orders_required']} more to advance!"
    )


def is_work_type_technical(work_type: Optional[str]) -> bool:
    """Exact, case-insensitive match against the CPP level system's technical slugs"""
    if not work_type:
        return False
    return work_type.lower() in TECHNICAL_WORK_TYPES
