"""
Order payment calculations for TaskLynk

Pricing model:
- Minimum client CPP = KSh 240 (KSh 270 for technical work)
- Minimum client cost per slide = KSh 150
- Writer CPP: 200, technical orders 270 (flat-rate path)
- Writer CPP from the freelancer's CPP level (tier-based path)
- Writer per slide: 100 on both paths
- Manager earnings: 10 on assign; on submit 10 + 5 * (pages - 1)
- Platform margin = client payment - (writer payout + manager payouts),
  floored at zero. The platform absorbs any shortfall; the client is never
  billed retroactively.

Every helper here is total: negative, missing or non-numeric inputs are
clamped to zero instead of raising, so they can back live price previews.
"""

import logging
from dataclasses import dataclass, asdict
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Optional, Tuple

import cpp_levels

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')
ZERO = Decimal('0.00')

# Flat-rate path classification (case-insensitive substring match).
# Kept separate from cpp_levels.TECHNICAL_WORK_TYPES on purpose.
TECHNICAL_KEYWORDS = [
    'excel',
    'spss',
    'stata',
    'r ',
    ' r',
    'python',
    'data analysis',
    'programming',
    'powerpoint',
    'presentation',
    'technical',
    'coding',
    'jasp',
    'jamovi',
]

WRITER_CPP = 200
WRITER_CPP_TECHNICAL = 270
WRITER_PER_SLIDE = 100

CLIENT_MIN_CPP = 240
CLIENT_MIN_CPP_TECHNICAL = 270
CLIENT_MIN_CPS = 150

MANAGER_ASSIGN_FEE = 10
MANAGER_SUBMIT_BASE_FEE = 10
MANAGER_SUBMIT_PER_EXTRA_PAGE = 5


def to_money(value) -> Decimal:
    """Coerce a number to a Decimal rounded half-up at the cent"""
    if value is None:
        return ZERO
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return ZERO
    if not amount.is_finite():
        return ZERO
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def non_negative_money(value) -> Decimal:
    return max(ZERO, to_money(value))


def non_negative_count(value) -> int:
    """Page and slide counts: None, garbage and negatives all become 0"""
    try:
        count = int(value or 0)
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, count)


def is_technical_work_type(work_type: Optional[str]) -> bool:
    if not work_type:
        return False
    label = work_type.lower()
    return any(keyword in label for keyword in TECHNICAL_KEYWORDS)


def writer_cpp(work_type: Optional[str]) -> int:
    """Flat-rate writer CPP based on work type"""
    return WRITER_CPP_TECHNICAL if is_technical_work_type(work_type) else WRITER_CPP


def writer_per_slide() -> int:
    return WRITER_PER_SLIDE


def calculate_writer_payout(pages, work_type: Optional[str]) -> Decimal:
    """Flat-rate writer payout for pages only (legacy helper)"""
    return to_money(non_negative_count(pages) * writer_cpp(work_type))


def calculate_writer_earnings(pages, slides, work_type: Optional[str]) -> Decimal:
    """Flat-rate writer payout including pages and slides"""
    return calculate_writer_payout(pages, work_type) + to_money(non_negative_count(slides) * writer_per_slide())


def calculate_tier_writer_earnings(pages, slides, work_type: Optional[str], completed_orders) -> Decimal:
    """Tier-based writer payout: the page rate comes from the CPP level"""
    rate = cpp_levels.get_current_cpp(completed_orders, cpp_levels.is_work_type_technical(work_type))
    amount = non_negative_count(pages) * rate + non_negative_count(slides) * writer_per_slide()
    return to_money(amount)


# Client minimum price validation

def client_min_cpp(work_type: Optional[str] = None) -> int:
    return CLIENT_MIN_CPP_TECHNICAL if is_technical_work_type(work_type) else CLIENT_MIN_CPP


def client_min_cps() -> int:
    return CLIENT_MIN_CPS


def min_required_client_amount(pages, work_type: Optional[str] = None) -> Decimal:
    return to_money(non_negative_count(pages) * client_min_cpp(work_type))


def min_required_client_slide_amount(slides) -> Decimal:
    return to_money(non_negative_count(slides) * client_min_cps())


def minimum_client_price(pages, slides, work_type: Optional[str] = None) -> Decimal:
    return min_required_client_amount(pages, work_type) + min_required_client_slide_amount(slides)


def validate_client_price(amount, pages, slides, work_type: Optional[str] = None) -> Tuple[bool, str]:
    """Check a client's price against the platform minimum (pages + slides)"""
    minimum = minimum_client_price(pages, slides, work_type)
    offered = non_negative_money(amount)
    if offered < minimum:
        return False, (
            f"Price KSh {offered:.2f} is below the minimum of KSh {minimum:.2f} "
            f"({client_min_cpp(work_type)} per page, {client_min_cps()} per slide)"
        )
    return True, "Price is valid"


# Manager earnings

def manager_assign_fee() -> int:
    return MANAGER_ASSIGN_FEE


def manager_submit_fee(pages) -> int:
    return MANAGER_SUBMIT_BASE_FEE + MANAGER_SUBMIT_PER_EXTRA_PAGE * max(non_negative_count(pages) - 1, 0)


def calculate_manager_earnings(assigned: bool, submitted: bool, pages) -> Decimal:
    """Assignment fee plus submission fee; either is 0 if the event never happened"""
    total = 0
    if assigned:
        total += manager_assign_fee()
    if submitted:
        total += manager_submit_fee(pages)
    return to_money(total)


def calculate_platform_margin(client_amount, freelancer_amount, manager_amount) -> Decimal:
    """Platform keeps what is left, never less than zero"""
    raw = non_negative_money(client_amount) - (non_negative_money(freelancer_amount)
                                               + non_negative_money(manager_amount))
    return max(ZERO, raw)


@dataclass(frozen=True)
class SettlementSplit:
    """Four-way split of a client payment"""
    client_amount: Decimal
    freelancer_amount: Decimal
    manager_amount: Decimal
    platform_margin: Decimal

    @property
    def shortfall(self) -> Decimal:
        """Amount the platform absorbed because payouts exceeded the payment"""
        return max(ZERO, self.freelancer_amount + self.manager_amount - self.client_amount)

    @property
    def is_valid(self) -> bool:
        return self.shortfall == ZERO

    def to_dict(self) -> Dict:
        return {
            'client_amount': float(self.client_amount),
            'freelancer_amount': float(self.freelancer_amount),
            'manager_amount': float(self.manager_amount),
            'platform_margin': float(self.platform_margin),
            'shortfall': float(self.shortfall),
            'is_valid': self.is_valid,
        }


def calculate_settlement_split(client_amount, freelancer_amount, manager_amount) -> SettlementSplit:
    split = SettlementSplit(
        client_amount=non_negative_money(client_amount),
        freelancer_amount=non_negative_money(freelancer_amount),
        manager_amount=non_negative_money(manager_amount),
        platform_margin=calculate_platform_margin(client_amount, freelancer_amount, manager_amount),
    )
    if not split.is_valid:
        logger.warning(
            f"Pricing anomaly: payouts {split.freelancer_amount + split.manager_amount} exceed "
            f"client amount {split.client_amount}; platform absorbs {split.shortfall}"
        )
    return split


# Pricing strategies. Both paths are live; call sites choose one explicitly.

@dataclass(frozen=True)
class WriterQuote:
    freelancer_amount: Decimal
    rate: int
    is_technical: bool
    tier: Optional[int] = None
    level_name: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['freelancer_amount'] = float(self.freelancer_amount)
        return data


class PricingStrategy:
    """Computes a freelancer's payout for an order"""

    name = None

    def quote(self, pages, slides, work_type: Optional[str], completed_orders=None) -> WriterQuote:
        raise NotImplementedError

    def split(self, client_amount, pages, slides, work_type: Optional[str],
              assigned: bool, submitted: bool, completed_orders=None) -> SettlementSplit:
        writer = self.quote(pages, slides, work_type, completed_orders)
        manager = calculate_manager_earnings(assigned, submitted, pages)
        return calculate_settlement_split(client_amount, writer.freelancer_amount, manager)


class FlatRateStrategy(PricingStrategy):
    """Legacy flat CPP: 200 per page, 270 for technical work"""

    name = 'flat'

    def quote(self, pages, slides, work_type, completed_orders=None):
        return WriterQuote(
            freelancer_amount=calculate_writer_earnings(pages, slides, work_type),
            rate=writer_cpp(work_type),
            is_technical=is_technical_work_type(work_type),
        )


class TierBasedStrategy(PricingStrategy):
    """CPP from the freelancer's level, technical premium of 20"""

    name = 'tier'

    def quote(self, pages, slides, work_type, completed_orders=None):
        is_technical = cpp_levels.is_work_type_technical(work_type)
        tier = cpp_levels.get_tier(completed_orders, is_technical)
        return WriterQuote(
            freelancer_amount=calculate_tier_writer_earnings(pages, slides, work_type, completed_orders),
            rate=tier['rate'],
            is_technical=is_technical,
            tier=tier['tier'],
            level_name=tier['level_name'],
        )


PRICING_STRATEGIES = {
    FlatRateStrategy.name: FlatRateStrategy,
    TierBasedStrategy.name: TierBasedStrategy,
}


def get_pricing_strategy(name: Optional[str] = None) -> PricingStrategy:
    """Resolve a strategy by name; defaults to the flat-rate path"""
    key = (name or FlatRateStrategy.name).strip().lower()
    if key not in PRICING_STRATEGIES:
        raise ValueError(f"Unknown pricing strategy: {name}. Must be one of: {', '.join(PRICING_STRATEGIES)}")
    return PRICING_STRATEGIES[key]()
