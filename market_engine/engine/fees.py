import math
from decimal import Decimal
from typing import Dict, Tuple
from typing_extensions import Protocol

from market_engine.utils import money_amount
from .state import ContractKind, FeeSplit
from .params import EngineParams

# (platform, creator, liquidity) fractions per contract kind
FEE_SPLITS: Dict[str, Tuple[Decimal, Decimal, Decimal]] = {
    'BINARY': (Decimal('0.5'), Decimal('0.5'), Decimal('0')),
    'PSEUDO_NUMERIC': (Decimal('0.5'), Decimal('0.5'), Decimal('0')),
    'STONK': (Decimal('1'), Decimal('0'), Decimal('0')),
    'MULTIPLE_CHOICE': (Decimal('0.4'), Decimal('0.4'), Decimal('0.2')),
}


class FeePolicy(Protocol):
    def rate(self, prob_before: float, prob_after: float) -> float:
        """Fee charged per unit of currency entering the pool."""
        ...


def _logit(p: float) -> float:
    p = min(max(p, 1e-12), 1 - 1e-12)
    return math.log(p / (1 - p))


class ProbabilityMoveFeePolicy:
    """
    Taker fee rate that grows with the log-odds distance a fill moves the
    probability, so the same absolute move costs more near 0 or 1.
    """

    def __init__(self, base_rate: float, move_rate: float, max_rate: float):
        if base_rate < 0 or move_rate < 0 or max_rate < base_rate:
            raise ValueError("Fee rates must satisfy 0 <= base_rate <= max_rate and move_rate >= 0")
        self.base_rate = base_rate
        self.move_rate = move_rate
        self.max_rate = max_rate

    def rate(self, prob_before: float, prob_after: float) -> float:
        move = abs(_logit(prob_after) - _logit(prob_before))
        return min(self.max_rate, self.base_rate + self.move_rate * move)


class FlatFeePolicy:
    def __init__(self, rate: float = 0.0):
        if rate < 0:
            raise ValueError("rate must be non-negative")
        self._rate = rate

    def rate(self, prob_before: float, prob_after: float) -> float:
        return self._rate


def get_fee_policy(params: EngineParams) -> ProbabilityMoveFeePolicy:
    return ProbabilityMoveFeePolicy(params['fee_base_rate'], params['fee_move_rate'], params['fee_max_rate'])


def split_fees(fee_total: float, contract_type: ContractKind) -> FeeSplit:
    """
    Deterministic platform/creator/liquidity split. Platform and creator parts
    are quantized; the liquidity part takes the remainder so the three always
    add back to fee_total.
    """
    if fee_total < 0:
        raise ValueError(f"Negative fee: {fee_total}")
    platform_frac, creator_frac, liquidity_frac = FEE_SPLITS[contract_type]
    total = Decimal(str(fee_total))
    platform_fee = min(money_amount(total * platform_frac), total)
    creator_fee = min(money_amount(total * creator_frac), total - platform_fee)
    liquidity_fee = total - platform_fee - creator_fee
    if liquidity_frac == 0:
        # Rounding residue goes to the platform when pools take no share
        platform_fee += liquidity_fee
        liquidity_fee = Decimal('0')
    return {
        'platform_fee': float(platform_fee),
        'creator_fee': float(creator_fee),
        'liquidity_fee': float(liquidity_fee),
    }


def no_fees() -> FeeSplit:
    return {'platform_fee': 0.0, 'creator_fee': 0.0, 'liquidity_fee': 0.0}


def add_fees(a: FeeSplit, b: FeeSplit) -> FeeSplit:
    return {key: a[key] + b[key] for key in ('platform_fee', 'creator_fee', 'liquidity_fee')}


def scale_fees(fees: FeeSplit, factor: float) -> FeeSplit:
    return {key: value * factor for key, value in fees.items()}
