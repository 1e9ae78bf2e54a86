import logging
import math
from typing import Dict, Optional, Tuple
from typing_extensions import TypedDict

from market_engine.errors import InconsistentState, InsufficientLiquidity, ProbabilityOutOfBounds
from market_engine.utils import (
    NumericContext,
    find_root,
    floating_equal,
    safe_divide,
    solve_quadratic,
    validate_amount,
)
from .fees import FeePolicy, get_fee_policy, no_fees, split_fees
from .params import EngineParams
from .state import ContractKind, FeeSplit, Market, Outcome, Pool, get_market_pools

logger = logging.getLogger(__name__)


class PurchaseResult(TypedDict):
    amount: float  # gross, fee included
    shares: float
    new_pool: Pool
    fee: float
    fees: FeeSplit
    prob_before: float
    prob_after: float


class SaleResult(TypedDict):
    amount: float  # returned to the seller, net of fee
    shares: float
    new_pool: Pool
    fee: float
    fees: FeeSplit
    prob_before: float
    prob_after: float


def get_cpmm_probability(pool: Pool) -> float:
    """p * NO / (p * NO + (1 - p) * YES)."""
    y = pool['yes_shares']
    n = pool['no_shares']
    p = pool['p']
    return safe_divide(p * n, p * n + (1 - p) * y)


def get_outcome_probability(pool: Pool, outcome: Outcome) -> float:
    prob = get_cpmm_probability(pool)
    return prob if outcome == 'YES' else 1 - prob


def get_market_probabilities(market: Market) -> Dict[Optional[str], float]:
    return {answer_id: get_cpmm_probability(pool) for answer_id, pool in get_market_pools(market).items()}


def get_cpmm_k(pool: Pool, ctx: NumericContext) -> float:
    p = pool['p']
    return ctx.power(pool['yes_shares'], p) * ctx.power(pool['no_shares'], 1 - p)


def validate_pool(pool: Pool) -> None:
    for key in ('yes_shares', 'no_shares'):
        if not math.isfinite(pool[key]) or pool[key] <= 0:
            raise InconsistentState(f"Pool reserve {key} is {pool[key]}")
    if not (0 < pool['p'] < 1):
        raise InconsistentState(f"Pool weight {pool['p']} outside (0, 1)")


def check_reserves(pool: Pool, params: EngineParams) -> None:
    floor = params['min_reserve']
    if pool['yes_shares'] < floor or pool['no_shares'] < floor:
        raise InsufficientLiquidity(
            f"Trade would leave reserves YES={pool['yes_shares']:.6f} NO={pool['no_shares']:.6f} under floor {floor}"
        )


def _is_half_weight(pool: Pool, ctx: NumericContext) -> bool:
    return floating_equal(pool['p'], 0.5, ctx.epsilon)


def calculate_cpmm_shares(pool: Pool, amount: float, outcome: Outcome, ctx: NumericContext) -> float:
    """
    Shares of `outcome` bought with `amount` (already net of fees). The amount
    mints that many YES/NO pairs into the pool; the invariant fixes how many of
    the bought side leave.
    """
    if amount == 0:
        return 0.0
    y = pool['yes_shares']
    n = pool['no_shares']
    p = pool['p']
    k = get_cpmm_k(pool, ctx)

    if _is_half_weight(pool, ctx):
        # y' * n' = y * n
        if outcome == 'YES':
            return y + amount - y * n / (n + amount)
        return n + amount - y * n / (y + amount)

    if outcome == 'YES':
        other = (n + amount) ** (1 - p)
        hi = y + amount

        def invariant(shares):
            return (y + amount - shares) ** p * other - k
    else:
        other = (y + amount) ** p
        hi = n + amount

        def invariant(shares):
            return other * (n + amount - shares) ** (1 - p) - k

    prob = get_outcome_probability(pool, outcome)
    x0 = min(amount / prob, hi * 0.999)
    return find_root(invariant, 0.0, hi, ctx, x0=x0)


def calculate_cpmm_sale_amount(pool: Pool, shares: float, outcome: Outcome, ctx: NumericContext) -> float:
    """
    Currency returned for `shares` of `outcome` before fees: the pool takes
    the shares and burns `m` YES/NO pairs so the invariant holds.
    """
    if shares == 0:
        return 0.0
    y = pool['yes_shares']
    n = pool['no_shares']
    p = pool['p']
    k = get_cpmm_k(pool, ctx)

    if _is_half_weight(pool, ctx):
        # (y + s - m)(n - m) = y n for a YES sale; symmetric for NO
        if outcome == 'YES':
            return solve_quadratic(1.0, -(y + shares + n), shares * n)
        return solve_quadratic(1.0, -(n + shares + y), shares * y)

    if outcome == 'YES':
        hi = min(n, y + shares)

        def invariant(m):
            return (y + shares - m) ** p * (n - m) ** (1 - p) - k
    else:
        hi = min(y, n + shares)

        def invariant(m):
            return (y - m) ** p * (n + shares - m) ** (1 - p) - k

    prob = get_outcome_probability(pool, outcome)
    x0 = min(shares * prob, hi * 0.999)
    return find_root(invariant, 0.0, hi, ctx, x0=x0)


def calculate_amount_to_reach_probability(
    pool: Pool, target_prob: float, outcome: Outcome, ctx: NumericContext
) -> Tuple[float, float]:
    """
    Net amount and shares of `outcome` that move the YES probability exactly
    to `target_prob`. Closed form for any weight: the target fixes the
    reserve ratio and the invariant fixes the scale.
    """
    if not (0 < target_prob < 1):
        raise ProbabilityOutOfBounds(f"Target probability {target_prob} outside (0, 1)")
    y = pool['yes_shares']
    n = pool['no_shares']
    p = pool['p']
    k = get_cpmm_k(pool, ctx)

    ratio = p * (1 - target_prob) / ((1 - p) * target_prob)  # yes' / no'
    new_n = k / ratio ** p
    new_y = ratio * new_n
    if outcome == 'YES':
        amount = new_n - n
        shares = y + amount - new_y
    else:
        amount = new_y - y
        shares = n + amount - new_n
    if amount <= 0:
        return 0.0, 0.0
    return amount, shares


def add_cpmm_liquidity(pool: Pool, amount: float) -> Pool:
    """
    Add `amount` to both reserves and re-weight so the probability is
    unchanged. Liquidity shares are left to the caller.
    """
    prob = get_cpmm_probability(pool)
    new_y = pool['yes_shares'] + amount
    new_n = pool['no_shares'] + amount
    new_p = prob * new_y / (new_n - prob * new_n + prob * new_y)
    return {**pool, 'yes_shares': new_y, 'no_shares': new_n, 'p': new_p}


def _apply_purchase(pool: Pool, amount: float, shares: float, outcome: Outcome) -> Pool:
    if outcome == 'YES':
        return {**pool, 'yes_shares': pool['yes_shares'] + amount - shares, 'no_shares': pool['no_shares'] + amount}
    return {**pool, 'yes_shares': pool['yes_shares'] + amount, 'no_shares': pool['no_shares'] + amount - shares}


def _apply_sale(pool: Pool, shares: float, returned: float, outcome: Outcome) -> Pool:
    if outcome == 'YES':
        return {**pool, 'yes_shares': pool['yes_shares'] + shares - returned, 'no_shares': pool['no_shares'] - returned}
    return {**pool, 'yes_shares': pool['yes_shares'] - returned, 'no_shares': pool['no_shares'] + shares - returned}


def collect_fee(pool: Pool, fee: float, contract_type: ContractKind) -> Tuple[Pool, FeeSplit]:
    if fee <= 0:
        return pool, no_fees()
    fees = split_fees(fee, contract_type)
    if fees['liquidity_fee'] > 0:
        pool = add_cpmm_liquidity(pool, fees['liquidity_fee'])
    return pool, fees


def calculate_cpmm_purchase(
    pool: Pool,
    amount: float,
    outcome: Outcome,
    params: EngineParams,
    ctx: NumericContext,
    fee_policy: Optional[FeePolicy] = None,
    contract_type: ContractKind = 'BINARY',
) -> PurchaseResult:
    """
    Buy `outcome` with `amount`. The fee rate is estimated from the move the
    whole amount would cause before fees; the pool then absorbs the amount
    net of that fee.
    """
    validate_amount(amount)
    validate_pool(pool)
    fee_policy = fee_policy or get_fee_policy(params)
    prob_before = get_cpmm_probability(pool)

    pre_fee_shares = calculate_cpmm_shares(pool, amount, outcome, ctx)
    pre_fee_prob = get_cpmm_probability(_apply_purchase(pool, amount, pre_fee_shares, outcome))
    rate = fee_policy.rate(prob_before, pre_fee_prob)
    net = amount / (1 + rate)
    fee = amount - net

    shares = calculate_cpmm_shares(pool, net, outcome, ctx)
    new_pool = _apply_purchase(pool, net, shares, outcome)
    check_reserves(new_pool, params)
    new_pool, fees = collect_fee(new_pool, fee, contract_type)

    return {
        'amount': amount,
        'shares': shares,
        'new_pool': new_pool,
        'fee': fee,
        'fees': fees,
        'prob_before': prob_before,
        'prob_after': get_cpmm_probability(new_pool),
    }


def calculate_cpmm_purchase_to_probability(
    pool: Pool,
    target_prob: float,
    outcome: Outcome,
    params: EngineParams,
    ctx: NumericContext,
    fee_policy: Optional[FeePolicy] = None,
    contract_type: ContractKind = 'BINARY',
) -> PurchaseResult:
    """Purchase that lands the pool exactly on `target_prob`; `amount` is the gross cost."""
    validate_pool(pool)
    fee_policy = fee_policy or get_fee_policy(params)
    prob_before = get_cpmm_probability(pool)
    net, shares = calculate_amount_to_reach_probability(pool, target_prob, outcome, ctx)
    if net == 0:
        return {
            'amount': 0.0, 'shares': 0.0, 'new_pool': dict(pool), 'fee': 0.0,
            'fees': no_fees(), 'prob_before': prob_before, 'prob_after': prob_before,
        }
    fee = net * fee_policy.rate(prob_before, target_prob)
    new_pool = _apply_purchase(pool, net, shares, outcome)
    check_reserves(new_pool, params)
    new_pool, fees = collect_fee(new_pool, fee, contract_type)
    return {
        'amount': net + fee,
        'shares': shares,
        'new_pool': new_pool,
        'fee': fee,
        'fees': fees,
        'prob_before': prob_before,
        'prob_after': get_cpmm_probability(new_pool),
    }


def calculate_cpmm_sale(
    pool: Pool,
    shares: float,
    outcome: Outcome,
    params: EngineParams,
    ctx: NumericContext,
    fee_policy: Optional[FeePolicy] = None,
    contract_type: ContractKind = 'BINARY',
) -> SaleResult:
    """
    Sell `shares` of `outcome` back to the pool. Exact inverse of a purchase
    before fees; the sale fee is the taker rate scaled by sale_fee_fraction
    and is taken out of the proceeds.
    """
    validate_amount(shares, 'shares')
    validate_pool(pool)
    fee_policy = fee_policy or get_fee_policy(params)
    prob_before = get_cpmm_probability(pool)

    gross = calculate_cpmm_sale_amount(pool, shares, outcome, ctx)
    new_pool = _apply_sale(pool, shares, gross, outcome)
    check_reserves(new_pool, params)
    prob_after = get_cpmm_probability(new_pool)

    fee = gross * fee_policy.rate(prob_before, prob_after) * params['sale_fee_fraction']
    new_pool, fees = collect_fee(new_pool, fee, contract_type)
    logger.debug(f"CPMM sale of {shares:.6f} {outcome}: gross={gross:.6f} fee={fee:.6f}")

    return {
        'amount': gross - fee,
        'shares': shares,
        'new_pool': new_pool,
        'fee': fee,
        'fees': fees,
        'prob_before': prob_before,
        'prob_after': get_cpmm_probability(new_pool),
    }
