import logging
import math
from typing import Dict, Iterable, List, Optional, Tuple
from typing_extensions import TypedDict

from market_engine.errors import StaleOrder
from market_engine.utils import EPSILON, NumericContext
from .amm_math import (
    calculate_cpmm_purchase,
    calculate_cpmm_purchase_to_probability,
    collect_fee,
    get_cpmm_probability,
)
from .fees import FeePolicy, get_fee_policy, no_fees
from .params import EngineParams
from .state import ContractKind, Fill, FeeSplit, LimitOrder, Outcome, Pool, opposite

logger = logging.getLogger(__name__)


class BookFillResult(TypedDict):
    fills: List[Fill]  # execution order; maker fills follow the taker fill they match
    pool: Pool
    orders: List[LimitOrder]  # updated copies, same order as the input
    cancelled_ids: List[str]  # orders cancelled because the maker ran out of balance
    remaining: float


def is_order_expired(order: LimitOrder, as_of: int) -> bool:
    return order['expires_at'] is not None and order['expires_at'] <= as_of


def check_order_snapshot(orders: Iterable[LimitOrder], epsilon: float = EPSILON) -> None:
    """Resting orders handed to the engine must still be open."""
    for order in orders:
        if order['is_cancelled']:
            raise StaleOrder(order['id'], 'cancelled')
        if order['remaining_amount'] <= epsilon:
            raise StaleOrder(order['id'], 'already filled')


def cancel_limit_order(order: LimitOrder, as_of: int, epsilon: float = EPSILON) -> LimitOrder:
    if order['is_cancelled']:
        raise StaleOrder(order['id'], 'already cancelled')
    if order['remaining_amount'] <= epsilon:
        raise StaleOrder(order['id'], 'already filled')
    if is_order_expired(order, as_of):
        raise StaleOrder(order['id'], 'expired')
    return {**order, 'is_cancelled': True}


def sort_matchable_orders(
    orders: Iterable[LimitOrder],
    taker_outcome: Outcome,
    answer_id: Optional[str] = None,
    exclude_user_ids: Iterable[str] = (),
) -> List[LimitOrder]:
    """
    Opposite-side orders a taker can match, best price first then oldest.
    A YES taker pays an order's limit probability, so cheapest first; a NO
    taker pays one minus it, so highest first.
    """
    excluded = set(exclude_user_ids)
    maker_outcome = opposite(taker_outcome)
    candidates = [
        o for o in orders
        if o['outcome'] == maker_outcome
        and o['answer_id'] == answer_id
        and o['user_id'] not in excluded
        and not o['is_cancelled']
    ]
    if taker_outcome == 'YES':
        return sorted(candidates, key=lambda o: (o['limit_prob'], o['created_at'], o['id']))
    return sorted(candidates, key=lambda o: (-o['limit_prob'], o['created_at'], o['id']))


def _beats_pool(order_prob: float, pool_prob: float, taker_outcome: Outcome, epsilon: float) -> bool:
    # Ties go to the book
    if taker_outcome == 'YES':
        return order_prob <= pool_prob + epsilon
    return order_prob >= pool_prob - epsilon


def _within_limit(order_prob: float, limit_prob: Optional[float], taker_outcome: Outcome, epsilon: float) -> bool:
    if limit_prob is None:
        return True
    if taker_outcome == 'YES':
        return order_prob <= limit_prob + epsilon
    return order_prob >= limit_prob - epsilon


def _pool_target(
    taker_outcome: Outcome,
    bounds: Tuple[float, float],
    limit_prob: Optional[float],
    next_order: Optional[LimitOrder],
) -> float:
    low, high = bounds
    if taker_outcome == 'YES':
        target = high
        if limit_prob is not None:
            target = min(target, limit_prob)
        if next_order is not None:
            target = min(target, next_order['limit_prob'])
    else:
        target = low
        if limit_prob is not None:
            target = max(target, limit_prob)
        if next_order is not None:
            target = max(target, next_order['limit_prob'])
    return target


def make_fill(
    request_id: str,
    user_id: str,
    outcome: Outcome,
    answer_id: Optional[str],
    amount: float,
    shares: float,
    prob_before: float,
    prob_after: float,
    fee: float,
    fees: FeeSplit,
    matched_order_id: Optional[str] = None,
    is_maker: bool = False,
    is_redemption: bool = False,
) -> Fill:
    return {
        'request_id': request_id,
        'user_id': user_id,
        'outcome': outcome,
        'answer_id': answer_id,
        'amount': amount,
        'shares': shares,
        'prob_before': prob_before,
        'prob_after': prob_after,
        'fee': fee,
        'fees': fees,
        'matched_order_id': matched_order_id,
        'is_maker': is_maker,
        'is_redemption': is_redemption,
    }


def fill_against_book_and_pool(
    pool: Pool,
    orders: List[LimitOrder],
    outcome: Outcome,
    amount: float,
    user_id: str,
    request_id: str,
    params: EngineParams,
    ctx: NumericContext,
    fee_policy: Optional[FeePolicy] = None,
    contract_type: ContractKind = 'BINARY',
    limit_prob: Optional[float] = None,
    answer_id: Optional[str] = None,
    balances: Optional[Dict[str, float]] = None,
    prob_bounds: Optional[Tuple[float, float]] = None,
    exclude_user_ids: Iterable[str] = (),
) -> BookFillResult:
    """
    Spend `amount` on `outcome` against the resting orders and the pool,
    always taking whichever offers the taker the better price.

    Pool fills stop at the next resting order's price, the taker's limit, or
    the probability bounds; maker fills are capped by the order's remaining
    amount and the maker's balance. `orders` and `pool` are not modified.
    """
    eps = ctx.epsilon
    fee_policy = fee_policy or get_fee_policy(params)
    bounds = prob_bounds or (params['min_prob'], params['max_prob'])
    if not exclude_user_ids:
        exclude_user_ids = (user_id,)

    book = {o['id']: dict(o) for o in orders}
    queue = [book[o['id']] for o in sort_matchable_orders(orders, outcome, answer_id, exclude_user_ids)]
    maker_spent: Dict[str, float] = {}

    def maker_available(maker_id: str) -> float:
        if balances is None:
            return math.inf
        return balances.get(maker_id, 0.0) - maker_spent.get(maker_id, 0.0)

    fills: List[Fill] = []
    cancelled_ids: List[str] = []
    remaining = amount
    position = 0

    while remaining > eps:
        prob = get_cpmm_probability(pool)

        next_order = None
        while position < len(queue):
            candidate = queue[position]
            if not _within_limit(candidate['limit_prob'], limit_prob, outcome, eps):
                break  # sorted, so nothing further qualifies either
            available = min(candidate['remaining_amount'], maker_available(candidate['user_id']))
            if available <= eps:
                if candidate['remaining_amount'] > eps:
                    candidate['is_cancelled'] = True
                    cancelled_ids.append(candidate['id'])
                    logger.debug(f"Cancelling order {candidate['id']}: maker {candidate['user_id']} has no balance")
                position += 1
                continue
            next_order = candidate
            break

        if next_order is not None and _beats_pool(next_order['limit_prob'], prob, outcome, eps):
            q = next_order['limit_prob']
            taker_price = q if outcome == 'YES' else 1 - q
            maker_price = 1 - taker_price
            rate = fee_policy.rate(prob, prob)
            available = min(next_order['remaining_amount'], maker_available(next_order['user_id']))

            taker_shares = remaining / (taker_price * (1 + rate))
            maker_shares = available / maker_price
            shares = min(taker_shares, maker_shares)
            net = shares * taker_price
            fee = net * rate
            taker_amount = remaining if shares == taker_shares else net + fee
            maker_amount = shares * maker_price

            pool, fees = collect_fee(pool, fee, contract_type)
            fills.append(make_fill(
                request_id, user_id, outcome, answer_id, taker_amount, shares,
                prob, prob, fee, fees, matched_order_id=next_order['id'],
            ))
            fills.append(make_fill(
                request_id, next_order['user_id'], next_order['outcome'], answer_id, maker_amount, shares,
                prob, prob, 0.0, no_fees(),
                matched_order_id=next_order['id'], is_maker=True,
            ))

            next_order['remaining_amount'] -= maker_amount
            next_order['filled_amount'] += maker_amount
            next_order['filled_shares'] += shares
            if next_order['remaining_amount'] <= eps:
                next_order['remaining_amount'] = 0.0
                position += 1
            maker_spent[next_order['user_id']] = maker_spent.get(next_order['user_id'], 0.0) + maker_amount
            remaining -= taker_amount
            logger.debug(f"Matched {shares:.6f} shares against order {next_order['id']} at {q}")
            continue

        target = _pool_target(outcome, bounds, limit_prob, next_order)
        moves = target > prob + eps if outcome == 'YES' else target < prob - eps
        if not moves:
            break

        segment = calculate_cpmm_purchase_to_probability(pool, target, outcome, params, ctx, fee_policy, contract_type)
        if segment['amount'] >= remaining - eps:
            segment = calculate_cpmm_purchase(pool, remaining, outcome, params, ctx, fee_policy, contract_type)
        fills.append(make_fill(
            request_id, user_id, outcome, answer_id, segment['amount'], segment['shares'],
            segment['prob_before'], segment['prob_after'], segment['fee'], segment['fees'],
        ))
        pool = segment['new_pool']
        remaining -= segment['amount']

    return {
        'fills': fills,
        'pool': pool,
        'orders': [book[o['id']] for o in orders],
        'cancelled_ids': cancelled_ids,
        'remaining': max(remaining, 0.0),
    }
