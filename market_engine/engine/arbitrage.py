import logging
import math
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from typing_extensions import TypedDict, Literal

import numpy as np

from market_engine.errors import ArbitrageSolveFailed, InconsistentState
from market_engine.utils import NumericContext, validate_amount
from .amm_math import calculate_cpmm_sale, get_cpmm_probability
from .fees import FeePolicy, get_fee_policy, no_fees
from .lob_matching import fill_against_book_and_pool, make_fill
from .params import EngineParams
from .state import Answer, Fill, LimitOrder, MultipleChoiceMarket, Outcome, Pool, opposite, replace_pools

logger = logging.getLogger(__name__)


class Converged(TypedDict):
    status: Literal['converged']
    value: Any
    iterations: int
    residual: float

class NotConverged(TypedDict):
    status: Literal['not_converged']
    value: Any
    iterations: int
    residual: float

SolveResult = Union[Converged, NotConverged]


class ArbitrageResult(TypedDict):
    fills: List[Fill]
    market: MultipleChoiceMarket
    orders: List[LimitOrder]
    cancelled_ids: List[str]
    remaining: float  # unspent currency (buys) or unsold shares (sales)
    proceeds: float  # currency returned to the seller; 0 for buys


def _result(converged: bool, value: Any, iterations: int, residual: float) -> SolveResult:
    if converged:
        return {'status': 'converged', 'value': value, 'iterations': iterations, 'residual': residual}
    return {'status': 'not_converged', 'value': value, 'iterations': iterations, 'residual': residual}


def solve_monotone(f: Callable[[float], float], target: float, lo: float, hi: float, ctx: NumericContext) -> SolveResult:
    """Bisection for f(x) == target with f non-decreasing on [lo, hi]."""
    tolerance = ctx.epsilon * max(1.0, abs(target))
    mid = lo
    residual = float('inf')
    for iteration in range(1, ctx.max_iterations + 1):
        mid = (lo + hi) / 2
        residual = f(mid) - target
        if abs(residual) <= tolerance:
            return _result(True, mid, iteration, residual)
        if residual < 0:
            lo = mid
        else:
            hi = mid
    return _result(False, mid, ctx.max_iterations, residual)


def redistribute_probabilities(
    probs: np.ndarray, total: float, lower: np.ndarray, upper: np.ndarray, ctx: NumericContext
) -> SolveResult:
    """
    Scale `probs` proportionally so they sum to `total`, clamping each entry
    to [lower, upper] and spreading what clamped entries cannot take over the
    rest. Each pass fixes at least one entry, so it settles within len(probs)
    passes.
    """
    probs = np.asarray(probs, dtype=float)
    targets = probs.copy()
    free = np.ones(len(probs), dtype=bool)
    iteration = 0
    for iteration in range(1, ctx.max_iterations + 1):
        free_mass = probs[free].sum()
        if not free.any() or free_mass <= 0:
            break
        fixed_mass = targets[~free].sum()
        trial = probs * ((total - fixed_mass) / free_mass)
        below = free & (trial < lower)
        above = free & (trial > upper)
        if not (below.any() or above.any()):
            targets[free] = trial[free]
            break
        targets[below] = lower[below]
        targets[above] = upper[above]
        free &= ~(below | above)
    residual = float(targets.sum() - total)
    return _result(abs(residual) <= ctx.epsilon, targets, iteration, residual)


def check_sum_to_one(market: MultipleChoiceMarket, ctx: NumericContext) -> None:
    total = float(np.sum([get_cpmm_probability(a['pool']) for a in market['answers']]))
    if abs(total - 1) > ctx.epsilon:
        logger.error(f"Market {market['id']} answer probabilities sum to {total:.12f}")
        raise InconsistentState(f"Answer probabilities of market {market['id']} sum to {total}, not 1")


def _answer_index(market: MultipleChoiceMarket, answer_id: str) -> int:
    for index, answer in enumerate(market['answers']):
        if answer['id'] == answer_id:
            return index
    raise ValueError(f"Answer not found: {answer_id}")


class Rebalance(TypedDict):
    fills: List[Fill]  # taker and maker fills on the other answers
    pools: Dict[str, Pool]
    orders: List[LimitOrder]
    cancelled_ids: List[str]
    cost: float  # taker spend across the other answers
    redeemed: float  # shares of the bought outcome now held on every other answer


def _rebalance_others(
    answers: List[Answer],
    a_idx: int,
    new_prob_a: float,
    leg_outcome: Outcome,
    user_id: str,
    request_id: str,
    params: EngineParams,
    ctx: NumericContext,
    fee_policy: FeePolicy,
    orders: List[LimitOrder] = (),
    balances: Optional[Dict[str, float]] = None,
    exclude_user_ids: Iterable[str] = (),
) -> Rebalance:
    """
    Buy `leg_outcome` on every other answer until they sum to 1 - new_prob_a.
    Each leg takes resting orders priced better than its target before the
    pool, exactly as a limit order at the target would.
    """
    others = [a for i, a in enumerate(answers) if i != a_idx]
    probs = np.array([get_cpmm_probability(a['pool']) for a in others])
    if leg_outcome == 'NO':
        lower = np.minimum(params['min_prob'], probs)
        upper = probs
    else:
        lower = probs
        upper = np.maximum(params['max_prob'], probs)

    solve = redistribute_probabilities(probs, 1 - new_prob_a, lower, upper, ctx)
    if solve['status'] != 'converged':
        logger.error(f"Probability redistribution failed: residual={solve['residual']:.3e}")
        raise ArbitrageSolveFailed("Could not redistribute answer probabilities", solve['iterations'], solve['residual'])

    book = list(orders)
    working = dict(balances) if balances is not None else None
    excluded = tuple(exclude_user_ids) or (user_id,)
    result: Rebalance = {'fills': [], 'pools': {}, 'orders': book, 'cancelled_ids': [], 'cost': 0.0, 'redeemed': 0.0}
    held: List[float] = []
    for answer, prob, target in zip(others, probs, solve['value']):
        target = float(target)
        if abs(target - prob) <= ctx.epsilon:
            continue
        # No budget cap: the limit at the target ends the fill
        leg = fill_against_book_and_pool(
            answer['pool'], book, leg_outcome, math.inf, user_id, request_id, params, ctx, fee_policy,
            'MULTIPLE_CHOICE', target, answer['id'], working,
            (min(params['min_prob'], target), max(params['max_prob'], target)), excluded,
        )
        taker_fills = [f for f in leg['fills'] if not f['is_maker']]
        if working is not None:
            _debit_makers(working, leg['fills'])
        book = leg['orders']
        result['fills'] += leg['fills']
        result['pools'][answer['id']] = leg['pool']
        result['cancelled_ids'] += leg['cancelled_ids']
        result['cost'] += sum(f['amount'] for f in taker_fills)
        held.append(sum(f['shares'] for f in taker_fills))
    result['orders'] = book
    if held and len(held) == len(others):
        result['redeemed'] = min(held)
    return result


def _debit_makers(balances: Dict[str, float], fills: List[Fill]) -> None:
    for fill in fills:
        if fill['is_maker']:
            balances[fill['user_id']] = balances.get(fill['user_id'], 0.0) - fill['amount']


def _redemption_fills(
    request_id: str,
    user_id: str,
    answers: List[Answer],
    a_idx: int,
    held_outcome: Outcome,
    a_outcome: Outcome,
    a_shares: float,
    redeemed: float,
    payout: float,
    new_pools: Dict[str, Pool],
) -> List[Fill]:
    """
    Holding `redeemed` shares of `held_outcome` on every other answer is
    converted into `a_shares` of `a_outcome` on the traded answer plus
    `payout` in currency.
    """
    fills: List[Fill] = []
    n_others = len(answers) - 1
    for i, answer in enumerate(answers):
        if i == a_idx:
            continue
        prob = get_cpmm_probability(new_pools[answer['id']])
        fills.append(make_fill(
            request_id, user_id, held_outcome, answer['id'], -payout / n_others, -redeemed,
            prob, prob, 0.0, no_fees(), is_redemption=True,
        ))
    a_answer = answers[a_idx]
    prob = get_cpmm_probability(new_pools[a_answer['id']])
    fills.append(make_fill(
        request_id, user_id, a_outcome, a_answer['id'], 0.0, a_shares,
        prob, prob, 0.0, no_fees(), is_redemption=True,
    ))
    return fills


def _finish(market: MultipleChoiceMarket, new_pools: Dict[str, Pool], ctx: NumericContext) -> MultipleChoiceMarket:
    new_market = replace_pools(market, new_pools)
    total = sum(get_cpmm_probability(a['pool']) for a in new_market['answers'])
    if abs(total - 1) > ctx.epsilon:
        logger.error(f"Market {market['id']} left unbalanced after solve: sum={total:.12f}")
        raise ArbitrageSolveFailed("Answer probabilities do not sum to one after the trade", 0, total - 1)
    return new_market


def calculate_multi_arbitrage_bet(
    market: MultipleChoiceMarket,
    answer_id: str,
    outcome: Outcome,
    amount: float,
    user_id: str,
    request_id: str,
    params: EngineParams,
    ctx: NumericContext,
    fee_policy: Optional[FeePolicy] = None,
    limit_prob: Optional[float] = None,
    orders: List[LimitOrder] = (),
    balances: Optional[Dict[str, float]] = None,
    exclude_user_ids: Iterable[str] = (),
) -> ArbitrageResult:
    """
    Buy `outcome` on one answer of a sum-to-one market and rebalance the
    others so the probabilities still sum to one.

    The traded answer gets a book-and-pool fill of x; every other answer buys
    the opposite outcome, from its book and then its pool, up to its
    proportionally redistributed probability. Opposite shares held on all
    other answers are redeemed into `outcome` shares on the traded answer
    (plus currency for YES buys). x is found by bisection so the net cost
    equals `amount`.
    """
    validate_amount(amount)
    check_sum_to_one(market, ctx)
    fee_policy = fee_policy or get_fee_policy(params)
    answers = market['answers']
    n = len(answers)
    a_idx = _answer_index(market, answer_id)
    a_answer = answers[a_idx]
    leg_outcome = opposite(outcome)
    orders = list(orders)
    a_bounds = (
        max(params['min_prob'], 1 - (n - 1) * params['max_prob']),
        min(params['max_prob'], 1 - (n - 1) * params['min_prob']),
    )

    def evaluate(x: float) -> Dict[str, Any]:
        if x <= ctx.epsilon:
            a_leg = {'fills': [], 'pool': a_answer['pool'], 'orders': orders, 'cancelled_ids': [], 'remaining': x}
        else:
            a_leg = fill_against_book_and_pool(
                a_answer['pool'], orders, outcome, x, user_id, request_id, params, ctx, fee_policy,
                'MULTIPLE_CHOICE', limit_prob, answer_id, balances, a_bounds, exclude_user_ids,
            )
        spent = x - a_leg['remaining']
        leg_balances = None
        if balances is not None:
            leg_balances = dict(balances)
            _debit_makers(leg_balances, a_leg['fills'])
        others = _rebalance_others(
            answers, a_idx, get_cpmm_probability(a_leg['pool']), leg_outcome, user_id, request_id,
            params, ctx, fee_policy, a_leg['orders'], leg_balances, exclude_user_ids,
        )
        payout = (n - 2) * others['redeemed'] if outcome == 'YES' else 0.0
        net_cost = spent + others['cost'] - payout
        return {'a_leg': a_leg, 'others': others, 'payout': payout, 'net_cost': net_cost}

    chosen = evaluate(amount)
    if chosen['net_cost'] > amount + ctx.epsilon * max(1.0, amount):
        solve = solve_monotone(lambda x: evaluate(x)['net_cost'], amount, 0.0, amount, ctx)
        if solve['status'] != 'converged':
            logger.error(
                f"Arbitrage solve for market {market['id']} answer {answer_id} did not converge "
                f"after {solve['iterations']} iterations (residual {solve['residual']:.3e})"
            )
            raise ArbitrageSolveFailed("Multi-answer purchase did not converge", solve['iterations'], solve['residual'])
        logger.debug(f"Arbitrage solve converged in {solve['iterations']} iterations at x={solve['value']:.6f}")
        chosen = evaluate(solve['value'])

    others = chosen['others']
    new_pools = {a_answer['id']: chosen['a_leg']['pool'], **others['pools']}
    all_pools = {a['id']: new_pools.get(a['id'], a['pool']) for a in answers}

    fills = list(chosen['a_leg']['fills']) + others['fills']
    if others['redeemed'] > ctx.epsilon:
        fills += _redemption_fills(
            request_id, user_id, answers, a_idx, leg_outcome, outcome,
            others['redeemed'], others['redeemed'], chosen['payout'], all_pools,
        )

    return {
        'fills': fills,
        'market': _finish(market, new_pools, ctx),
        'orders': others['orders'],
        'cancelled_ids': chosen['a_leg']['cancelled_ids'] + others['cancelled_ids'],
        'remaining': max(amount - chosen['net_cost'], 0.0),
        'proceeds': 0.0,
    }


def calculate_multi_arbitrage_sale(
    market: MultipleChoiceMarket,
    answer_id: str,
    outcome: Outcome,
    shares: float,
    user_id: str,
    request_id: str,
    params: EngineParams,
    ctx: NumericContext,
    fee_policy: Optional[FeePolicy] = None,
) -> ArbitrageResult:
    """
    Sell `shares` of `outcome` on one answer of a sum-to-one market.

    y shares go straight into the answer's pool; the other answers buy the
    same outcome back up to their redistributed probabilities, and what is
    held on all of them is redeemed against the rest of the user's shares.
    y is found by bisection so y plus the redeemed count equals `shares`.
    """
    validate_amount(shares, 'shares')
    check_sum_to_one(market, ctx)
    fee_policy = fee_policy or get_fee_policy(params)
    answers = market['answers']
    n = len(answers)
    a_idx = _answer_index(market, answer_id)
    a_answer = answers[a_idx]

    def evaluate(y: float) -> Dict[str, Any]:
        if y <= ctx.epsilon:
            sale = None
            pool = a_answer['pool']
        else:
            sale = calculate_cpmm_sale(a_answer['pool'], y, outcome, params, ctx, fee_policy, 'MULTIPLE_CHOICE')
            pool = sale['new_pool']
        others = _rebalance_others(
            answers, a_idx, get_cpmm_probability(pool), outcome, user_id, request_id, params, ctx, fee_policy
        )
        payout = others['redeemed'] if outcome == 'YES' else (n - 1) * others['redeemed']
        proceeds = (sale['amount'] if sale else 0.0) + payout - others['cost']
        return {
            'sale': sale, 'pool': pool, 'others': others, 'payout': payout,
            'proceeds': proceeds, 'consumed': y + others['redeemed'],
        }

    chosen = evaluate(shares)
    if chosen['consumed'] > shares + ctx.epsilon * max(1.0, shares):
        solve = solve_monotone(lambda y: evaluate(y)['consumed'], shares, 0.0, shares, ctx)
        if solve['status'] != 'converged':
            logger.error(
                f"Arbitrage sale for market {market['id']} answer {answer_id} did not converge "
                f"after {solve['iterations']} iterations (residual {solve['residual']:.3e})"
            )
            raise ArbitrageSolveFailed("Multi-answer sale did not converge", solve['iterations'], solve['residual'])
        chosen = evaluate(solve['value'])

    others = chosen['others']
    new_pools = {a_answer['id']: chosen['pool'], **others['pools']}
    all_pools = {a['id']: new_pools.get(a['id'], a['pool']) for a in answers}

    fills: List[Fill] = []
    sale = chosen['sale']
    if sale is not None:
        fills.append(make_fill(
            request_id, user_id, outcome, answer_id, -sale['amount'], -sale['shares'],
            sale['prob_before'], sale['prob_after'], sale['fee'], sale['fees'],
        ))
    fills += others['fills']
    if others['redeemed'] > ctx.epsilon:
        fills += _redemption_fills(
            request_id, user_id, answers, a_idx, outcome, outcome,
            -others['redeemed'], others['redeemed'], chosen['payout'], all_pools,
        )

    return {
        'fills': fills,
        'market': _finish(market, new_pools, ctx),
        'orders': [],
        'cancelled_ids': [],
        'remaining': max(shares - chosen['consumed'], 0.0),
        'proceeds': chosen['proceeds'],
    }
