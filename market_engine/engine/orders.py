import logging
from typing import Dict, List, Optional, Tuple
from typing_extensions import assert_never

from market_engine.errors import InsufficientBalance
from market_engine.utils import NumericContext, validate_amount, validate_probability
from .arbitrage import calculate_multi_arbitrage_bet
from .fees import FeePolicy, get_fee_policy, scale_fees
from .lob_matching import BookFillResult, check_order_snapshot, fill_against_book_and_pool, is_order_expired
from .params import EngineParams
from .state import BetRequest, Fill, LimitOrder, Market, OrderDiff, TradeResult, get_answer, replace_pools

logger = logging.getLogger(__name__)

GroupKey = Tuple[Optional[str], str]


def validate_request(request: BetRequest, params: EngineParams) -> None:
    validate_amount(request['amount'])
    if request['outcome'] not in ('YES', 'NO'):
        raise ValueError(f"Invalid outcome: {request['outcome']}")
    if request['limit_prob'] is not None:
        validate_probability(request['limit_prob'], params['min_prob'], params['max_prob'])


def group_requests(requests: List[BetRequest]) -> List[List[BetRequest]]:
    """
    Requests in (created_at, id) order, combined by (answer_id, outcome).
    Groups keep the position of their earliest request.
    """
    groups: Dict[GroupKey, List[BetRequest]] = {}
    for request in sorted(requests, key=lambda r: (r['created_at'], r['id'])):
        key = (request['answer_id'], request['outcome'])
        groups.setdefault(key, []).append(request)
    return list(groups.values())


def _tightest_limit(active: List[Tuple[BetRequest, float]]) -> Optional[float]:
    limits = [r['limit_prob'] for r, _ in active if r['limit_prob'] is not None]
    if not limits:
        return None
    return min(limits) if active[0][0]['outcome'] == 'YES' else max(limits)


def _allocate_fills(fills: List[Fill], active: List[Tuple[BetRequest, float]], total: float) -> List[Fill]:
    """Split combined taker fills back onto each request pro rata by the amount it put in."""
    if len(active) == 1:
        return list(fills)
    allocated: List[Fill] = []
    for fill in fills:
        if fill['is_maker']:
            allocated.append(fill)
            continue
        for request, amount in active:
            share = amount / total
            allocated.append({
                **fill,
                'request_id': request['id'],
                'user_id': request['user_id'],
                'amount': fill['amount'] * share,
                'shares': fill['shares'] * share,
                'fee': fill['fee'] * share,
                'fees': scale_fees(fill['fees'], share),
            })
    return allocated


def _new_resting_order(request: BetRequest, remaining: float, fills: List[Fill]) -> LimitOrder:
    filled_shares = sum(
        f['shares'] for f in fills
        if f['request_id'] == request['id'] and not f['is_maker'] and f['answer_id'] == request['answer_id']
        and f['outcome'] == request['outcome']
    )
    return {
        'id': request['id'],
        'user_id': request['user_id'],
        'outcome': request['outcome'],
        'answer_id': request['answer_id'],
        'limit_prob': request['limit_prob'],
        'order_amount': request['amount'],
        'remaining_amount': remaining,
        'filled_amount': request['amount'] - remaining,
        'filled_shares': filled_shares,
        'created_at': request['created_at'],
        'expires_at': request['expires_at'],
        'is_cancelled': False,
    }


def _solve(
    market: Market,
    lead: BetRequest,
    amount: float,
    limit_prob: Optional[float],
    book: List[LimitOrder],
    params: EngineParams,
    ctx: NumericContext,
    fee_policy: FeePolicy,
    balances: Optional[Dict[str, float]],
    user_ids: List[str],
) -> Tuple[BookFillResult, Market]:
    answer_id = lead['answer_id']
    kind = market['kind']
    if kind == 'BINARY' or kind == 'PSEUDO_NUMERIC' or kind == 'STONK':
        if answer_id is not None:
            raise ValueError(f"Market {market['id']} has no answers; got answer_id={answer_id}")
        result = fill_against_book_and_pool(
            market['pool'], book, lead['outcome'], amount, lead['user_id'], lead['id'], params, ctx,
            fee_policy, kind, limit_prob, None, balances, None, user_ids,
        )
        return result, replace_pools(market, {None: result['pool']})
    elif kind == 'MULTIPLE_CHOICE':
        if answer_id is None:
            raise ValueError(f"Market {market['id']} requires an answer_id")
        answer = get_answer(market, answer_id)
        if market['should_answers_sum_to_one']:
            arbitrage = calculate_multi_arbitrage_bet(
                market, answer_id, lead['outcome'], amount, lead['user_id'], lead['id'], params, ctx,
                fee_policy, limit_prob, book, balances, user_ids,
            )
            return {
                'fills': arbitrage['fills'],
                'pool': get_answer(arbitrage['market'], answer_id)['pool'],
                'orders': arbitrage['orders'],
                'cancelled_ids': arbitrage['cancelled_ids'],
                'remaining': arbitrage['remaining'],
            }, arbitrage['market']
        result = fill_against_book_and_pool(
            answer['pool'], book, lead['outcome'], amount, lead['user_id'], lead['id'], params, ctx,
            fee_policy, 'MULTIPLE_CHOICE', limit_prob, answer_id, balances, None, user_ids,
        )
        return result, replace_pools(market, {answer_id: result['pool']})
    else:
        assert_never(kind)


def _fill_group(
    market: Market,
    group: List[BetRequest],
    book: List[LimitOrder],
    params: EngineParams,
    ctx: NumericContext,
    fee_policy: FeePolicy,
    balances: Optional[Dict[str, float]],
) -> Tuple[List[Fill], Market, List[LimitOrder], List[str], Dict[str, float]]:
    """
    One solve for every request on the same answer and outcome.

    The group buys together in price tiers: each tier runs up to the tightest
    limit still active and splits its fills pro rata over the requests in it.
    Requests whose limit it was stop there with their share of what is left;
    the others carry their share into the next tier.
    """
    user_ids = sorted({r['user_id'] for r in group})
    working = dict(balances) if balances is not None else None
    active = [(r, r['amount']) for r in group]
    remaining: Dict[str, float] = {}
    fills: List[Fill] = []
    cancelled_ids: List[str] = []

    while active:
        total = sum(amount for _, amount in active)
        if total <= ctx.epsilon:
            break
        stop = _tightest_limit(active)
        result, market = _solve(
            market, active[0][0], total, stop, book, params, ctx, fee_policy, working, user_ids
        )
        fills.extend(_allocate_fills(result['fills'], active, total))
        book = result['orders']
        cancelled_ids.extend(result['cancelled_ids'])
        if working is not None:
            for fill in result['fills']:
                if fill['is_maker']:
                    working[fill['user_id']] = working.get(fill['user_id'], 0.0) - fill['amount']

        left = result['remaining']
        carried = []
        for request, amount in active:
            share = left * amount / total
            if stop is None or request['limit_prob'] == stop or left <= ctx.epsilon:
                remaining[request['id']] = share
            else:
                carried.append((request, share))
        active = carried
        if len(active) > 0:
            logger.debug(f"Limit {stop} reached; {len(active)} requests continue with {left:.6f}")

    for request, amount in active:
        remaining[request['id']] = amount
    return fills, market, book, cancelled_ids, remaining


def apply_orders(
    market: Market,
    requests: List[BetRequest],
    resting_orders: List[LimitOrder],
    params: EngineParams,
    ctx: Optional[NumericContext] = None,
    balances: Optional[Dict[str, float]] = None,
    fee_policy: Optional[FeePolicy] = None,
) -> TradeResult:
    """
    Fill a batch of bet requests against the resting orders and the market's
    pools.

    Requests on the same answer and outcome are solved together and share
    fills pro rata by amount, each stopping at its own limit. Unfilled limit
    remainders become resting orders that later groups can match. `balances`
    caps both takers and makers when given. Nothing passed in is modified.
    """
    ctx = ctx or NumericContext.from_params(params)
    fee_policy = fee_policy or get_fee_policy(params)
    check_order_snapshot(resting_orders, ctx.epsilon)
    for request in requests:
        validate_request(request, params)

    working_balances = dict(balances) if balances is not None else None
    book: List[LimitOrder] = [dict(o) for o in resting_orders]
    snapshot_ids = {o['id'] for o in resting_orders}
    diffs: Dict[str, OrderDiff] = {}
    fills: List[Fill] = []
    new_order_ids: List[str] = []

    for group in group_requests(requests):
        as_of = max(r['created_at'] for r in group)

        open_orders: List[LimitOrder] = []
        for order in book:
            if is_order_expired(order, as_of):
                expired = {**order, 'is_cancelled': True}
                if order['id'] in snapshot_ids:
                    diffs[order['id']] = {
                        'order': expired,
                        'fills': diffs[order['id']]['fills'] if order['id'] in diffs else [],
                        'status': 'expired',
                    }
                logger.debug(f"Order {order['id']} expired at {order['expires_at']}")
                continue
            open_orders.append(order)

        if working_balances is not None:
            spend: Dict[str, float] = {}
            for request in group:
                spend[request['user_id']] = spend.get(request['user_id'], 0.0) + request['amount']
            for user_id, amount in spend.items():
                available = working_balances.get(user_id, 0.0)
                if amount > available + ctx.epsilon:
                    raise InsufficientBalance(f"User {user_id} needs {amount} but has {available}")

        group_fills, market, updated, cancelled_ids, remaining = _fill_group(
            market, group, open_orders, params, ctx, fee_policy, working_balances
        )
        fills.extend(group_fills)

        if working_balances is not None:
            for fill in group_fills:
                working_balances[fill['user_id']] = working_balances.get(fill['user_id'], 0.0) - fill['amount']

        before = {o['id']: o for o in open_orders}
        for order in updated:
            order_fills = [f for f in group_fills if f['is_maker'] and f['matched_order_id'] == order['id']]
            if not order_fills and order['id'] not in cancelled_ids:
                continue
            if order['id'] in cancelled_ids:
                status = 'cancelled'
            elif order['remaining_amount'] <= ctx.epsilon:
                status = 'filled'
            else:
                status = 'partial'
            if order['id'] in snapshot_ids:
                previous = diffs[order['id']]['fills'] if order['id'] in diffs else []
                diffs[order['id']] = {'order': order, 'fills': previous + order_fills, 'status': status}
            logger.debug(f"Order {order['id']} {status}: filled {order['filled_amount'] - before[order['id']]['filled_amount']:.6f}")

        book = [o for o in updated if not o['is_cancelled'] and o['remaining_amount'] > ctx.epsilon]

        for request in group:
            leftover = remaining[request['id']]
            if request['limit_prob'] is None or leftover <= ctx.epsilon:
                continue
            book.append(_new_resting_order(request, leftover, group_fills))
            new_order_ids.append(request['id'])

    open_by_id = {o['id']: o for o in book}
    new_resting_orders = [open_by_id[i] for i in new_order_ids if i in open_by_id]
    order_diffs = [diffs[o['id']] for o in resting_orders if o['id'] in diffs]

    logger.info(
        f"Applied {len(requests)} requests to market {market['id']}: {len(fills)} fills, "
        f"{len(order_diffs)} order updates, {len(new_resting_orders)} new resting orders"
    )
    return {
        'fills': fills,
        'market': market,
        'order_diffs': order_diffs,
        'new_resting_orders': new_resting_orders,
    }


def place_bet(
    market: Market,
    request: BetRequest,
    resting_orders: List[LimitOrder],
    params: EngineParams,
    ctx: Optional[NumericContext] = None,
    balances: Optional[Dict[str, float]] = None,
    fee_policy: Optional[FeePolicy] = None,
) -> TradeResult:
    return apply_orders(market, [request], resting_orders, params, ctx, balances, fee_policy)
