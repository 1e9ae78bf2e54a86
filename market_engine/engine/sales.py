import logging
from typing import Iterable, List, Optional
from typing_extensions import TypedDict, assert_never

from market_engine.errors import InvalidAmount
from market_engine.utils import EPSILON, NumericContext, validate_amount
from .amm_math import calculate_cpmm_sale, get_cpmm_probability
from .arbitrage import calculate_multi_arbitrage_sale
from .fees import FeePolicy, get_fee_policy, no_fees
from .lob_matching import make_fill
from .params import EngineParams
from .state import Fill, Market, Outcome, get_answer, opposite, replace_pools

logger = logging.getLogger(__name__)


class Holdings(TypedDict):
    YES: float
    NO: float


class SellResult(TypedDict):
    fills: List[Fill]
    market: Market
    proceeds: float  # currency returned to the seller, fees already taken
    redeemed: float  # shares settled 1:1 against the opposite side


def get_holdings(fills: Iterable[Fill], user_id: str, answer_id: Optional[str] = None) -> Holdings:
    holdings: Holdings = {'YES': 0.0, 'NO': 0.0}
    for fill in fills:
        if fill['user_id'] == user_id and fill['answer_id'] == answer_id:
            holdings[fill['outcome']] += fill['shares']
    return holdings


def redeem_shares(
    user_id: str,
    holdings: Holdings,
    prob: float,
    request_id: str,
    answer_id: Optional[str] = None,
    max_shares: Optional[float] = None,
    epsilon: float = EPSILON,
) -> List[Fill]:
    """
    Turn matched YES/NO pairs back into currency, 1 per pair, without touching
    the pool. The payout is split across the two legs at `prob` so each leg
    carries its own cost basis.
    """
    pairs = min(holdings['YES'], holdings['NO'])
    if max_shares is not None:
        pairs = min(pairs, max_shares)
    if pairs <= epsilon:
        return []
    logger.debug(f"Redeeming {pairs:.6f} share pairs for user {user_id}")
    return [
        make_fill(request_id, user_id, 'YES', answer_id, -pairs * prob, -pairs, prob, prob, 0.0, no_fees(), is_redemption=True),
        make_fill(request_id, user_id, 'NO', answer_id, -pairs * (1 - prob), -pairs, prob, prob, 0.0, no_fees(), is_redemption=True),
    ]


def sell_shares(
    market: Market,
    user_id: str,
    holdings: Holdings,
    shares: float,
    outcome: Outcome,
    params: EngineParams,
    request_id: str,
    answer_id: Optional[str] = None,
    ctx: Optional[NumericContext] = None,
    fee_policy: Optional[FeePolicy] = None,
) -> SellResult:
    """
    Sell `shares` of `outcome`. Pairs the user also holds on the opposite side
    are redeemed first; only the rest is priced by the market.
    """
    ctx = ctx or NumericContext.from_params(params)
    fee_policy = fee_policy or get_fee_policy(params)
    validate_amount(shares, 'shares')
    if shares > holdings[outcome] + ctx.epsilon:
        raise InvalidAmount(f"Cannot sell {shares} {outcome} shares; user {user_id} holds {holdings[outcome]}")

    kind = market['kind']
    if kind == 'BINARY' or kind == 'PSEUDO_NUMERIC' or kind == 'STONK':
        if answer_id is not None:
            raise ValueError(f"Market {market['id']} has no answers; got answer_id={answer_id}")
        pool = market['pool']
    elif kind == 'MULTIPLE_CHOICE':
        if answer_id is None:
            raise ValueError(f"Market {market['id']} requires an answer_id")
        pool = get_answer(market, answer_id)['pool']
    else:
        assert_never(kind)

    fills = redeem_shares(user_id, holdings, get_cpmm_probability(pool), request_id, answer_id, shares, ctx.epsilon)
    redeemed = -fills[0]['shares'] if fills else 0.0
    rest = shares - redeemed

    if rest > ctx.epsilon:
        if kind == 'MULTIPLE_CHOICE' and market['should_answers_sum_to_one']:
            result = calculate_multi_arbitrage_sale(
                market, answer_id, outcome, rest, user_id, request_id, params, ctx, fee_policy
            )
            fills += result['fills']
            market = result['market']
        else:
            sale = calculate_cpmm_sale(pool, rest, outcome, params, ctx, fee_policy, kind)
            fills.append(make_fill(
                request_id, user_id, outcome, answer_id, -sale['amount'], -rest,
                sale['prob_before'], sale['prob_after'], sale['fee'], sale['fees'],
            ))
            market = replace_pools(market, {answer_id: sale['new_pool']})

    proceeds = -sum(f['amount'] for f in fills)
    logger.info(
        f"User {user_id} sold {shares:.6f} {outcome} on market {market['id']}"
        f" ({redeemed:.6f} redeemed against {opposite(outcome)}) for {proceeds:.6f}"
    )
    return {'fills': fills, 'market': market, 'proceeds': proceeds, 'redeemed': redeemed}
