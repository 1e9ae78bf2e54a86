from typing_extensions import TypedDict, Literal, assert_never
from typing import List, Dict, Optional, Union
import copy

Outcome = Literal['YES', 'NO']
ContractKind = Literal['BINARY', 'PSEUDO_NUMERIC', 'STONK', 'MULTIPLE_CHOICE']

class Pool(TypedDict):
    yes_shares: float
    no_shares: float
    p: float  # weight; probability == p when yes_shares == no_shares
    total_liquidity_shares: float
    subsidy: float  # unredeemed subsidy held outside the reserves

class Answer(TypedDict):
    id: str
    index: int
    text: str
    pool: Pool

class BinaryMarket(TypedDict):
    kind: Literal['BINARY']
    id: str
    creator_id: str
    pool: Pool

class PseudoNumericMarket(TypedDict):
    kind: Literal['PSEUDO_NUMERIC']
    id: str
    creator_id: str
    pool: Pool
    min: float
    max: float
    is_log_scale: bool

class StonkMarket(TypedDict):
    kind: Literal['STONK']
    id: str
    creator_id: str
    pool: Pool

class MultipleChoiceMarket(TypedDict):
    kind: Literal['MULTIPLE_CHOICE']
    id: str
    creator_id: str
    answers: List[Answer]
    should_answers_sum_to_one: bool

SinglePoolMarket = Union[BinaryMarket, PseudoNumericMarket, StonkMarket]
Market = Union[BinaryMarket, PseudoNumericMarket, StonkMarket, MultipleChoiceMarket]

class FeeSplit(TypedDict):
    platform_fee: float
    creator_fee: float
    liquidity_fee: float

class LimitOrder(TypedDict):
    id: str
    user_id: str
    outcome: Outcome
    answer_id: Optional[str]
    limit_prob: float
    order_amount: float
    remaining_amount: float
    filled_amount: float
    filled_shares: float
    created_at: int
    expires_at: Optional[int]
    is_cancelled: bool

class BetRequest(TypedDict):
    id: str
    user_id: str
    outcome: Outcome
    amount: float
    limit_prob: Optional[float]
    expires_at: Optional[int]
    answer_id: Optional[str]
    created_at: int

class Fill(TypedDict):
    request_id: str
    user_id: str
    outcome: Outcome
    answer_id: Optional[str]
    amount: float  # negative for sales and refunds
    shares: float  # negative when shares leave the user
    prob_before: float
    prob_after: float
    fee: float
    fees: FeeSplit
    matched_order_id: Optional[str]
    is_maker: bool
    is_redemption: bool

class OrderDiff(TypedDict):
    order: LimitOrder
    fills: List[Fill]
    status: Literal['partial', 'filled', 'cancelled', 'expired']

class TradeResult(TypedDict):
    fills: List[Fill]
    market: Market
    order_diffs: List[OrderDiff]
    new_resting_orders: List[LimitOrder]

class LiquidityProvision(TypedDict):
    user_id: str
    answer_id: Optional[str]
    amount: float  # pool delta in currency; negative for removals
    lp_shares: float  # negative for removals
    timestamp: int

class SimpleResolution(TypedDict):
    kind: Literal['YES', 'NO', 'CANCEL']

class MktResolution(TypedDict):
    kind: Literal['MKT']
    probability: float

class ChooseOneResolution(TypedDict):
    kind: Literal['CHOOSE_ONE']
    answer_id: str

class ChooseMultipleResolution(TypedDict):
    kind: Literal['CHOOSE_MULTIPLE']
    weights: Dict[str, float]

BinaryResolution = Union[SimpleResolution, MktResolution]

class PerAnswerResolution(TypedDict):
    kind: Literal['PER_ANSWER']
    resolutions: Dict[str, BinaryResolution]

Resolution = Union[SimpleResolution, MktResolution, ChooseOneResolution, ChooseMultipleResolution, PerAnswerResolution]

class Payout(TypedDict):
    user_id: str
    amount: float
    kind: Literal['bettor', 'liquidity_provider']


def opposite(outcome: Outcome) -> Outcome:
    if outcome == 'YES':
        return 'NO'
    if outcome == 'NO':
        return 'YES'
    raise ValueError(f"Invalid outcome: {outcome}")

def init_pool(ante: float, initial_prob: float = 0.5) -> Pool:
    """
    Seed a pool with `ante` of each share. With equal reserves the
    probability equals the weight, so the weight is the initial probability
    and k == ante.
    """
    if ante <= 0:
        raise ValueError("ante must be >0")
    if not (0 < initial_prob < 1):
        raise ValueError("initial_prob must be in (0, 1)")
    return {
        'yes_shares': float(ante),
        'no_shares': float(ante),
        'p': float(initial_prob),
        'total_liquidity_shares': float(ante),
        'subsidy': 0.0,
    }

def init_binary_market(market_id: str, creator_id: str, ante: float, initial_prob: float = 0.5) -> BinaryMarket:
    return {'kind': 'BINARY', 'id': market_id, 'creator_id': creator_id, 'pool': init_pool(ante, initial_prob)}

def init_pseudo_numeric_market(
    market_id: str,
    creator_id: str,
    ante: float,
    min_value: float,
    max_value: float,
    is_log_scale: bool = False,
    initial_prob: float = 0.5,
) -> PseudoNumericMarket:
    if max_value <= min_value:
        raise ValueError("max must be greater than min")
    return {
        'kind': 'PSEUDO_NUMERIC',
        'id': market_id,
        'creator_id': creator_id,
        'pool': init_pool(ante, initial_prob),
        'min': float(min_value),
        'max': float(max_value),
        'is_log_scale': is_log_scale,
    }

def init_stonk_market(market_id: str, creator_id: str, ante: float) -> StonkMarket:
    return {'kind': 'STONK', 'id': market_id, 'creator_id': creator_id, 'pool': init_pool(ante, 0.5)}

def init_multi_market(
    market_id: str,
    creator_id: str,
    answer_texts: List[str],
    ante: float,
    should_answers_sum_to_one: bool = True,
) -> MultipleChoiceMarket:
    """
    Split the ante evenly across answers. Sum-to-one answers start at 1/n,
    independent answers at 0.5.
    """
    n = len(answer_texts)
    if n < 2:
        raise ValueError("Multiple choice markets need at least two answers")
    initial_prob = 1.0 / n if should_answers_sum_to_one else 0.5
    answers: List[Answer] = []
    for index, text in enumerate(answer_texts):
        answers.append({
            'id': f"{market_id}-{index}",
            'index': index,
            'text': text,
            'pool': init_pool(ante / n, initial_prob),
        })
    return {
        'kind': 'MULTIPLE_CHOICE',
        'id': market_id,
        'creator_id': creator_id,
        'answers': answers,
        'should_answers_sum_to_one': should_answers_sum_to_one,
    }

def get_answer(market: MultipleChoiceMarket, answer_id: str) -> Answer:
    for answer in market['answers']:
        if answer['id'] == answer_id:
            return answer
    raise ValueError(f"Answer not found: {answer_id}")

def get_market_pools(market: Market) -> Dict[Optional[str], Pool]:
    """Pools keyed by answer id (None for single-pool markets)."""
    kind = market['kind']
    if kind == 'BINARY' or kind == 'PSEUDO_NUMERIC' or kind == 'STONK':
        return {None: market['pool']}
    elif kind == 'MULTIPLE_CHOICE':
        return {answer['id']: answer['pool'] for answer in market['answers']}
    else:
        assert_never(kind)

def get_market_pool(market: Market, answer_id: Optional[str] = None) -> Pool:
    pools = get_market_pools(market)
    if answer_id not in pools:
        if market['kind'] == 'MULTIPLE_CHOICE':
            raise ValueError(f"Answer not found: {answer_id}")
        raise ValueError(f"Market {market['id']} has no answers; got answer_id={answer_id}")
    return pools[answer_id]

def replace_pools(market: Market, pools: Dict[Optional[str], Pool]) -> Market:
    """New market value with the given pools swapped in."""
    new_market = copy.deepcopy(market)
    kind = new_market['kind']
    if kind == 'BINARY' or kind == 'PSEUDO_NUMERIC' or kind == 'STONK':
        if None in pools:
            new_market['pool'] = dict(pools[None])
    elif kind == 'MULTIPLE_CHOICE':
        for answer in new_market['answers']:
            if answer['id'] in pools:
                answer['pool'] = dict(pools[answer['id']])
    else:
        assert_never(kind)
    return new_market

def create_ante_provisions(market: Market, timestamp: int) -> List[LiquidityProvision]:
    """Provisions recording the creator's ante, one per pool. Call on a freshly
    initialized market, where each pool's liquidity shares equal its ante.
    """
    provisions: List[LiquidityProvision] = []
    for answer_id, pool in get_market_pools(market).items():
        provisions.append({
            'user_id': market['creator_id'],
            'answer_id': answer_id,
            'amount': pool['total_liquidity_shares'],
            'lp_shares': pool['total_liquidity_shares'],
            'timestamp': timestamp,
        })
    return provisions
