import logging
import math
from typing import Dict, List, Optional, Tuple
from typing_extensions import assert_never

from market_engine.errors import InconsistentState, InvalidResolution, ProbabilityOutOfBounds
from market_engine.utils import EPSILON
from .liquidity import get_lp_shares_by_user
from .state import (
    BinaryResolution,
    Fill,
    LiquidityProvision,
    Market,
    MktResolution,
    Payout,
    PseudoNumericMarket,
    Resolution,
    get_market_pools,
)

logger = logging.getLogger(__name__)

# None marks a cancelled pool
ResolutionProbabilities = Dict[Optional[str], Optional[float]]


def pseudo_numeric_resolution(market: PseudoNumericMarket, value: float) -> MktResolution:
    """Map a numeric outcome onto the market's [min, max] range as a probability."""
    if not math.isfinite(value):
        raise InvalidResolution(f"Resolution value must be finite, got {value!r}")
    low = market['min']
    high = market['max']
    value = min(max(value, low), high)
    if market['is_log_scale']:
        probability = math.log10(value - low + 1) / math.log10(high - low + 1)
    else:
        probability = (value - low) / (high - low)
    return {'kind': 'MKT', 'probability': min(max(probability, 0.0), 1.0)}


def _check_binary_resolution(resolution: BinaryResolution, allow_yes_no: bool = True) -> None:
    kind = resolution.get('kind')
    if kind == 'MKT':
        probability = resolution.get('probability')
        if probability is None or not (0 <= probability <= 1):
            raise ProbabilityOutOfBounds(f"MKT resolution probability must be in [0, 1], got {probability!r}")
    elif kind in ('YES', 'NO'):
        if not allow_yes_no:
            raise InvalidResolution(f"Resolution {kind} is not allowed for this market")
    elif kind != 'CANCEL':
        raise InvalidResolution(f"Invalid resolution: {kind}")


def validate_resolution(market: Market, resolution: Resolution) -> None:
    kind = market['kind']
    if kind == 'BINARY' or kind == 'PSEUDO_NUMERIC':
        _check_binary_resolution(resolution)
    elif kind == 'STONK':
        _check_binary_resolution(resolution, allow_yes_no=False)
    elif kind == 'MULTIPLE_CHOICE':
        answer_ids = {a['id'] for a in market['answers']}
        res_kind = resolution.get('kind')
        if res_kind == 'CANCEL':
            return
        if market['should_answers_sum_to_one']:
            if res_kind == 'CHOOSE_ONE':
                if resolution['answer_id'] not in answer_ids:
                    raise InvalidResolution(f"Unknown answer: {resolution['answer_id']}")
            elif res_kind == 'CHOOSE_MULTIPLE':
                weights = resolution['weights']
                unknown = set(weights) - answer_ids
                if unknown:
                    raise InvalidResolution(f"Unknown answers: {sorted(unknown)}")
                if any(not (0 <= w <= 1) for w in weights.values()):
                    raise ProbabilityOutOfBounds("CHOOSE_MULTIPLE weights must be in [0, 1]")
                if abs(sum(weights.values()) - 1) > EPSILON:
                    raise InvalidResolution(f"CHOOSE_MULTIPLE weights sum to {sum(weights.values())}, not 1")
            else:
                raise InvalidResolution(f"Resolution {res_kind} is not allowed for a sum-to-one market")
        else:
            if res_kind != 'PER_ANSWER':
                raise InvalidResolution(f"Resolution {res_kind} is not allowed for independent answers")
            missing = answer_ids - set(resolution['resolutions'])
            if missing:
                raise InvalidResolution(f"Missing resolutions for answers: {sorted(missing)}")
            for answer_id, answer_resolution in resolution['resolutions'].items():
                if answer_id not in answer_ids:
                    raise InvalidResolution(f"Unknown answer: {answer_id}")
                _check_binary_resolution(answer_resolution)
    else:
        assert_never(kind)


def _binary_probability(resolution: BinaryResolution) -> Optional[float]:
    kind = resolution['kind']
    if kind == 'YES':
        return 1.0
    if kind == 'NO':
        return 0.0
    if kind == 'MKT':
        return float(resolution['probability'])
    return None


def get_resolution_probabilities(market: Market, resolution: Resolution) -> ResolutionProbabilities:
    """Resolved YES probability per pool, keyed like get_market_pools."""
    validate_resolution(market, resolution)
    pool_ids = list(get_market_pools(market))
    res_kind = resolution['kind']
    if res_kind == 'CANCEL':
        return {pool_id: None for pool_id in pool_ids}
    if res_kind == 'CHOOSE_ONE':
        return {pool_id: 1.0 if pool_id == resolution['answer_id'] else 0.0 for pool_id in pool_ids}
    if res_kind == 'CHOOSE_MULTIPLE':
        return {pool_id: float(resolution['weights'].get(pool_id, 0.0)) for pool_id in pool_ids}
    if res_kind == 'PER_ANSWER':
        return {pool_id: _binary_probability(resolution['resolutions'][pool_id]) for pool_id in pool_ids}
    return {None: _binary_probability(resolution)}


def compute_payouts(
    market: Market,
    bets: List[Fill],
    provisions: List[LiquidityProvision],
    resolution: Resolution,
) -> List[Payout]:
    """
    Final payouts for a frozen market.

    Bettors get the resolved probability per YES share and its complement per
    NO share. Liquidity providers split each pool's value at the resolved
    probability, plus its subsidy, by LP share ownership. A cancelled pool
    refunds each user's net spend and each provider's net contribution,
    never below zero.
    """
    probabilities = get_resolution_probabilities(market, resolution)
    pools = get_market_pools(market)
    totals: Dict[Tuple[str, str], float] = {}
    refunds: Dict[Tuple[str, str], float] = {}

    def credit(target: Dict[Tuple[str, str], float], kind: str, user_id: str, amount: float) -> None:
        target[(kind, user_id)] = target.get((kind, user_id), 0.0) + amount

    for bet in bets:
        if bet['answer_id'] not in probabilities:
            raise InconsistentState(f"Bet on unknown answer {bet['answer_id']} in market {market['id']}")
        q = probabilities[bet['answer_id']]
        if q is None:
            credit(refunds, 'bettor', bet['user_id'], bet['amount'])
        elif bet['outcome'] == 'YES':
            credit(totals, 'bettor', bet['user_id'], bet['shares'] * q)
        else:
            credit(totals, 'bettor', bet['user_id'], bet['shares'] * (1 - q))

    for pool_id, pool in pools.items():
        q = probabilities[pool_id]
        if q is None:
            for provision in provisions:
                if provision['answer_id'] == pool_id:
                    credit(refunds, 'liquidity_provider', provision['user_id'], provision['amount'])
            continue
        total_shares = pool['total_liquidity_shares']
        if total_shares <= 0:
            continue
        value = q * pool['yes_shares'] + (1 - q) * pool['no_shares'] + pool['subsidy']
        for user_id, lp_shares in get_lp_shares_by_user(provisions, pool_id).items():
            credit(totals, 'liquidity_provider', user_id, value * lp_shares / total_shares)

    for user_id in sorted({user_id for _, user_id in refunds}):
        spent = refunds.get(('bettor', user_id), 0.0)
        contributed = refunds.get(('liquidity_provider', user_id), 0.0)
        # A withdrawal's negative provision is matched by the share fills it
        # handed back, so a shortfall on one side is taken from the other.
        if contributed < 0:
            spent, contributed = spent + contributed, 0.0
        elif spent < 0:
            spent, contributed = 0.0, contributed + spent
        credit(totals, 'bettor', user_id, max(spent, 0.0))
        credit(totals, 'liquidity_provider', user_id, max(contributed, 0.0))

    payouts: List[Payout] = [
        {'user_id': user_id, 'amount': amount, 'kind': kind}
        for (kind, user_id), amount in sorted(totals.items())
        if abs(amount) > EPSILON
    ]
    logger.info(
        f"Resolved market {market['id']} as {resolution['kind']}: "
        f"{len(payouts)} payouts totalling {sum(p['amount'] for p in payouts):.6f}"
    )
    return payouts
