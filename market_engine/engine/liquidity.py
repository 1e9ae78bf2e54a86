import logging
from typing import Dict, List, Optional
from typing_extensions import TypedDict, Literal

from market_engine.errors import InsufficientLiquidity
from market_engine.utils import NumericContext, floating_greater, validate_amount
from .amm_math import add_cpmm_liquidity, check_reserves, get_cpmm_k, get_cpmm_probability, validate_pool
from .fees import no_fees
from .lob_matching import make_fill
from .params import EngineParams
from .state import Fill, LiquidityProvision, Pool

logger = logging.getLogger(__name__)


class LiquidityResult(TypedDict):
    new_pool: Pool
    lp_share_delta: float
    reserves_returned: Dict[str, float]
    fills: List[Fill]  # shares handed back to the provider on removal
    provision: LiquidityProvision


def _liquidity_request_id(user_id: str, timestamp: int) -> str:
    return f"liquidity-{user_id}-{timestamp}"


def add_liquidity(
    pool: Pool,
    amount: float,
    user_id: str,
    timestamp: int,
    ctx: NumericContext,
    answer_id: Optional[str] = None,
) -> LiquidityResult:
    """
    Add `amount` to both reserves at an unchanged probability and mint LP
    shares in proportion to the growth of the invariant k.
    """
    validate_amount(amount)
    validate_pool(pool)
    new_pool = add_cpmm_liquidity(pool, amount)
    # Measure both sides of the growth with the new weight
    old_k = get_cpmm_k({**pool, 'p': new_pool['p']}, ctx)
    new_k = get_cpmm_k(new_pool, ctx)
    total = pool['total_liquidity_shares']
    if total <= 0:
        minted = new_k
    else:
        minted = total * (new_k / old_k - 1)
    new_pool['total_liquidity_shares'] = total + minted

    logger.debug(f"User {user_id} added {amount:.6f} liquidity, minted {minted:.6f} LP shares")
    return {
        'new_pool': new_pool,
        'lp_share_delta': minted,
        'reserves_returned': {'YES': 0.0, 'NO': 0.0},
        'fills': [],
        'provision': {
            'user_id': user_id,
            'answer_id': answer_id,
            'amount': amount,
            'lp_shares': minted,
            'timestamp': timestamp,
        },
    }


def add_subsidy(
    pool: Pool,
    amount: float,
    user_id: str,
    timestamp: int,
    answer_id: Optional[str] = None,
) -> LiquidityResult:
    """
    Hold `amount` beside the reserves for the pool's current LPs. It does not
    move the price or mint LP shares; it is paid out with the pool's value.
    """
    validate_amount(amount)
    validate_pool(pool)
    if pool['total_liquidity_shares'] <= 0:
        raise InsufficientLiquidity("Cannot subsidize a pool with no outstanding LP shares")
    new_pool: Pool = {**pool, 'subsidy': pool['subsidy'] + amount}

    logger.debug(f"User {user_id} subsidized pool with {amount:.6f}")
    return {
        'new_pool': new_pool,
        'lp_share_delta': 0.0,
        'reserves_returned': {'YES': 0.0, 'NO': 0.0},
        'fills': [],
        'provision': {
            'user_id': user_id,
            'answer_id': answer_id,
            'amount': amount,
            'lp_shares': 0.0,
            'timestamp': timestamp,
        },
    }


def remove_liquidity(
    pool: Pool,
    lp_shares: float,
    user_id: str,
    timestamp: int,
    params: EngineParams,
    answer_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> LiquidityResult:
    """
    Burn `lp_shares` for the same fraction of each reserve and of the
    subsidy. The subsidy share comes back as YES/NO pairs, so the probability
    does not move.

    The returned shares are recorded as fills priced at the current
    probability, and the provision records the same value as a negative
    amount. Held shares pay out like any bet; on cancel the two cancel out.
    """
    validate_amount(lp_shares, 'lp_shares')
    validate_pool(pool)
    total = pool['total_liquidity_shares']
    if floating_greater(lp_shares, total, params['epsilon']):
        raise InsufficientLiquidity(f"Cannot burn {lp_shares} LP shares; only {total} outstanding")
    fraction = min(lp_shares / total, 1.0)
    subsidy = pool['subsidy'] * fraction
    new_pool: Pool = {
        **pool,
        'yes_shares': pool['yes_shares'] * (1 - fraction),
        'no_shares': pool['no_shares'] * (1 - fraction),
        'total_liquidity_shares': total - lp_shares,
        'subsidy': pool['subsidy'] - subsidy,
    }
    check_reserves(new_pool, params)
    returned = {
        'YES': pool['yes_shares'] * fraction + subsidy,
        'NO': pool['no_shares'] * fraction + subsidy,
    }

    prob = get_cpmm_probability(pool)
    request_id = request_id or _liquidity_request_id(user_id, timestamp)
    fills = [
        make_fill(request_id, user_id, 'YES', answer_id, returned['YES'] * prob, returned['YES'], prob, prob, 0.0, no_fees()),
        make_fill(request_id, user_id, 'NO', answer_id, returned['NO'] * (1 - prob), returned['NO'], prob, prob, 0.0, no_fees()),
    ]
    value = sum(f['amount'] for f in fills)

    logger.debug(f"User {user_id} burned {lp_shares:.6f} LP shares for {returned['YES']:.6f} YES / {returned['NO']:.6f} NO")
    return {
        'new_pool': new_pool,
        'lp_share_delta': -lp_shares,
        'reserves_returned': returned,
        'fills': fills,
        'provision': {
            'user_id': user_id,
            'answer_id': answer_id,
            'amount': -value,
            'lp_shares': -lp_shares,
            'timestamp': timestamp,
        },
    }


def apply_liquidity(
    pool: Pool,
    amount: float,
    direction: Literal['add', 'remove', 'subsidize'],
    user_id: str,
    timestamp: int,
    params: EngineParams,
    ctx: NumericContext,
    answer_id: Optional[str] = None,
) -> LiquidityResult:
    """`amount` is currency when adding or subsidizing and LP shares when removing."""
    if direction == 'add':
        return add_liquidity(pool, amount, user_id, timestamp, ctx, answer_id)
    if direction == 'remove':
        return remove_liquidity(pool, amount, user_id, timestamp, params, answer_id)
    if direction == 'subsidize':
        return add_subsidy(pool, amount, user_id, timestamp, answer_id)
    raise ValueError(f"Invalid liquidity direction: {direction}")


def get_lp_contributions(provisions: List[LiquidityProvision]) -> Dict[str, float]:
    """Cumulative net contribution per user."""
    contributions: Dict[str, float] = {}
    for provision in provisions:
        user_id = provision['user_id']
        contributions[user_id] = contributions.get(user_id, 0.0) + provision['amount']
    return contributions


def get_lp_shares_by_user(provisions: List[LiquidityProvision], answer_id: Optional[str] = None) -> Dict[str, float]:
    """Outstanding LP shares per user in the pool identified by `answer_id`."""
    shares: Dict[str, float] = {}
    for provision in provisions:
        if provision['answer_id'] != answer_id:
            continue
        user_id = provision['user_id']
        shares[user_id] = shares.get(user_id, 0.0) + provision['lp_shares']
    return shares
