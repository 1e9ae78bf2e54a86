import copy
import pytest
from typing import Optional

from market_engine.engine.amm_math import get_cpmm_probability, get_market_probabilities
from market_engine.engine.orders import apply_orders, group_requests, place_bet
from market_engine.engine.params import EngineParams, get_default_engine_params
from market_engine.engine.state import BetRequest, LimitOrder, init_binary_market, init_multi_market
from market_engine.errors import InsufficientBalance, InvalidAmount, ProbabilityOutOfBounds, StaleOrder

@pytest.fixture
def params() -> EngineParams:
    return get_default_engine_params()

@pytest.fixture
def market():
    return init_binary_market('m1', 'creator', 100.0)

def make_request(request_id: str, user_id: str, outcome: str, amount: float, created_at: int = 0,
                 limit_prob: Optional[float] = None, answer_id: Optional[str] = None) -> BetRequest:
    return {
        'id': request_id,
        'user_id': user_id,
        'outcome': outcome,
        'amount': amount,
        'limit_prob': limit_prob,
        'expires_at': None,
        'answer_id': answer_id,
        'created_at': created_at,
    }

def make_order(order_id: str, user_id: str, outcome: str, limit_prob: float, amount: float,
               expires_at: Optional[int] = None) -> LimitOrder:
    return {
        'id': order_id,
        'user_id': user_id,
        'outcome': outcome,
        'answer_id': None,
        'limit_prob': limit_prob,
        'order_amount': amount,
        'remaining_amount': amount,
        'filled_amount': 0.0,
        'filled_shares': 0.0,
        'created_at': 0,
        'expires_at': expires_at,
        'is_cancelled': False,
    }

def user_spend(fills, user_id):
    return sum(f['amount'] for f in fills if f['user_id'] == user_id)

def test_apply_orders_zero_requests(market, params):
    result = apply_orders(market, [], [], params)
    assert result == {'fills': [], 'market': market, 'order_diffs': [], 'new_resting_orders': []}

def test_market_buy_yes(market, params):
    result = place_bet(market, make_request('r1', 'alice', 'YES', 10.0), [], params)
    assert len(result['fills']) == 1
    fill = result['fills'][0]
    assert fill['request_id'] == 'r1'
    assert fill['amount'] == pytest.approx(10.0)
    assert fill['shares'] > 10.0
    assert 0.5 < get_cpmm_probability(result['market']['pool']) < 1
    assert result['new_resting_orders'] == []
    # Snapshot untouched
    assert market['pool']['yes_shares'] == 100.0

def test_limit_remainder_rests(market, params):
    result = place_bet(market, make_request('r1', 'alice', 'YES', 100.0, limit_prob=0.55), [], params)
    assert get_cpmm_probability(result['market']['pool']) == pytest.approx(0.55, abs=1e-9)
    [order] = result['new_resting_orders']
    spent = user_spend(result['fills'], 'alice')
    assert order['id'] == 'r1'
    assert order['limit_prob'] == 0.55
    assert order['remaining_amount'] == pytest.approx(100.0 - spent)
    assert order['filled_amount'] == pytest.approx(spent)
    assert order['filled_shares'] == pytest.approx(result['fills'][0]['shares'])
    assert not order['is_cancelled']

def test_limit_outside_bounds_rejected(market, params):
    with pytest.raises(ProbabilityOutOfBounds):
        place_bet(market, make_request('r1', 'alice', 'YES', 10.0, limit_prob=0.995), [], params)

def test_invalid_amount_rejected(market, params):
    with pytest.raises(InvalidAmount):
        place_bet(market, make_request('r1', 'alice', 'YES', -1.0), [], params)

def test_answer_id_on_binary_market_rejected(market, params):
    with pytest.raises(ValueError):
        place_bet(market, make_request('r1', 'alice', 'YES', 10.0, answer_id='m1-0'), [], params)

def test_taker_balance_checked(market, params):
    with pytest.raises(InsufficientBalance):
        place_bet(market, make_request('r1', 'alice', 'YES', 10.0), [], params, balances={'alice': 5.0})
    with pytest.raises(InvalidAmount):
        place_bet(market, make_request('r1', 'alice', 'YES', 10.0), [], params, balances={})

def test_stale_snapshot_rejected(market, params):
    order = make_order('o1', 'bob', 'NO', 0.4, 10.0)
    order['is_cancelled'] = True
    with pytest.raises(StaleOrder):
        place_bet(market, make_request('r1', 'alice', 'YES', 10.0), [order], params)

def test_expired_order_not_matched(market, params):
    order = make_order('o1', 'bob', 'NO', 0.4, 60.0, expires_at=5)
    result = place_bet(market, make_request('r1', 'alice', 'YES', 10.0, created_at=10), [order], params)
    assert all(f['matched_order_id'] is None for f in result['fills'])
    [diff] = result['order_diffs']
    assert diff['status'] == 'expired'
    assert diff['fills'] == []
    assert diff['order']['is_cancelled']
    assert not order['is_cancelled']

def test_partial_and_full_maker_fills(market, params):
    order = make_order('o1', 'bob', 'NO', 0.45, 55.0)
    partial = place_bet(market, make_request('r1', 'alice', 'YES', 20.0), [order], params)
    [diff] = partial['order_diffs']
    assert diff['status'] == 'partial'
    assert len(diff['fills']) == 1
    assert diff['fills'][0]['user_id'] == 'bob'
    assert diff['order']['remaining_amount'] < 55.0

    full = place_bet(market, make_request('r1', 'alice', 'YES', 100.0), [order], params)
    [diff] = full['order_diffs']
    assert diff['status'] == 'filled'
    assert diff['order']['remaining_amount'] == 0.0
    assert diff['order']['filled_shares'] == pytest.approx(100.0)

def test_maker_out_of_balance_cancelled(market, params):
    order = make_order('o1', 'bob', 'NO', 0.45, 55.0)
    result = place_bet(market, make_request('r1', 'alice', 'YES', 20.0), [order], params,
                       balances={'alice': 20.0, 'bob': 0.0})
    [diff] = result['order_diffs']
    assert diff['status'] == 'cancelled'
    assert all(not f['is_maker'] for f in result['fills'])

def test_batched_requests_split_pro_rata(market, params):
    batched = apply_orders(market, [
        make_request('r1', 'alice', 'YES', 10.0),
        make_request('r2', 'bob', 'YES', 30.0),
    ], [], params)
    single = place_bet(market, make_request('r3', 'carol', 'YES', 40.0), [], params)

    assert user_spend(batched['fills'], 'alice') == pytest.approx(10.0)
    assert user_spend(batched['fills'], 'bob') == pytest.approx(30.0)
    alice_shares = sum(f['shares'] for f in batched['fills'] if f['user_id'] == 'alice')
    bob_shares = sum(f['shares'] for f in batched['fills'] if f['user_id'] == 'bob')
    assert bob_shares == pytest.approx(3 * alice_shares)
    assert batched['market']['pool'] == pytest.approx(single['market']['pool'])

def test_group_requests_keeps_time_order():
    requests = [
        make_request('b', 'u1', 'YES', 1.0, created_at=2),
        make_request('a', 'u2', 'NO', 1.0, created_at=1),
        make_request('c', 'u3', 'YES', 1.0, created_at=3),
        make_request('d', 'u4', 'YES', 1.0, created_at=4, limit_prob=0.6),
    ]
    groups = group_requests(requests)
    assert [[r['id'] for r in g] for g in groups] == [['a'], ['b', 'c', 'd']]

@pytest.mark.parametrize('alice_first', [True, False])
def test_mixed_limits_share_one_solve(market, params, alice_first):
    alice = make_request('r1', 'alice', 'YES', 100.0, created_at=1 if alice_first else 2, limit_prob=0.55)
    bob = make_request('r2', 'bob', 'YES', 100.0, created_at=2 if alice_first else 1)
    result = apply_orders(market, [alice, bob], [], params)

    alice_fills = [f for f in result['fills'] if f['user_id'] == 'alice']
    bob_fills = [f for f in result['fills'] if f['user_id'] == 'bob']
    assert alice_fills and all(f['prob_after'] <= 0.55 + 1e-9 for f in alice_fills)
    # Up to alice's limit both buy side by side
    bob_below_limit = sum(f['amount'] for f in bob_fills if f['prob_after'] <= 0.55 + 1e-9)
    assert bob_below_limit == pytest.approx(user_spend(alice_fills, 'alice'))
    assert user_spend(bob_fills, 'bob') == pytest.approx(100.0)
    assert get_cpmm_probability(result['market']['pool']) > 0.55

    [order] = result['new_resting_orders']
    assert order['id'] == 'r1'
    assert order['remaining_amount'] == pytest.approx(100.0 - user_spend(alice_fills, 'alice'))

def test_mixed_limits_independent_of_arrival_order(market, params):
    def run(alice_at, bob_at):
        return apply_orders(market, [
            make_request('r1', 'alice', 'YES', 40.0, created_at=alice_at, limit_prob=0.6),
            make_request('r2', 'bob', 'YES', 20.0, created_at=bob_at, limit_prob=0.52),
        ], [], params)
    first = run(1, 2)
    second = run(2, 1)
    for user_id in ('alice', 'bob'):
        assert user_spend(first['fills'], user_id) == pytest.approx(user_spend(second['fills'], user_id))
    assert first['market']['pool'] == pytest.approx(second['market']['pool'])
    assert {o['id']: o['remaining_amount'] for o in first['new_resting_orders']} == pytest.approx(
        {o['id']: o['remaining_amount'] for o in second['new_resting_orders']}
    )

def test_later_request_matches_new_resting_order(market, params):
    result = apply_orders(market, [
        make_request('r1', 'alice', 'YES', 100.0, created_at=1, limit_prob=0.55),
        make_request('r2', 'bob', 'NO', 5.0, created_at=2),
    ], [], params)
    bob_fills = [f for f in result['fills'] if f['user_id'] == 'bob']
    assert bob_fills[0]['matched_order_id'] == 'r1'
    [order] = result['new_resting_orders']
    alice_maker = [f for f in result['fills'] if f['user_id'] == 'alice' and f['is_maker']]
    assert len(alice_maker) == 1
    assert order['filled_shares'] > alice_maker[0]['shares']
    assert order['remaining_amount'] == pytest.approx(100.0 - user_spend(result['fills'], 'alice'))

def test_deterministic(market, params):
    requests = [
        make_request('r1', 'alice', 'YES', 25.0, created_at=1, limit_prob=0.6),
        make_request('r2', 'bob', 'NO', 15.0, created_at=2),
    ]
    orders = [make_order('o1', 'carol', 'NO', 0.45, 20.0)]
    first = apply_orders(market, copy.deepcopy(requests), copy.deepcopy(orders), params)
    second = apply_orders(market, copy.deepcopy(requests), copy.deepcopy(orders), params)
    assert first == second

def test_independent_answers_trade_alone(params):
    market = init_multi_market('m2', 'creator', ['A', 'B', 'C'], 300.0, should_answers_sum_to_one=False)
    result = place_bet(market, make_request('r1', 'alice', 'YES', 10.0, answer_id='m2-1'), [], params)
    probs = get_market_probabilities(result['market'])
    assert probs['m2-0'] == pytest.approx(0.5)
    assert probs['m2-1'] > 0.5
    assert probs['m2-2'] == pytest.approx(0.5)
    assert result['fills'][0]['fees']['liquidity_fee'] > 0

def test_sum_to_one_answers_stay_balanced(params):
    market = init_multi_market('m3', 'creator', ['A', 'B', 'C'], 300.0)
    result = place_bet(market, make_request('r1', 'alice', 'YES', 10.0, answer_id='m3-0'), [], params)
    probs = get_market_probabilities(result['market'])
    assert sum(probs.values()) == pytest.approx(1.0, abs=1e-9)
    assert probs['m3-0'] > 1 / 3
    assert user_spend(result['fills'], 'alice') == pytest.approx(10.0, rel=1e-6)

def test_multi_answer_requires_answer_id(params):
    market = init_multi_market('m4', 'creator', ['A', 'B'], 100.0)
    with pytest.raises(ValueError):
        place_bet(market, make_request('r1', 'alice', 'YES', 10.0), [], params)
