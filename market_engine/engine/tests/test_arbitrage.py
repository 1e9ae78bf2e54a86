import numpy as np
import pytest

from market_engine.engine.amm_math import get_market_probabilities
from market_engine.engine.arbitrage import (
    calculate_multi_arbitrage_bet,
    calculate_multi_arbitrage_sale,
    redistribute_probabilities,
    solve_monotone,
)
from market_engine.engine.params import get_default_engine_params
from market_engine.engine.sales import get_holdings
from market_engine.engine.state import init_multi_market
from market_engine.errors import ArbitrageSolveFailed, InconsistentState, InvariantError
from market_engine.utils import NumericContext

@pytest.fixture
def params():
    return get_default_engine_params()

@pytest.fixture
def ctx(params):
    return NumericContext.from_params(params)

@pytest.fixture
def market():
    return init_multi_market('m', 'creator', ['Red', 'Green', 'Blue'], 300.0)

def test_solve_monotone_converges(ctx):
    result = solve_monotone(lambda x: x * x, 2.0, 0.0, 2.0, ctx)
    assert result['status'] == 'converged'
    assert result['value'] == pytest.approx(np.sqrt(2.0))
    assert result['iterations'] <= ctx.max_iterations

def test_solve_monotone_reports_cap():
    result = solve_monotone(lambda x: x * x, 2.0, 0.0, 2.0, NumericContext(max_iterations=3))
    assert result['status'] == 'not_converged'
    assert result['iterations'] == 3
    assert abs(result['residual']) > 0

def test_redistribute_proportional(ctx):
    probs = np.array([0.5, 0.3, 0.2])
    result = redistribute_probabilities(probs, 0.5, np.full(3, 0.01), probs, ctx)
    assert result['status'] == 'converged'
    np.testing.assert_allclose(result['value'], [0.25, 0.15, 0.1])

def test_redistribute_clamps_and_refills(ctx):
    probs = np.array([0.6, 0.02])
    result = redistribute_probabilities(probs, 0.2, np.full(2, 0.01), probs, ctx)
    assert result['status'] == 'converged'
    np.testing.assert_allclose(result['value'], [0.19, 0.01])

def test_redistribute_infeasible(ctx):
    probs = np.array([0.6, 0.02])
    result = redistribute_probabilities(probs, 1.5, np.full(2, 0.01), probs, ctx)
    assert result['status'] == 'not_converged'

def test_yes_bet_keeps_sum_to_one(market, params, ctx):
    result = calculate_multi_arbitrage_bet(market, 'm-0', 'YES', 10.0, 'alice', 'r1', params, ctx)
    probs = get_market_probabilities(result['market'])
    assert sum(probs.values()) == pytest.approx(1.0, abs=1e-9)
    assert probs['m-0'] > 1 / 3
    assert probs['m-1'] == pytest.approx(probs['m-2'])
    assert sum(f['amount'] for f in result['fills']) == pytest.approx(10.0, rel=1e-6)
    assert result['remaining'] == pytest.approx(0.0, abs=1e-6)

    holdings = get_holdings(result['fills'], 'alice', 'm-0')
    assert holdings['YES'] > 10.0
    assert any(f['is_redemption'] for f in result['fills'])
    # Input market untouched
    assert get_market_probabilities(market)['m-0'] == pytest.approx(1 / 3)

def test_no_bet_keeps_sum_to_one(market, params, ctx):
    result = calculate_multi_arbitrage_bet(market, 'm-2', 'NO', 20.0, 'alice', 'r1', params, ctx)
    probs = get_market_probabilities(result['market'])
    assert sum(probs.values()) == pytest.approx(1.0, abs=1e-9)
    assert probs['m-2'] < 1 / 3
    assert sum(f['amount'] for f in result['fills']) == pytest.approx(20.0, rel=1e-6)
    assert get_holdings(result['fills'], 'alice', 'm-2')['NO'] > 20.0

def test_inconsistent_market_rejected(market, params, ctx):
    market['answers'][0]['pool']['p'] = 0.6
    with pytest.raises(InconsistentState):
        calculate_multi_arbitrage_bet(market, 'm-0', 'YES', 10.0, 'alice', 'r1', params, ctx)

def test_iteration_cap_raises(market, params):
    ctx = NumericContext(max_iterations=1)
    with pytest.raises(ArbitrageSolveFailed) as exc:
        calculate_multi_arbitrage_bet(market, 'm-0', 'YES', 10.0, 'alice', 'r1', params, ctx)
    assert isinstance(exc.value, InvariantError)
    assert exc.value.operator_visible
    assert exc.value.iterations == 1

def test_sale_reverses_purchase(market, params, ctx):
    bought = calculate_multi_arbitrage_bet(market, 'm-0', 'YES', 10.0, 'alice', 'r1', params, ctx)
    shares = get_holdings(bought['fills'], 'alice', 'm-0')['YES']
    sold = calculate_multi_arbitrage_sale(bought['market'], 'm-0', 'YES', shares, 'alice', 'r2', params, ctx)

    probs = get_market_probabilities(sold['market'])
    assert sum(probs.values()) == pytest.approx(1.0, abs=1e-9)
    assert probs['m-0'] < get_market_probabilities(bought['market'])['m-0']
    assert 0 < sold['proceeds'] < 10.0
    assert sold['proceeds'] == pytest.approx(-sum(f['amount'] for f in sold['fills']))
    remaining = get_holdings(bought['fills'] + sold['fills'], 'alice', 'm-0')['YES']
    assert remaining == pytest.approx(0.0, abs=1e-6)

def resting_yes(order_id, user_id, answer_id, limit_prob, amount):
    return {
        'id': order_id, 'user_id': user_id, 'outcome': 'YES', 'answer_id': answer_id,
        'limit_prob': limit_prob, 'order_amount': amount, 'remaining_amount': amount,
        'filled_amount': 0.0, 'filled_shares': 0.0, 'created_at': 0, 'expires_at': None,
        'is_cancelled': False,
    }

def test_other_answers_fill_from_book_first(market, params, ctx):
    orders = [resting_yes('o1', 'carol', 'm-1', 0.34, 2.0)]
    with_book = calculate_multi_arbitrage_bet(market, 'm-0', 'YES', 10.0, 'alice', 'r1', params, ctx, orders=orders)
    pool_only = calculate_multi_arbitrage_bet(market, 'm-0', 'YES', 10.0, 'alice', 'r1', params, ctx)

    maker_fills = [f for f in with_book['fills'] if f['is_maker']]
    assert [(f['user_id'], f['answer_id'], f['outcome']) for f in maker_fills] == [('carol', 'm-1', 'YES')]
    [order] = with_book['orders']
    assert order['remaining_amount'] == pytest.approx(0.0, abs=1e-9)
    assert orders[0]['remaining_amount'] == 2.0

    probs = get_market_probabilities(with_book['market'])
    assert sum(probs.values()) == pytest.approx(1.0, abs=1e-9)
    alice_spend = sum(f['amount'] for f in with_book['fills'] if f['user_id'] == 'alice')
    assert alice_spend == pytest.approx(10.0, rel=1e-6)
    # The whole better-priced order is taken; what the redemption cannot pair stays with alice
    assert get_holdings(with_book['fills'], 'alice', 'm-1')['NO'] > 1.0
    assert get_holdings(with_book['fills'], 'alice', 'm-2')['NO'] == pytest.approx(0.0, abs=1e-6)
    assert not any(f['is_maker'] for f in pool_only['fills'])

def test_other_answers_respect_maker_balance(market, params, ctx):
    orders = [resting_yes('o1', 'carol', 'm-1', 0.34, 2.0)]
    result = calculate_multi_arbitrage_bet(
        market, 'm-0', 'YES', 10.0, 'alice', 'r1', params, ctx, orders=orders, balances={'carol': 0.0},
    )
    assert not any(f['is_maker'] for f in result['fills'])
    assert result['cancelled_ids'] == ['o1']
