import pytest
from decimal import Decimal

from market_engine.engine.fees import (
    FlatFeePolicy,
    ProbabilityMoveFeePolicy,
    add_fees,
    get_fee_policy,
    no_fees,
    scale_fees,
    split_fees,
)
from market_engine.engine.params import get_default_engine_params

@pytest.fixture
def policy() -> ProbabilityMoveFeePolicy:
    return ProbabilityMoveFeePolicy(base_rate=0.01, move_rate=0.02, max_rate=0.1)

def test_split_binary():
    fees = split_fees(1.0, 'BINARY')
    assert fees == {'platform_fee': 0.5, 'creator_fee': 0.5, 'liquidity_fee': 0.0}

def test_split_stonk_goes_to_platform():
    fees = split_fees(2.5, 'STONK')
    assert fees == {'platform_fee': 2.5, 'creator_fee': 0.0, 'liquidity_fee': 0.0}

def test_split_multiple_choice():
    fees = split_fees(1.0, 'MULTIPLE_CHOICE')
    assert fees['platform_fee'] == pytest.approx(0.4)
    assert fees['creator_fee'] == pytest.approx(0.4)
    assert fees['liquidity_fee'] == pytest.approx(0.2)

@pytest.mark.parametrize('contract_type', ['BINARY', 'PSEUDO_NUMERIC', 'STONK', 'MULTIPLE_CHOICE'])
@pytest.mark.parametrize('fee_total', [0.1234567, 3.0, 1e-7, 999.999999])
def test_split_parts_sum_to_total(contract_type, fee_total):
    fees = split_fees(fee_total, contract_type)
    parts = sum(Decimal(str(v)) for v in fees.values())
    assert parts == Decimal(str(fee_total))
    assert all(v >= 0 for v in fees.values())

def test_split_is_deterministic():
    assert split_fees(0.777777, 'MULTIPLE_CHOICE') == split_fees(0.777777, 'MULTIPLE_CHOICE')

def test_split_rejects_negative_fee():
    with pytest.raises(ValueError):
        split_fees(-0.01, 'BINARY')

def test_no_move_charges_base_rate(policy):
    assert policy.rate(0.5, 0.5) == pytest.approx(0.01)

def test_rate_grows_with_move(policy):
    assert policy.rate(0.5, 0.6) > policy.rate(0.5, 0.55) > policy.rate(0.5, 0.5)
    # Symmetric in direction
    assert policy.rate(0.5, 0.4) == pytest.approx(policy.rate(0.4, 0.5))

def test_rate_steeper_near_extremes(policy):
    assert policy.rate(0.94, 0.99) > policy.rate(0.5, 0.55)

def test_rate_capped(policy):
    assert policy.rate(0.01, 0.99) == 0.1

def test_invalid_policy_rates():
    with pytest.raises(ValueError):
        ProbabilityMoveFeePolicy(base_rate=0.2, move_rate=0.0, max_rate=0.1)
    with pytest.raises(ValueError):
        ProbabilityMoveFeePolicy(base_rate=0.01, move_rate=-1.0, max_rate=0.1)
    with pytest.raises(ValueError):
        FlatFeePolicy(-0.5)

def test_flat_policy():
    assert FlatFeePolicy(0.03).rate(0.1, 0.9) == 0.03
    assert FlatFeePolicy().rate(0.1, 0.9) == 0.0

def test_get_fee_policy_uses_params():
    params = get_default_engine_params()
    params['fee_base_rate'] = 0.02
    params['fee_max_rate'] = 0.05
    policy = get_fee_policy(params)
    assert policy.rate(0.5, 0.5) == pytest.approx(0.02)
    assert policy.rate(0.01, 0.99) == 0.05

def test_fee_helpers():
    a = {'platform_fee': 1.0, 'creator_fee': 2.0, 'liquidity_fee': 0.5}
    assert add_fees(a, no_fees()) == a
    assert scale_fees(a, 0.5) == {'platform_fee': 0.5, 'creator_fee': 1.0, 'liquidity_fee': 0.25}
