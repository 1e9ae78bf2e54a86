# The complete parameter set lives in market_engine.config
from market_engine.config import EngineParams, get_default_engine_params

ROOT_METHODS = ('newton', 'bisection')


def validate_params(params: EngineParams) -> None:
    if not (0 < params['epsilon'] < 1e-3):
        raise ValueError("epsilon must be in (0, 1e-3)")
    if not (0 < params['min_prob'] < params['max_prob'] < 1):
        raise ValueError("Probability bounds must satisfy 0 < min_prob < max_prob < 1")
    if params['min_reserve'] < 0:
        raise ValueError("min_reserve must be non-negative")
    if params['max_solver_iterations'] <= 0:
        raise ValueError("max_solver_iterations must be positive")
    if params['root_method'] not in ROOT_METHODS:
        raise ValueError(f"root_method must be one of {ROOT_METHODS}")
    if params['working_dps'] < 15:
        raise ValueError("working_dps must be at least 15")
    if params['fee_base_rate'] < 0 or params['fee_move_rate'] < 0:
        raise ValueError("Fee rates must be non-negative")
    if not (params['fee_base_rate'] <= params['fee_max_rate'] < 1):
        raise ValueError("fee_max_rate must be in [fee_base_rate, 1)")
    if not (0 <= params['sale_fee_fraction'] <= 1):
        raise ValueError("sale_fee_fraction must be in [0, 1]")
