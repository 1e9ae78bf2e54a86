from typing_extensions import TypedDict
import os
from dotenv import load_dotenv

ENV_PREFIX = 'MARKET_ENGINE_'


class EngineParams(TypedDict):
    epsilon: float
    min_prob: float
    max_prob: float
    min_reserve: float
    max_solver_iterations: int
    root_method: str  # 'newton' or 'bisection'
    working_dps: int
    fee_base_rate: float
    fee_move_rate: float
    fee_max_rate: float
    sale_fee_fraction: float


def get_default_engine_params() -> EngineParams:
    return EngineParams(
        epsilon=1e-9,
        min_prob=0.01,
        max_prob=0.99,
        min_reserve=0.01,
        max_solver_iterations=100,
        root_method='newton',
        working_dps=30,
        fee_base_rate=0.01,
        fee_move_rate=0.02,
        fee_max_rate=0.1,
        sale_fee_fraction=0.5,
    )


def load_env() -> dict[str, str]:
    # .env is optional; real environment variables win
    load_dotenv(override=False)
    return {
        key[len(ENV_PREFIX):].lower(): value
        for key, value in os.environ.items()
        if key.startswith(ENV_PREFIX)
    }


def load_engine_params() -> EngineParams:
    """Defaults overridden by MARKET_ENGINE_* environment variables."""
    params = get_default_engine_params()
    for key, raw in load_env().items():
        if key not in params:
            raise ValueError(f"Unknown engine parameter in environment: {ENV_PREFIX}{key.upper()}")
        default = params[key]
        try:
            params[key] = type(default)(raw)
        except ValueError:
            raise ValueError(f"Invalid value for {ENV_PREFIX}{key.upper()}: {raw!r}")
    return params
