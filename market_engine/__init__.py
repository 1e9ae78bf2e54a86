from .config import EngineParams, get_default_engine_params, load_engine_params
from .errors import (
    EngineError,
    UserError,
    InvariantError,
    InvalidAmount,
    InsufficientBalance,
    InsufficientLiquidity,
    ProbabilityOutOfBounds,
    StaleOrder,
    InvalidResolution,
    ArbitrageSolveFailed,
    InconsistentState,
)
from .utils import EPSILON, NumericContext
