import logging
import math
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

import mpmath as mp
import numpy as np

from market_engine.errors import InvalidAmount, ProbabilityOutOfBounds

logger = logging.getLogger(__name__)

# Shared tolerance for every float comparison in the engine.
EPSILON = 1e-9
MAX_ITERATIONS = 100
WORKING_DPS = 30
FEE_DECIMALS = 6


def money_amount(amount: float | str | Decimal) -> Decimal:
    return Decimal(str(amount)).quantize(Decimal(f'1e-{FEE_DECIMALS}'))


def floating_equal(a: float, b: float, epsilon: float = EPSILON) -> bool:
    return abs(a - b) <= epsilon


def floating_greater(a: float, b: float, epsilon: float = EPSILON) -> bool:
    return a - b > epsilon


def validate_amount(amount: float, name: str = 'amount') -> None:
    if not isinstance(amount, (int, float)) or isinstance(amount, bool) or not math.isfinite(amount):
        raise InvalidAmount(f"Invalid {name}: {amount!r}. Must be a finite number.")
    if amount <= 0:
        raise InvalidAmount(f"Invalid {name}: {amount}. Must be positive.")


def validate_probability(p: float, low: float = 0.0, high: float = 1.0) -> None:
    if not isinstance(p, (int, float)) or not math.isfinite(p) or not (low < p < high):
        raise ProbabilityOutOfBounds(f"Invalid probability: {p!r}. Must be in ({low}, {high}).")


def safe_divide(num: float, den: float) -> float:
    if den == 0:
        raise ValueError("Division by zero.")
    return num / den


def solve_quadratic(a: float, b: float, c: float) -> float:
    """Smallest positive root of a*x^2 + b*x + c = 0."""
    if a == 0:
        raise ValueError("a must be non-zero")
    disc = b * b - 4 * a * c
    if disc < 0:
        raise ValueError("Negative discriminant in quadratic equation.")
    # Citardauq form avoids cancellation when b^2 >> 4ac
    q = -0.5 * (b + math.copysign(float(np.sqrt(disc)), b))
    roots = [q / a]
    if q != 0:
        roots.append(c / q)
    positive_roots = [r for r in roots if r > 0]
    if not positive_roots:
        raise ValueError("No positive roots found in quadratic equation.")
    return min(positive_roots)


class NumericContext:
    """Caller-owned numeric settings plus a memo of power evaluations.

    One context is meant to live for the duration of a request (or a batch of
    requests against the same snapshot); nothing here is global.
    """

    def __init__(
        self,
        epsilon: float = EPSILON,
        max_iterations: int = MAX_ITERATIONS,
        root_method: str = 'newton',
        dps: int = WORKING_DPS,
    ):
        if root_method not in ('newton', 'bisection'):
            raise ValueError(f"Unknown root method: {root_method}")
        self.epsilon = epsilon
        self.max_iterations = max_iterations
        self.root_method = root_method
        self.dps = dps
        self._powers: Dict[Tuple[float, float], float] = {}

    @classmethod
    def from_params(cls, params: Dict) -> 'NumericContext':
        return cls(
            epsilon=params['epsilon'],
            max_iterations=params['max_solver_iterations'],
            root_method=params['root_method'],
            dps=params['working_dps'],
        )

    def power(self, base: float, exponent: float) -> float:
        key = (base, exponent)
        value = self._powers.get(key)
        if value is None:
            value = base ** exponent
            self._powers[key] = value
        return value

    @property
    def cache_size(self) -> int:
        return len(self._powers)

    def clear_cache(self) -> None:
        self._powers.clear()


def bisect_root(f: Callable[[float], float], lo: float, hi: float, ctx: NumericContext) -> float:
    f_lo = f(lo)
    f_hi = f(hi)
    if f_lo == 0:
        return lo
    if f_hi == 0:
        return hi
    if (f_lo > 0) == (f_hi > 0):
        raise ValueError(f"Root is not bracketed in [{lo}, {hi}]")
    mid = (lo + hi) / 2
    f_mid = f_lo
    for _ in range(ctx.max_iterations):
        mid = (lo + hi) / 2
        f_mid = f(mid)
        if f_mid == 0 or (hi - lo) / 2 <= ctx.epsilon * max(1.0, abs(mid)) * 1e-3:
            return mid
        if (f_mid > 0) == (f_lo > 0):
            lo, f_lo = mid, f_mid
        else:
            hi = mid
    logger.warning(
        f"Bisection did not converge after {ctx.max_iterations} iterations: "
        f"x={mid:.12g}, bracket width {hi - lo:.3e}, residual {float(f_mid):.3e}"
    )
    return mid


def newton_root(
    f: Callable, x0: float, lo: float, hi: float, ctx: NumericContext
) -> Optional[float]:
    """Newton's method through mpmath; None when it leaves the bracket or fails."""
    with mp.workdps(ctx.dps):
        try:
            root = mp.findroot(f, mp.mpf(x0), solver='newton', maxsteps=ctx.max_iterations, verify=False)
        except (ValueError, ZeroDivisionError, TypeError) as e:
            logger.debug(f"Newton solve failed from x0={x0}: {e}")
            return None
        if isinstance(root, mp.mpc):
            if abs(root.imag) > ctx.epsilon:
                return None
            root = root.real
    value = float(root)
    if not (lo - ctx.epsilon <= value <= hi + ctx.epsilon):
        return None
    value = min(max(value, lo), hi)
    residual = f(value)
    if isinstance(residual, complex) or abs(residual) > ctx.epsilon * max(1.0, abs(value)):
        return None
    return value


def find_root(
    f: Callable, lo: float, hi: float, ctx: NumericContext, x0: Optional[float] = None
) -> float:
    """Root of f in [lo, hi]; f must change sign on the bracket."""
    if ctx.root_method == 'newton':
        guess = x0 if x0 is not None else (lo + hi) / 2
        root = newton_root(f, guess, lo, hi, ctx)
        if root is not None:
            return root
        logger.debug(f"Falling back to bisection on [{lo}, {hi}]")
    return bisect_root(f, lo, hi, ctx)
