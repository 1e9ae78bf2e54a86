"""Error taxonomy for the pricing, matching and settlement engine.

Every error is fatal to the single requested operation. ``UserError``s are
correctable by the person placing the request; ``InvariantError``s signal a
broken engine or a corrupt snapshot and should be surfaced to operators.
"""


class EngineError(ValueError):
    operator_visible = False


class UserError(EngineError):
    pass


class InvalidAmount(UserError):
    """Non-positive, non-finite, or otherwise unusable quantity."""


class InsufficientBalance(InvalidAmount):
    pass


class InsufficientLiquidity(UserError):
    """The trade would push a pool reserve under the minimum floor."""


class ProbabilityOutOfBounds(UserError):
    pass


class StaleOrder(UserError):
    """The order was already filled, expired or cancelled."""

    def __init__(self, order_id: str, reason: str):
        super().__init__(f"Order {order_id} is stale: {reason}")
        self.order_id = order_id
        self.reason = reason


class InvalidResolution(UserError):
    pass


class InvariantError(EngineError):
    operator_visible = True


class ArbitrageSolveFailed(InvariantError):
    def __init__(self, message: str, iterations: int, residual: float):
        super().__init__(f"{message} (iterations={iterations}, residual={residual:.3e})")
        self.iterations = iterations
        self.residual = residual


class InconsistentState(InvariantError):
    pass
