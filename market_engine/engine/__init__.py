from .orders import apply_orders, place_bet
from .sales import sell_shares, redeem_shares, get_holdings
from .liquidity import apply_liquidity, add_liquidity, add_subsidy, remove_liquidity
from .resolutions import compute_payouts, pseudo_numeric_resolution
