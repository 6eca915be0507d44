from .price_feed import PriceFeed
from .pyth import PythOracle

__all__ = ["PriceFeed", "PythOracle"]
