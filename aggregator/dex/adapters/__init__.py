from aggregator.dex.adapters.concentrated import ConcentratedLiquidityAdapter
from aggregator.dex.adapters.constant_product import ConstantProductAdapter
from aggregator.dex.adapters.order_book import OrderBookAdapter

__all__ = [
    "ConcentratedLiquidityAdapter",
    "ConstantProductAdapter",
    "OrderBookAdapter",
]
