"""
Marketplace - multi-vendor e-commerce backend

Buyers browse products, keep a cart, place orders and chat with sellers.
Sellers list products, receive order notifications and read analytics.
"""

from marketplace.core.config import MarketplaceConfig, get_config, set_config

__all__ = [
    'MarketplaceConfig',
    'get_config',
    'set_config',
]

__version__ = '0.1.0'
