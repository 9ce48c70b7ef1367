"""
floorguard: automated price-floor defense (buyback) for DeepBook pools.
"""

__version__ = "0.1.0"
