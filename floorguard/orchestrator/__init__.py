"""
Orchestrator package.

This package contains the PriceFloorDefense control facade.
"""

from floorguard.orchestrator.defense import PriceFloorDefense

__all__ = ["PriceFloorDefense"]
