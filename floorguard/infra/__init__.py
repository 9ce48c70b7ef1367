"""
Infrastructure package: logging setup.
"""

from floorguard.infra.logging_cfg import build_logger, log_event, make_event_logger

__all__ = ["build_logger", "log_event", "make_event_logger"]
