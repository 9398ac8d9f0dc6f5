"""Utility modules."""

from .logger import get_logger, setup_logging, ProbeLogger

__all__ = ["get_logger", "setup_logging", "ProbeLogger"]
