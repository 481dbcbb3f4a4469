"""Utilities for buildfarm."""

from buildfarm.utils.logger import setup_logging
from buildfarm.utils.state import DecisionLog, DecisionLogError

__all__ = [
    "DecisionLog",
    "DecisionLogError",
    "setup_logging",
]
