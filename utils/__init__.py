"""Utility functions."""

from .logging_setup import setup_logging
from .hex_utils import HexParser

__all__ = ["setup_logging", "HexParser"]
