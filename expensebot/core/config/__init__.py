"""Configuration module."""

from expensebot.core.config.loader import load_config
from expensebot.core.config.schema import Config

__all__ = ["Config", "load_config"]
