"""Logging package."""
from .setup import log_dir_for, reset_logging, setup_logging

__all__ = ["setup_logging", "reset_logging", "log_dir_for"]
