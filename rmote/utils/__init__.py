"""Utilities (logging, blacklist rules)"""
from .logging import error, log, vlog, warn, set_verbose

__all__ = ["error", "log", "vlog", "warn", "set_verbose"]
