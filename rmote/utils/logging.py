"""
Console logging for rmote

Progress lines go to stdout; warnings and errors go to stderr so they still
reach the terminal when the progress stream is redirected to a file.
"""
import sys
from datetime import datetime

_verbose = False


def set_verbose(verbose: bool):
    """Set the verbose flag"""
    global _verbose
    _verbose = verbose


def _emit(msg: str, stream=None):
    ts = datetime.now().strftime("%H:%M:%S")
    # resolved per call so redirected streams are honoured
    print(f"[{ts}] {msg}", file=stream or sys.stdout, flush=True)


def log(msg: str):
    """Progress message with timestamp"""
    _emit(msg)


def vlog(msg: str):
    """Progress message shown only in verbose mode"""
    if _verbose:
        _emit(msg)


def warn(msg: str):
    """Recoverable problem: the sync carries on"""
    _emit(f"⚠  {msg}", sys.stderr)


def error(msg: str):
    """Fatal problem: the caller is about to exit"""
    _emit(f"✗  {msg}", sys.stderr)
