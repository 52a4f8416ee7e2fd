"""Console output helpers."""
from __future__ import annotations

import sys


def safe_print(msg: str):
    """Print message safely, handling unicode encoding issues on narrow consoles."""
    try:
        print(msg)
    except UnicodeEncodeError:
        encoding = sys.stdout.encoding or 'utf-8'
        print(msg.encode(encoding, errors='replace').decode(encoding, errors='replace'))


def status(verbose: bool, msg: str):
    """Print a ``[*]``/``[+]``/``[-]`` progress line when verbose output is enabled."""
    if verbose:
        safe_print(msg)
