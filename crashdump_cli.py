#!/usr/bin/env python3
"""
Erlang Crash Dump Analyzer - Main Entry Point

Quick launcher for the crash dump inspector.
"""

import sys
from pathlib import Path

# Add crashdump_analyzer to path
sys.path.insert(0, str(Path(__file__).parent))

from crashdump_analyzer.cli import main


if __name__ == '__main__':
    sys.exit(main())
