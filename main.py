#!/usr/bin/env python3
"""
craftlocal-fraud - Entry point.

Equivalent to the ``craftlocal-fraud`` console script.
"""
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from craftlocal_fraud.cli import main

if __name__ == "__main__":
    sys.exit(main())
