#!/usr/bin/env python
"""Entry point for the perp market maker."""
from __future__ import annotations

import sys

from perp_market_maker.runner import main

if __name__ == "__main__":
    sys.exit(main())
