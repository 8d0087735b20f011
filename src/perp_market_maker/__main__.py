"""Allow ``python -m perp_market_maker`` invocation."""
from __future__ import annotations

import sys

from .runner import main

if __name__ == "__main__":
    sys.exit(main())
