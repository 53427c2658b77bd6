"""Entry point for `python -m pulsechain_wallet_tracker`."""

import sys

from pulsechain_wallet_tracker.cli import main

sys.exit(main())
