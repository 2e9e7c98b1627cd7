"""Allow ``python -m liveconf``."""

from __future__ import annotations

import sys

import liveconf.cli

if __name__ == "__main__":
    sys.exit(liveconf.cli.main())
