"""Entry point for ``python -m amzpilot``."""

import sys

from amzpilot.cli import main

sys.exit(main())
