"""Allow ``python -m cli``."""
import sys

from cli.pricefeed_cli import main

sys.exit(main())
