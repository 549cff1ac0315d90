"""Allow running as ``python -m webbundle_dump.bundle_extractor``."""

import sys

from .cli import main

sys.exit(main())
