"""Allow ``python -m image_append``."""

import sys

from .cli import main

sys.exit(main())
