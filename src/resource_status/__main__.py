"""Allow ``python -m resource_status``."""

import sys

from resource_status.cli import main

sys.exit(main())
