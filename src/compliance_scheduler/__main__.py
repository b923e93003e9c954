"""Allow `python -m compliance_scheduler`."""

import sys

from compliance_scheduler.main import main

sys.exit(main())
