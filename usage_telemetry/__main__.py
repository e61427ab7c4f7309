"""
usage-telemetry CLI entry point.
"""

import sys

from usage_telemetry.cli import main

if __name__ == "__main__":
    sys.exit(main())
