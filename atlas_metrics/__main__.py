"""
atlas-metrics module entry point.
"""

import sys

from atlas_metrics.cli import main

if __name__ == "__main__":
    sys.exit(main())
