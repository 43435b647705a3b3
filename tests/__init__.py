"""
host-maintenance Test Suite
---------------------------

This package contains the test suite for host-maintenance. Shared fixtures
live in conftest.py.
"""

import sys
import logging
from pathlib import Path

# Ensure host_maintenance package is in path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Configure test logging
logging.getLogger('host_maintenance').setLevel(logging.WARNING)
