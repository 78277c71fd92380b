"""
Pytest configuration for test discovery and imports.

Ensures src/ is on sys.path so tests can import modules directly, and
tests/unit_tests/ so they can share the in-memory fakes.
"""

import os
import sys

ROOT_DIR = os.path.dirname(__file__)
SRC_DIR = os.path.join(ROOT_DIR, "src")
FAKES_DIR = os.path.join(ROOT_DIR, "tests", "unit_tests")

for path in (SRC_DIR, FAKES_DIR):
    if path not in sys.path:
        sys.path.insert(0, path)
