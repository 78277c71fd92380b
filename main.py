#!/usr/bin/env python3
"""
MarkLogic Cluster Upgrade Orchestrator

- advance:   take one workflow step for a single cluster
- reconcile: drive every cluster in scope until interrupted
- signal:    trigger, approve, cancel, pause, resume, retry or force an upgrade
- status:    show the upgrade status of clusters

This script supports running directly from a source checkout. The local
src/ directory is added to sys.path; for production use, prefer installing
the project and using the provided ml-upgrade console script.
"""

import os
import sys

# Add src/ to path to import modules directly
REPO_ROOT = os.path.dirname(os.path.abspath(__file__))
SRC_PATH = os.path.join(REPO_ROOT, "src")
if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

from cli import main

if __name__ == "__main__":
    sys.exit(main())
