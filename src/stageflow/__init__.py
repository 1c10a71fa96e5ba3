"""
stageflow - declarative CI/CD pipeline orchestration engine

File: src/stageflow/__init__.py

Purpose
- Package root. Runs a tree of named stages (leaf shell steps, parallel and
  sequential composites) with conditions, continue-on-error, timeouts,
  environment publication between stages, artifact collection and post hooks.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
