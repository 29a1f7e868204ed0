"""
strategy-copilot — package root

File: src/strategy_copilot/__init__.py
Last updated: 2026-10-17

Purpose
- Package root for the strategy copilot turn pipeline.

What should be included in this file
- Version export and a deliberately small public surface.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
