"""Autopilot - autonomous coding agent.

Plans a change request, generates multi-file code, validates and
self-heals it, and applies it only behind an approval gate.
"""

__version__ = "0.1.0"
