"""
Anton - Autonomous task orchestration for coding agents.

This package drives a coding agent unattended through a markdown checklist,
one task at a time, keeping the git working tree in a known-good state and
recovering from timeouts, malformed output and tool-call loops.
"""

__version__ = "0.1.0"
