"""
execguard
=========

Risk-tiered execution guard for shell commands.

Commands are classified GREEN / YELLOW / RED / BLACKLISTED by a validated
policy; RED commands wait for human approval, BLACKLISTED ones never run,
and every outcome is logged and remembered as a lesson in an SQLite
knowledge base.
"""

__version__ = "0.1.0"
