"""
GenStack
========

LLM-driven full-stack app generator: a capability pipeline that writes an
application into a per-session sandbox, checks it with the compiler, and runs
it in an isolated container for live preview.
"""

__version__ = "0.1.0"
