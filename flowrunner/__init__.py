"""Flowrunner - workflow execution engine.

Runs user-authored automation graphs (trigger, AI agent, condition, webhook,
delay, email, output) with branch-aware scheduling.
"""

__version__ = "0.1.0"
