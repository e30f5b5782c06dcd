"""
ClickTrail

Records desktop clicks with before/after screenshots and UI context into
session folders, and reconstructs per-application time usage from a session
with a vision LLM.
"""

__version__ = "1.0.0"
