"""
ClickTrail Services Package

LLM transport and the batch analysis that turns a recorded session into an
app-usage report.
"""

__all__ = ["analyzer", "llm_client"]
