"""NFlow platform agent: LangGraph coordinator that turns requests into platform changes."""

__version__ = "0.1.0"
