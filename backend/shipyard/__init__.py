"""Release-based deployment orchestrator for a single application instance."""

__version__ = "0.3.0"
