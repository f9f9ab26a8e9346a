"""intentflow - dual-path browser automation for Intent Specs."""

__version__ = "0.1.0"
