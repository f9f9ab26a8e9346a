"""Execution reporting."""
from .reporter import (
    FORMATS,
    analyze,
    calculate_scores,
    recommendations,
    render,
)

__all__ = [
    "FORMATS",
    "analyze",
    "calculate_scores",
    "recommendations",
    "render",
]
