"""
Snapshot integrity validation.

Separates hard errors (snapshot cannot be trusted) from warnings
(snapshot is valid but suspicious).
"""

from .validator import (
    IntegrityValidator,
    IssueCode,
    PerformanceMetrics,
    ValidationIssue,
    ValidationResult,
)

__all__ = [
    "IntegrityValidator",
    "IssueCode",
    "PerformanceMetrics",
    "ValidationIssue",
    "ValidationResult",
]
