"""
Rate limiting package for the Gateway.

Holds the process-wide admission controller that paces upstream calls to a
minimum interval with a reject-or-wait policy.
"""

from .admission import AdmissionController, AdmissionPolicy

__all__ = [
    "AdmissionController",
    "AdmissionPolicy",
]
