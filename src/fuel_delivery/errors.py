"""Exception hierarchy shared by the business logic and wizard layers."""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, compartment, stop, or route is unknown."""


class CompletionFailed(Exception):
    """Raised when an external write fails while committing a delivery.

    The wizard stays open with its session intact so the driver can retry.
    """


__all__ = ["BusinessRuleViolation", "MissingReferenceError", "CompletionFailed"]
