"""
Custom Exception Classes for the Edition Bonding Curve Engine

This module defines the exception classes raised by the bonding curve engine when pricing
editions, minting, or governing a curve. Every failure path raises one of these types, and all
but IssuanceUnconfirmedError leave the curve's supply and volume as they were before the attempt.

Exception Categories:
- Domain Errors: Invalid inputs (zero edition index, mismatched curve kind, ceiling below floor)
- Overflow Errors: Arithmetic that would exceed the unsigned 64-bit range
- Capacity Errors: Supply cap reached or a missing lookup table entry
- Authorization Errors: Caller is not the curve authority
- Lifecycle Errors: Unknown, duplicate, or non-empty curves
- External Failures: Payment or issuance collaborator failures
- Rate Limiting and Configuration Errors: Server-side concerns

Usage:
    Domain, overflow, capacity and authorization errors are terminal for an attempt and
    should not be resubmitted with the same parameters. External failures are safe to retry
    as a brand-new attempt since no state was committed.
    IssuanceUnconfirmedError is the exception: the issuance was submitted but its outcome is
    unknown, so the payment is kept and the edition is counted as minted.
"""


class BondingCurveError(Exception):
    """Base class for every error raised by the bonding curve engine."""


# --- Domain Errors ---

class DomainError(BondingCurveError, ValueError):
    """Raised when inputs are invalid; rejected before any state change."""


class InvalidEditionIndexError(DomainError):
    """Raised for an edition index of zero or one that cannot be resolved."""


class InvalidCurveParametersError(DomainError):
    """Raised when curve parameters are inconsistent (e.g. ceiling below floor)."""


class CurveKindMismatchError(DomainError):
    """Raised when an operation requires a different curve kind."""


class InvalidMaxSupplyError(DomainError):
    """Raised when a new supply cap would fall below the editions already issued."""


class LookupTableValidationError(DomainError):
    """Raised when a lookup table price sequence is rejected."""


# --- Overflow ---

class ArithmeticOverflowError(BondingCurveError, ArithmeticError):
    """Raised when a price or volume computation would exceed the u64 range."""


# --- Capacity Errors ---

class CapacityError(BondingCurveError):
    """Raised when the curve cannot serve another edition."""


class SupplyExhaustedError(CapacityError):
    """Raised when current supply has reached max supply."""


class LookupEntryNotFoundError(CapacityError):
    """Raised when a lookup table holds no price for the requested edition."""


# --- Authorization ---

class AuthorizationError(BondingCurveError):
    """Raised when the caller lacks authority over a curve."""


class UnauthorizedError(AuthorizationError):
    """Raised when the caller is not the stored curve authority."""


# --- Lifecycle ---

class CurveNotFoundError(BondingCurveError):
    """Raised when no curve is registered for a collection."""


class CurveAlreadyExistsError(BondingCurveError):
    """Raised when a curve already exists for a collection."""


class CurveNotEmptyError(BondingCurveError):
    """Raised when closing a curve that has already issued editions."""


# --- External Failures ---

class ExternalFailure(BondingCurveError):
    """Raised when a payment or issuance collaborator fails."""


class PaymentFailedError(ExternalFailure):
    """Raised when the payment transfer is rejected (insufficient funds, bad signature, etc.)."""


class IssuanceFailedError(ExternalFailure):
    """Raised when the token issuance collaborator fails to mint the edition."""


class IssuanceUnconfirmedError(ExternalFailure):
    """Raised when an issuance transaction was sent but neither confirmed nor expired."""

    def __init__(self, message: str, reference: str):
        super().__init__(message)
        self.reference = reference


# --- Server Concerns ---

class RateLimitExceededError(Exception):
    """Raised when the rate limit is exceeded for API requests."""


class ConfigurationError(Exception):
    """Raised when there are configuration-related errors."""
