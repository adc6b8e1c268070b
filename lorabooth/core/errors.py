"""
lorabooth — core/errors.py
─────────────────────────────────────────────────────────────────
Error taxonomy shared by the ledger, gateway, reconciler and
payment verifier. Each error knows the HTTP status a router should
answer with, so "your request is wrong" never looks like "we broke".
─────────────────────────────────────────────────────────────────
"""


class LoraboothError(Exception):
    """Base exception."""
    status_code = 500


class ValidationError(LoraboothError):
    """Caller input is malformed. Never touches the ledger or provider."""
    status_code = 400


class InsufficientCredit(LoraboothError):
    """Balance does not cover the cost. Raised before any side effect."""
    status_code = 402


class JobNotFound(LoraboothError):
    """No job with that id for this user."""
    status_code = 404


class DuplicateTransaction(LoraboothError):
    """Same ledger ref_id already applied (idempotency guard)."""
    status_code = 409


class ProviderUnavailable(LoraboothError):
    """Inference or payment provider refused or could not be reached."""
    status_code = 503


class StorageTransient(LoraboothError):
    """Database stayed unavailable after every retry."""
    status_code = 503


class MalformedCallback(LoraboothError):
    """Webhook payload does not match any known shape."""
    status_code = 400


class InvalidSignature(LoraboothError):
    """Payment or webhook signature mismatch."""
    status_code = 400


class NoPendingTransaction(LoraboothError):
    """No pending transaction for that order — replayed or forged callback."""
    status_code = 500
