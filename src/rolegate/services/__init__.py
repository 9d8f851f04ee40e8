"""Verification, ledger and reconciliation services for rolegate."""

from .ledger import AssignmentLedger
from .nonce import NonceStore
from .reconciler import ReconcileWorker, RoleReconciler
from .signature import SignatureVerifier
from .verification import VerificationEngine
from .verify_flow import VerificationFlow

__all__ = [
    "AssignmentLedger",
    "NonceStore",
    "SignatureVerifier",
    "VerificationEngine",
    "VerificationFlow",
    "RoleReconciler",
    "ReconcileWorker",
]
