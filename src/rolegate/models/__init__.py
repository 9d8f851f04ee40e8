"""SQLAlchemy models for the rolegate service."""

from .role_assignment import RoleAssignment
from .rule import VerifierRule
from .user_wallet import UserWallet

__all__ = [
    "RoleAssignment",
    "UserWallet",
    "VerifierRule",
]
