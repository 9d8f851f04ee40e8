"""
Pydantic schemas for API request/response models.

Wire payloads are camelCase; Python attributes stay snake_case.
"""

from .verification import (
    BulkVerifyRequest,
    BulkVerifyResponse,
    ChallengeRequest,
    ChallengeResponse,
    ReverifyRequest,
    ReverifyResponse,
    ServerReverifyRequest,
    ServerReverifyResponse,
    SweepResponse,
    VerificationData,
    VerifySignatureRequest,
    VerifySignatureResponse,
)

__all__ = [
    "BulkVerifyRequest", "BulkVerifyResponse",
    "ChallengeRequest", "ChallengeResponse",
    "ReverifyRequest", "ReverifyResponse",
    "ServerReverifyRequest", "ServerReverifyResponse",
    "SweepResponse",
    "VerificationData",
    "VerifySignatureRequest", "VerifySignatureResponse",
]
