# src/rolegate/api/v1/endpoints/verification.py
"""Wallet verification endpoints for the rolegate API."""

import logging
from dataclasses import asdict

from fastapi import APIRouter, HTTPException, status

from rolegate.core.errors import VerificationError
from rolegate.schemas.verification import (
    BulkVerifyRequest,
    BulkVerifyResponse,
    ChallengeRequest,
    ChallengeResponse,
    ReverifyRequest,
    ReverifyResponse,
    RoleGrantResponse,
    RuleResultResponse,
    ServerReverifyRequest,
    ServerReverifyResponse,
    SweepResponse,
    VerifySignatureRequest,
    VerifySignatureResponse,
)
from rolegate.services.reconciler import RoleReconciler
from rolegate.services.verification import VerificationEngine
from rolegate.services.verify_flow import VerificationFlow

from ..dependencies import (
    AssetClientDep,
    NonceStoreDep,
    PlatformClientDep,
    ServiceCallerDep,
    SessionDep,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/verification", tags=["verification"])

INTERNAL_ERROR_MESSAGE = "Verification failed due to an internal error."


def _http_error(exc: VerificationError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.public_message)


@router.post("/verify-signature", response_model=VerifySignatureResponse)
async def verify_signature(
    request: VerifySignatureRequest,
    db: SessionDep,
    nonces: NonceStoreDep,
    assets: AssetClientDep,
    platform: PlatformClientDep,
) -> VerifySignatureResponse:
    """Verify a signed challenge and assign every role the wallet qualifies for."""
    flow = VerificationFlow(db, nonces, assets, platform)
    try:
        outcome = await flow.verify_signature_flow(request.data, request.signature)
    except VerificationError as exc:
        raise _http_error(exc) from exc
    except Exception as exc:
        logger.error(
            "Unexpected verification failure for user %s: %s",
            request.data.user_id,
            exc,
            exc_info=True,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=INTERNAL_ERROR_MESSAGE,
        ) from exc

    return VerifySignatureResponse(
        message=outcome.message,
        address=outcome.address,
        assigned_roles=outcome.assigned_roles,
    )


@router.post("/challenge", response_model=ChallengeResponse)
async def create_challenge(
    request: ChallengeRequest,
    nonces: NonceStoreDep,
    caller: ServiceCallerDep,
) -> ChallengeResponse:
    """Issue a fresh nonce for a user, superseding any pending one."""
    nonce = await nonces.create_nonce(
        request.user_id,
        message_id=request.message_id,
        channel_id=request.channel_id,
    )
    logger.info("Issued challenge for user %s on behalf of %s", request.user_id, caller)
    return ChallengeResponse(nonce=nonce, expires_in=nonces.ttl_seconds)


@router.post("/bulk", response_model=BulkVerifyResponse)
async def verify_bulk(
    request: BulkVerifyRequest,
    db: SessionDep,
    assets: AssetClientDep,
    platform: PlatformClientDep,
    _caller: ServiceCallerDep,
) -> BulkVerifyResponse:
    """Evaluate a user's wallet against an explicit list of rules."""
    engine = VerificationEngine(db, assets, platform)
    try:
        result = await engine.verify_user_bulk(
            request.user_id,
            request.rule_ids,
            request.address,
            channel_id=request.channel_id,
        )
    except VerificationError as exc:
        raise _http_error(exc) from exc

    return BulkVerifyResponse(
        user_id=result.user_id,
        address=result.address,
        valid_rules=result.valid_rules,
        invalid_rules=result.invalid_rules,
        matching_asset_counts={
            str(rule_id): count for rule_id, count in result.matching_asset_counts.items()
        },
        results=[
            RuleResultResponse(
                rule_id=item.rule_id,
                is_valid=item.is_valid,
                matching_asset_count=item.matching_asset_count,
            )
            for item in result.results
        ],
        granted=[
            RoleGrantResponse(
                rule_id=grant.rule_id,
                role_id=grant.role_id,
                newly_granted=grant.newly_granted,
            )
            for grant in result.granted
        ],
        failed_roles=[failure.role_id for failure in result.failures],
    )


@router.post("/reverify", response_model=ReverifyResponse)
async def reverify_user(
    request: ReverifyRequest,
    db: SessionDep,
    assets: AssetClientDep,
    platform: PlatformClientDep,
    _caller: ServiceCallerDep,
) -> ReverifyResponse:
    """Re-check one user's roles in a server against current holdings."""
    reconciler = RoleReconciler(db, assets, platform)
    report = await reconciler.reverify_user(request.user_id, request.server_id)
    return ReverifyResponse(
        verified=report.verified,
        revoked=report.revoked,
        errors=report.errors,
    )


@router.post("/reverify-server", response_model=ServerReverifyResponse)
async def reverify_server(
    request: ServerReverifyRequest,
    db: SessionDep,
    assets: AssetClientDep,
    platform: PlatformClientDep,
    caller: ServiceCallerDep,
) -> ServerReverifyResponse:
    """Re-check every user who has held a role in the server."""
    logger.info("Server re-verification of %s requested by %s", request.server_id, caller)
    reconciler = RoleReconciler(db, assets, platform)
    report = await reconciler.reverify_server(request.server_id)
    return ServerReverifyResponse(**asdict(report))


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(
    db: SessionDep,
    assets: AssetClientDep,
    platform: PlatformClientDep,
    caller: ServiceCallerDep,
) -> SweepResponse:
    """Run one reconciliation sweep immediately."""
    logger.info("Manual reconciliation sweep requested by %s", caller)
    reconciler = RoleReconciler(db, assets, platform)
    report = await reconciler.perform_scheduled_reverification()
    return SweepResponse(**report.as_dict())


@router.get("/stats")
async def assignment_stats(
    db: SessionDep,
    assets: AssetClientDep,
    platform: PlatformClientDep,
    _caller: ServiceCallerDep,
) -> dict[str, int]:
    """Return role assignment counts per status."""
    return RoleReconciler(db, assets, platform).assignment_stats()
