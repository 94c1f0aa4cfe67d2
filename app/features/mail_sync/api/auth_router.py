"""
Google account linking routes: consent URL and code exchange callback.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.auth.verify import current_tenant_id
from app.features.mail_sync.domain import AuthRevoked, TransientAuthError
from app.features.mail_sync.providers.oauth_client import SYNC_SCOPES
from app.features.mail_sync.services.account_link import AccountLinkService
from app.infrastructure.observability.logging import get_logger
from app.security.oauth_state import OAuthStateError

from .schemas import GoogleAuthCallbackRequest, GoogleAuthCallbackResponse, GoogleAuthURLResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/auth/google", tags=["auth"])


def get_account_links(request: Request) -> AccountLinkService:
    service = getattr(request.app.state, "account_links", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Account linking not available"
        )
    return service


@router.get("/url", response_model=GoogleAuthURLResponse)
async def get_oauth_url(
    tenant_id: str = Depends(current_tenant_id),
    service: AccountLinkService = Depends(get_account_links),
):
    """
    Generate the Google consent URL for mail and calendar read access.

    Raises:
        503: OAuth client not configured
    """
    try:
        auth_url, state = service.start(tenant_id)
    except AuthRevoked as e:
        logger.error("OAuth URL generation failed", tenant_id=tenant_id, error=e.message)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Google sign-in temporarily unavailable",
        ) from None
    return GoogleAuthURLResponse(auth_url=auth_url, state=state, scopes=SYNC_SCOPES)


@router.post("/callback", response_model=GoogleAuthCallbackResponse)
async def oauth_callback(
    body: GoogleAuthCallbackRequest,
    tenant_id: str = Depends(current_tenant_id),
    service: AccountLinkService = Depends(get_account_links),
):
    """
    Exchange the authorization code and store the grant.

    Raises:
        400: State invalid or code rejected by Google
        503: Google token endpoint unavailable or OAuth client not configured
    """
    try:
        linked = await service.complete(tenant_id, body.code, body.state)
    except OAuthStateError as e:
        logger.warning("OAuth callback state rejected", tenant_id=tenant_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from None
    except AuthRevoked as e:
        if e.error_code == "invalid_client":
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Google sign-in temporarily unavailable",
            ) from None
        logger.warning("OAuth code exchange rejected", tenant_id=tenant_id, error_code=e.error_code)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Authorization was not accepted"
        ) from None
    except TransientAuthError as e:
        logger.warning("OAuth code exchange unavailable", tenant_id=tenant_id, error=e.message)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Google is unavailable, try again"
        ) from None

    return GoogleAuthCallbackResponse(
        connected=True,
        account_email=linked.account_email,
        calendar_connected=linked.has_calendar,
    )
