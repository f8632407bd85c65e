import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import database, graph_api, models, oauth2, pages, schemas

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/account", tags=["Account"])

_TOKEN_PREVIEW_CHARS = 20


def _require_identity(db: Session, user_id: int, provider: str) -> models.OAuthAccount:
    identity = pages.find_user_identity(db, user_id, provider)
    if identity is None or not identity.access_token:
        raise pages.IdentityNotFoundError(provider)
    return identity


@router.delete("/disconnect", response_model=schemas.DisconnectAccountResponse)
def disconnect_account(
    provider: str = "facebook",
    db: Session = Depends(database.get_db),
    current_user: models.User = Depends(oauth2.get_current_user),
):
    try:
        result = pages.disconnect_parent_identity(
            db, user_id=int(current_user.id), provider=provider
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to disconnect %s for user %s", provider, current_user.id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "detail": "Could not disconnect account. Please try again.",
                "error_code": "disconnect_failed",
            },
        )
    return schemas.DisconnectAccountResponse(
        message=f"Disconnected {provider} and removed {result.total_deleted_pages} page(s)",
        deleted_pages=result.deleted_pages,
    )


@router.post("/refresh-token", response_model=schemas.SuccessResponse)
def refresh_identity_token(
    db: Session = Depends(database.get_db),
    current_user: models.User = Depends(oauth2.get_current_user),
):
    identity = _require_identity(db, int(current_user.id), "facebook")
    exchanged = graph_api.exchange_token(str(identity.access_token))

    identity.access_token = exchanged.access_token  # type: ignore[assignment]
    identity.token_expires_at = exchanged.expires_at  # type: ignore[assignment]
    db.commit()
    logger.info("Refreshed facebook identity token for user %s", current_user.id)
    return schemas.SuccessResponse(message="Token refreshed successfully")


@router.get("/debug-token", response_model=schemas.TokenDebugResponse)
def debug_token(
    db: Session = Depends(database.get_db),
    current_user: models.User = Depends(oauth2.get_current_user),
):
    identity = pages.find_user_identity(db, int(current_user.id), "facebook")
    if identity is None or not identity.access_token:
        return schemas.TokenDebugResponse(
            has_account=False, error="No Facebook account connected"
        )

    token = str(identity.access_token)
    response = schemas.TokenDebugResponse(
        has_account=True, token_preview=f"{token[:_TOKEN_PREVIEW_CHARS]}..."
    )
    try:
        introspection = graph_api.introspect_token(token)
    except graph_api.GraphAPIError as exc:
        response.token_debug_error = exc.reason
    else:
        response.is_valid = introspection.valid
        response.scopes = sorted(introspection.scopes)
        response.expires_at = introspection.expires_at

    try:
        response.profile = graph_api.fetch_profile(token)
    except graph_api.GraphAPIError as exc:
        response.profile_error = exc.reason
    return response
