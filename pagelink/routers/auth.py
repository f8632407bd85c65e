from __future__ import annotations

import secrets
from typing import Any, Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Request, Response, status
from fastapi.responses import RedirectResponse
from fastapi.security.oauth2 import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from .. import database, linking_intent, models, oauth2, oauth_external, reconciliation, schemas, utils

router = APIRouter(tags=["Authentication"])
_DUMMY_PASSWORD_HASH = utils.hash(secrets.token_urlsafe(32))


@router.post("/login", response_model=schemas.Token)
def login(
    user_credentials: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(database.get_db),
):
    normalized_username = user_credentials.username.strip().lower()
    user = (
        db.query(models.User).filter(models.User.email == normalized_username).first()
    )

    if not user:
        utils.verify(user_credentials.password, _DUMMY_PASSWORD_HASH)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Invalid Credentials"
        )

    if not utils.verify(user_credentials.password, user.password):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Invalid Credentials"
        )

    return oauth2.issue_token_pair(db, int(user.id))


@router.post("/auth/refresh", response_model=schemas.Token)
def refresh(
    payload: schemas.RefreshTokenRequest,
    db: Session = Depends(database.get_db),
):
    return oauth2.rotate_refresh_token(db, payload.refresh_token)


@router.post("/auth/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    payload: schemas.RefreshTokenRequest,
    db: Session = Depends(database.get_db),
):
    oauth2.revoke_refresh_token(db, payload.refresh_token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/auth/linking-intent", response_model=schemas.SuccessResponse)
def set_linking_intent(
    response: Response,
    payload: Optional[schemas.LinkingIntentRequest] = None,
    current_user: models.User = Depends(oauth2.get_current_user),
):
    if payload is not None and payload.user_id is not None:
        if int(payload.user_id) != int(current_user.id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "detail": "Linking intent must name the signed-in user",
                    "error_code": "linking_user_mismatch",
                },
            )
    linking_intent.begin(response, int(current_user.id))
    return schemas.SuccessResponse(success=True)


@router.get("/auth/oauth/providers", response_model=schemas.OAuthProvidersResponse)
def oauth_providers():
    providers = [
        schemas.OAuthProvider(
            provider=provider.provider,
            display_name=provider.display_name,
            start_url=f"/api/v1/auth/oauth/{provider.provider}/start",
        )
        for provider in oauth_external.list_enabled_providers()
    ]
    return schemas.OAuthProvidersResponse(providers=providers)


@router.get(
    "/auth/oauth/{provider}/config", response_model=schemas.ProviderConfigResponse
)
def oauth_provider_config(provider: str, request: Request):
    return oauth_external.provider_config_status(provider, request)


def _oauth_error_message(error: Optional[str], error_description: Optional[str]) -> str:
    if error_description:
        return error_description
    if error:
        return error
    return "OAuth authentication failed"


async def _handle_oauth_callback(
    provider: str,
    request: Request,
    response: Response,
    *,
    state: Optional[str],
    code: Optional[str],
    error: Optional[str],
    error_description: Optional[str],
    db: Session,
) -> Any:
    if not state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "detail": "OAuth callback is missing state",
                "error_code": "invalid_oauth_state",
            },
        )

    parsed_state = oauth_external.parse_oauth_state(state, expected_provider=provider)
    if error or error_description:
        message = _oauth_error_message(error, error_description)
        if parsed_state.redirect_to_frontend:
            redirect_url = oauth_external.build_frontend_error_redirect(
                provider, error=message
            )
            return RedirectResponse(redirect_url, status_code=status.HTTP_302_FOUND)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"detail": message, "error_code": "oauth_provider_error"},
        )

    if not code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "detail": "OAuth callback is missing code",
                "error_code": "oauth_code_missing",
            },
        )

    callback_result = oauth_external.complete_oauth_callback(
        db,
        request,
        provider=provider,
        code=code,
        state=parsed_state,
        claim_linking_intent=lambda: linking_intent.consume(request),
    )
    token = callback_result.token
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "detail": "OAuth callback did not return tokens",
                "error_code": "oauth_callback_invalid_response",
            },
        )

    if callback_result.redirect_to_frontend:
        redirect_url = oauth_external.build_frontend_success_redirect(
            provider, token, linked=callback_result.linked
        )
        redirect = RedirectResponse(redirect_url, status_code=status.HTTP_302_FOUND)
        linking_intent.clear(redirect)
        return redirect

    linking_intent.clear(response)
    return token


@router.get("/auth/oauth/{provider}/start")
def oauth_start(
    provider: str,
    request: Request,
    redirect_to_frontend: bool = True,
):
    authorize_url = oauth_external.build_authorization_url(
        provider,
        request,
        redirect_to_frontend=redirect_to_frontend,
    )
    return RedirectResponse(authorize_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.get("/auth/oauth/{provider}/callback", response_model=schemas.Token)
async def oauth_callback_get(
    provider: str,
    request: Request,
    response: Response,
    state: Optional[str] = None,
    code: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    db: Session = Depends(database.get_db),
):
    return await _handle_oauth_callback(
        provider,
        request,
        response,
        state=state,
        code=code,
        error=error,
        error_description=error_description,
        db=db,
    )


@router.post("/auth/oauth/{provider}/callback", response_model=schemas.Token)
async def oauth_callback_post(
    provider: str,
    request: Request,
    response: Response,
    state: Optional[str] = Form(default=None),
    code: Optional[str] = Form(default=None),
    error: Optional[str] = Form(default=None),
    error_description: Optional[str] = Form(default=None),
    db: Session = Depends(database.get_db),
):
    return await _handle_oauth_callback(
        provider,
        request,
        response,
        state=state,
        code=code,
        error=error,
        error_description=error_description,
        db=db,
    )


@router.post(
    "/auth/oauth/{provider}/link-account", response_model=schemas.LinkAccountResponse
)
def link_account(
    provider: str,
    request: Request,
    response: Response,
    current_user: models.User = Depends(oauth2.get_current_user),
    db: Session = Depends(database.get_db),
):
    # A pending intent must belong to the caller; it is spent either way.
    intent_user_id = linking_intent.consume(request, response)
    if intent_user_id is not None and intent_user_id != int(current_user.id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "detail": "Linking intent belongs to a different user",
                "error_code": "linking_user_mismatch",
            },
        )

    outcome = reconciliation.link_recent_identity(
        db, target_user_id=int(current_user.id), provider=provider
    )
    if outcome.already_linked:
        return schemas.LinkAccountResponse(
            success=True,
            message="Account already linked",
            already_linked=True,
        )
    return schemas.LinkAccountResponse(
        success=True,
        message="Account linked successfully",
        orphan_deleted=outcome.orphan_cleanup.succeeded,
    )
