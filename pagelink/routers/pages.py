from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from .. import database, models, oauth2, page_refresh, pages, schemas

router = APIRouter(prefix="/pages", tags=["Pages"])


def _require_page_provider(provider: str) -> str:
    if provider not in pages.PAGE_PROVIDERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "detail": f"Unsupported page provider '{provider}'",
                "error_code": "unsupported_page_provider",
            },
        )
    return provider


@router.get("", response_model=schemas.PageListResponse)
def list_pages(
    db: Session = Depends(database.get_db),
    current_user: models.User = Depends(oauth2.get_current_user),
):
    listing = pages.list_pages(db, int(current_user.id))
    return schemas.PageListResponse(
        connected_pages=[
            schemas.ConnectedPageOut.model_validate(page) for page in listing.connected
        ],
        pages=[schemas.AvailablePage.model_validate(page) for page in listing.available],
        error=listing.error,
    )


@router.post(
    "", status_code=status.HTTP_201_CREATED, response_model=schemas.ConnectPageResponse
)
def connect_page(
    payload: schemas.ConnectPageRequest,
    db: Session = Depends(database.get_db),
    current_user: models.User = Depends(oauth2.get_current_user),
):
    provider = _require_page_provider(payload.provider)
    page = pages.connect_page(
        db,
        user_id=int(current_user.id),
        provider=provider,
        page_id=payload.page_id,
        page_name=payload.page_name,
        page_token=payload.page_access_token,
    )
    return schemas.ConnectPageResponse(
        message="Page connected successfully",
        page=schemas.ConnectedPageOut.model_validate(page),
    )


@router.post("/refresh-tokens", response_model=schemas.RefreshPageTokensResponse)
def refresh_page_tokens(
    db: Session = Depends(database.get_db),
    current_user: models.User = Depends(oauth2.get_current_user),
):
    report = page_refresh.refresh_page_tokens(db, int(current_user.id))
    if not report.outcomes:
        return schemas.RefreshPageTokensResponse(message="No pages to refresh")

    errors = report.errors
    return schemas.RefreshPageTokensResponse(
        message=f"Refreshed {report.refreshed} of {len(report.outcomes)} page token(s)",
        refreshed=report.refreshed,
        verified=report.verified,
        results=[
            schemas.PageRefreshResult(
                page_id=outcome.page_id,
                page_name=outcome.page_name,
                status=outcome.status,
                detail=outcome.detail,
            )
            for outcome in report.outcomes
        ],
        errors=errors or None,
    )


@router.delete("/{page_id}", status_code=status.HTTP_204_NO_CONTENT)
def disconnect_page(
    page_id: str,
    provider: str = "facebook",
    db: Session = Depends(database.get_db),
    current_user: models.User = Depends(oauth2.get_current_user),
):
    deleted = pages.disconnect_page(
        db,
        user_id=int(current_user.id),
        page_id=page_id,
        provider=_require_page_provider(provider),
    )
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "detail": f"page with id: {page_id} is not connected",
                "error_code": "page_not_found",
            },
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
