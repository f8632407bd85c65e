from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field

ProviderName = Annotated[str, Field(min_length=1, max_length=32, pattern=r"^[a-z_]+$")]


class Token(BaseModel):
    access_token: str
    token_type: str
    refresh_token: Optional[str] = None


class TokenData(BaseModel):
    id: Optional[int] = None


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class OAuthProvider(BaseModel):
    provider: str
    display_name: str
    start_url: str


class OAuthProvidersResponse(BaseModel):
    providers: list[OAuthProvider]


class SuccessResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None


class LinkingIntentRequest(BaseModel):
    user_id: Optional[int] = None


class LinkAccountResponse(SuccessResponse):
    already_linked: bool = False
    orphan_deleted: bool = False


class ProviderConfigDetails(BaseModel):
    has_client_id: bool
    has_client_secret: bool
    has_public_base_url: bool
    has_secret_key: bool


class ProviderConfigResponse(BaseModel):
    provider: str
    configured: bool
    details: ProviderConfigDetails
    redirect_uri: str
    message: str


class ConnectedPageOut(BaseModel):
    id: int
    page_id: str
    page_name: str
    provider: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AvailablePage(BaseModel):
    id: str
    name: str
    access_token: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PageListResponse(BaseModel):
    connected_pages: list[ConnectedPageOut]
    pages: list[AvailablePage]
    error: Optional[str] = None


class ConnectPageRequest(BaseModel):
    page_id: Annotated[str, Field(min_length=1, max_length=128)]
    page_name: Annotated[str, Field(min_length=1, max_length=255)]
    page_access_token: Annotated[str, Field(min_length=1)]
    provider: ProviderName = "facebook"


class ConnectPageResponse(SuccessResponse):
    page: ConnectedPageOut


class DisconnectAccountResponse(SuccessResponse):
    deleted_pages: dict[str, int]


class PageRefreshResult(BaseModel):
    page_id: str
    page_name: str
    status: str
    detail: Optional[str] = None


class RefreshPageTokensResponse(SuccessResponse):
    refreshed: int = 0
    verified: int = 0
    results: list[PageRefreshResult] = []
    errors: Optional[list[str]] = None


class TokenDebugResponse(BaseModel):
    has_account: bool
    is_valid: Optional[bool] = None
    scopes: list[str] = []
    expires_at: Optional[datetime] = None
    token_preview: Optional[str] = None
    profile: Optional[dict] = None
    token_debug_error: Optional[str] = None
    profile_error: Optional[str] = None
    error: Optional[str] = None
