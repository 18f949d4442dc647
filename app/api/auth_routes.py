"""
Authentication routes.

Errors are raised as core exceptions and mapped to HTTP responses by the
handlers registered in app.main.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import AuthenticatedUser, get_current_user, get_current_user_strict
from app.api.rate_limit import auth_rate_limit, client_ip
from app.db.models import User
from app.db.session import get_db
from app.models.api import (
    BillingCycle,
    ChangePasswordRequest,
    GoogleLoginRequest,
    LoginRequest,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    PlanSummary,
    RefreshRequest,
    TokenResponse,
    UserRole,
    UserSummary,
)
from app.models.domain import TokenPair
from app.services.auth import AuthService
from app.services.plans import PlanService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


def _token_response(tokens: TokenPair, user: User, is_new: bool = False) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
        user=UserSummary(id=user.id, email=user.email, name=user.name, role=UserRole(user.role)),
        is_new=is_new,
    )


@router.post("/login", response_model=TokenResponse)
@auth_rate_limit
async def login(
    body: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> TokenResponse:
    """Email/password login. 401 on bad credentials, 403 when locked or suspended."""
    tokens, user = await AuthService(db).login(
        body.email,
        body.password,
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return _token_response(tokens, user)


@router.post("/google", response_model=TokenResponse)
@auth_rate_limit
async def google_login(
    body: GoogleLoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> TokenResponse:
    """Sign in (or sign up) with a Google ID token."""
    tokens, user, is_new = await AuthService(db).google_login(
        body.id_token,
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return _token_response(tokens, user, is_new=is_new)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(body: RefreshRequest, db: AsyncSession = Depends(get_db)) -> TokenResponse:
    """Rotate a refresh token. A replayed token is rejected and forces re-login."""
    tokens, user = await AuthService(db).refresh(body.refresh_token)
    return _token_response(tokens, user)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    body: LogoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    await AuthService(db).logout(
        user_id=user.user_id,
        access_token=user.access_token,
        access_expires_at=user.access_expires_at,
        refresh_token=body.refresh_token,
    )
    return MessageResponse(message="Logged out successfully")


@router.post("/change-password", response_model=MessageResponse)
async def change_password(
    body: ChangePasswordRequest,
    user: AuthenticatedUser = Depends(get_current_user_strict),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    """Change password; every session of the user is logged out."""
    await AuthService(db).change_password(
        user_id=user.user_id,
        current_password=body.current_password,
        new_password=body.new_password,
        access_token=user.access_token,
        access_expires_at=user.access_expires_at,
    )
    return MessageResponse(message="Password changed successfully")


@router.get("/me", response_model=MeResponse)
async def me(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> MeResponse:
    """The caller and the plan they are entitled to. 404 without an active subscription."""
    subscription, plan = await PlanService(db).get_active_plan(user.user_id)
    row = await db.get(User, user.user_id)
    return MeResponse(
        user=UserSummary(
            id=user.user_id,
            email=user.email,
            name=row.name if row else None,
            role=user.role,
        ),
        plan=PlanSummary(
            plan_id=plan.id,
            plan_name=plan.name,
            billing_cycle=BillingCycle(subscription.billing_cycle),
            end_date=subscription.end_date,
            max_menus=plan.max_menus,
            max_products_per_menu=plan.max_products_per_menu,
        ),
    )
