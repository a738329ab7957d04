from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse

from haroval.api.schemas import (
    GoogleAuthStartResponse,
    LoginRequest,
    MessageResponse,
    ProfileResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    UserPublic,
    UserResponse,
)
from haroval.config import Settings
from haroval.logging import get_logger
from haroval.service.auth import AuthContext, IssuedSession
from haroval.service.errors import ServerError, ServiceError
from haroval.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
_DAY_SECONDS = 24 * 60 * 60


def _apply_session_cookies(
    response: Response, issued: IssuedSession, settings: Settings
) -> None:
    secure = settings.is_production
    response.set_cookie(
        ACCESS_COOKIE,
        issued.access_token,
        httponly=True,
        secure=secure,
        samesite="strict",
        max_age=settings.access_token_ttl_days * _DAY_SECONDS,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        issued.refresh_token,
        httponly=True,
        secure=secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_days * _DAY_SECONDS,
        path="/",
    )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.is_production,
            httponly=True,
            samesite="strict",
        )


def _public_user(issued: IssuedSession) -> UserPublic:
    return UserPublic(**issued.user.public_dict())


async def get_principal(
    request: Request,
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> AuthContext:
    """Access gate for protected routes; re-verifies on every request."""
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(access_token)
    request.state.auth = ctx
    return ctx


@router.post("/login", response_model=UserResponse)
async def login(body: LoginRequest, response: Response):
    runtime = get_runtime()
    issued = await runtime.auth.login(body.username, body.password)
    _apply_session_cookies(response, issued, runtime.settings)
    return UserResponse(user=_public_user(issued))


@router.post("/register", response_model=UserResponse, status_code=201)
async def register(body: RegisterRequest, response: Response):
    runtime = get_runtime()
    issued = await runtime.auth.register(
        body.username, body.password, body.confirm_password
    )
    _apply_session_cookies(response, issued, runtime.settings)
    return UserResponse(user=_public_user(issued))


@router.post("/refresh", response_model=MessageResponse)
async def refresh(
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    issued = await runtime.auth.refresh(refresh_token)
    _apply_session_cookies(response, issued, runtime.settings)
    return MessageResponse(message="Token refreshed successfully")


@router.post("/logout", response_model=MessageResponse)
async def logout(response: Response):
    runtime = get_runtime()
    _clear_session_cookies(response, runtime.settings)
    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=UserResponse)
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    user = await runtime.auth.get_current_user(principal.user_id)
    return UserResponse(user=UserPublic(**user.public_dict()))


@router.put("/profile", response_model=ProfileResponse)
async def update_profile(
    body: ProfileUpdateRequest,
    response: Response,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    issued = await runtime.auth.update_profile(
        principal.user_id,
        body.username,
        body.current_password,
        body.new_password,
    )
    # The access claims carry the username, so a rename needs fresh cookies
    _apply_session_cookies(response, issued, runtime.settings)
    return ProfileResponse(message="Profile updated successfully", user=_public_user(issued))


@router.get("/google", response_model=GoogleAuthStartResponse, response_model_by_alias=True)
async def google_start():
    runtime = get_runtime()
    if not runtime.google.configured:
        raise ServerError("Google sign-in is not configured")
    return GoogleAuthStartResponse(
        auth_url=runtime.google.authorization_url(),
        message="Redirect to Google OAuth",
    )


@router.get("/google/callback")
async def google_callback(
    code: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    runtime = get_runtime()
    base_url = runtime.settings.app_base_url.rstrip("/")
    if error:
        logger.info("google_oauth_denied", provider_error=error)
        return RedirectResponse(f"{base_url}/?error=google_oauth_denied", status_code=302)

    failure = RedirectResponse(f"{base_url}/?error=google_oauth_failed", status_code=302)
    if not code:
        return failure
    identity = await runtime.google.exchange_code(code)
    if identity is None:
        return failure
    try:
        issued = await runtime.auth.complete_google_login(identity)
    except ServiceError as exc:
        logger.error("google_oauth_callback_failed", error_code=exc.error_code)
        return failure
    except Exception as exc:
        logger.exception("google_oauth_callback_failed", error_type=type(exc).__name__)
        return failure

    success = RedirectResponse(f"{base_url}/?google_auth_success=true", status_code=302)
    _apply_session_cookies(success, issued, runtime.settings)
    return success
