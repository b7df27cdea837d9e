"""Authentication routes"""

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from authgate.api.deps import (
    CallerIdentity,
    client_ip,
    enforce_rate_limit,
    get_caller_identity,
    get_current_user,
    get_services,
    security,
)
from authgate.config import DeliveryMode
from authgate.core.database import get_db
from authgate.core.exceptions import (
    BaseAPIException,
    DeliveryFailureError,
    ResourceNotFoundError,
)
from authgate.models.user import User
from authgate.schemas.otp import OTPSentResponse, SendEmailOTPRequest, SendSmsOTPRequest, VerifyOTPRequest
from authgate.schemas.response import APIResponse
from authgate.schemas.user import (
    AuthResponse,
    ChangePasswordRequest,
    FederatedLinkRequest,
    ForgotPasswordRequest,
    LogoutRequest,
    RefreshTokenRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserCreate,
    UserLogin,
    UserResponse,
    UserUpdate,
)
from authgate.services import audit_service as audit
from authgate.services.federation_service import LINK_INTENT, LOGIN_INTENT
from authgate.services.otp_service import EMAIL_CHANNEL, SMS_CHANNEL
from authgate.services.registry import Services
from authgate.services.token_service import TokenPair

logger = logging.getLogger(__name__)

router = APIRouter()

FORGOT_PASSWORD_MESSAGE = "If an account exists for this email, a password reset link has been sent."
OAUTH_NONCE_COOKIE = "authgate_oauth_nonce"
FEDERATION_COOKIE_PATH = "/api/v1/auth/federated"


def _auth_response(user: User, pair: TokenPair) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.model_validate(user),
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
    )


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register(
    body: UserCreate,
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """
    Register a password account and sign it in

    Args:
        body: Email, password and optional names

    Returns:
        The new user and a token pair
    """
    enforce_rate_limit(request, services, "register", services.settings.AUTH_RATE_LIMIT)
    user = services.users.register(db, body.email, body.password, body.first_name, body.last_name)
    pair = services.ledger.issue_pair(db, user)
    return _auth_response(user, pair)


@router.post("/login", response_model=AuthResponse)
def login(
    credentials: UserLogin,
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """
    Login endpoint - authenticate user and return a token pair

    Every credential failure answers with the same message.
    """
    enforce_rate_limit(request, services, "login", services.settings.AUTH_RATE_LIMIT, credentials.email)
    user = services.users.authenticate(db, credentials.email, credentials.password)
    pair = services.ledger.issue_pair(db, user)
    services.audit.log_event(
        db,
        user_id=user.id,
        action=audit.LOGIN,
        target_type="user",
        target_id=str(user.id),
        ip_address=client_ip(request),
        metadata={"method": "password"},
    )
    return _auth_response(user, pair)


@router.post("/refresh-token", response_model=TokenResponse)
def refresh_token(
    req: RefreshTokenRequest,
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Exchange a refresh token for a new pair; the presented token is spent"""
    enforce_rate_limit(request, services, "refresh", services.settings.AUTH_RATE_LIMIT)
    pair = services.ledger.rotate(db, req.refresh_token)
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
    )


@router.post("/logout")
def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    current_user: User = Depends(get_current_user),
    identity: CallerIdentity = Depends(get_caller_identity),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """
    Revoke the presented refresh token, or every token of the caller when none is given
    """
    if body and body.refresh_token:
        revoked = 1 if services.ledger.revoke(db, body.refresh_token, user_id=current_user.id) else 0
    else:
        revoked = services.ledger.revoke_all(db, current_user.id)

    services.audit.log_event(
        db,
        user_id=current_user.id,
        action=audit.LOGOUT,
        target_type="user",
        target_id=str(current_user.id),
        ip_address=client_ip(request),
        metadata={**identity.audit_metadata(), "revoked": revoked},
    )
    return {
        "success": True,
        "message": "Logged out successfully",
        "revoked": revoked,
    }


@router.post("/logout-all")
def logout_all(
    request: Request,
    current_user: User = Depends(get_current_user),
    identity: CallerIdentity = Depends(get_caller_identity),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """End every session of the caller"""
    revoked = services.ledger.revoke_all(db, current_user.id)
    services.audit.log_event(
        db,
        user_id=current_user.id,
        action=audit.LOGOUT_ALL,
        target_type="user",
        target_id=str(current_user.id),
        ip_address=client_ip(request),
        metadata={**identity.audit_metadata(), "revoked": revoked},
    )
    return {"success": True, "message": "Logged out from all devices", "revoked": revoked}


@router.post("/send-email-otp", response_model=OTPSentResponse)
async def send_email_otp(
    body: SendEmailOTPRequest,
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Send an email verification code to a registered address"""
    enforce_rate_limit(request, services, "otp_send", services.settings.OTP_SEND_RATE_LIMIT, body.email)
    user = await run_in_threadpool(services.users.get_by_email, db, body.email)
    if user is None:
        raise ResourceNotFoundError("User")

    issued = await services.otp_engine.request_challenge(db, user, EMAIL_CHANNEL, user.email)
    return OTPSentResponse(message="OTP sent to your email", expires_in=issued.expires_in)


@router.post("/send-sms-otp", response_model=OTPSentResponse)
async def send_sms_otp(
    body: SendSmsOTPRequest,
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Send an SMS verification code to a registered phone number"""
    enforce_rate_limit(request, services, "otp_send", services.settings.OTP_SEND_RATE_LIMIT, body.phone_number)
    user = await run_in_threadpool(services.users.get_by_phone, db, body.phone_number)
    if user is None:
        raise ResourceNotFoundError("User")

    issued = await services.otp_engine.request_challenge(db, user, SMS_CHANNEL, user.phone_number)
    return OTPSentResponse(message="OTP sent to your phone", expires_in=issued.expires_in)


@router.post("/verify-otp", response_model=AuthResponse)
def verify_otp(
    body: VerifyOTPRequest,
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """
    Verify a code, set the channel's verified flag and sign the user in

    Returns:
        The verified user and a token pair
    """
    identifier = body.email if body.verification_type == EMAIL_CHANNEL else body.phone_number
    enforce_rate_limit(request, services, "otp_verify", services.settings.OTP_VERIFY_RATE_LIMIT, identifier)

    if body.verification_type == EMAIL_CHANNEL:
        user = services.users.get_by_email(db, body.email)
    else:
        user = services.users.get_by_phone(db, body.phone_number)
    if user is None:
        raise ResourceNotFoundError("User")

    result = services.otp_engine.verify_challenge(db, user, body.otp_code, body.verification_type)
    result.raise_for_failure()

    pair = services.ledger.issue_pair(db, user)
    services.audit.log_event(
        db,
        user_id=user.id,
        action=audit.OTP_VERIFIED,
        target_type="user",
        target_id=str(user.id),
        ip_address=client_ip(request),
        metadata={"channel": body.verification_type},
    )
    db.refresh(user)
    return _auth_response(user, pair)


@router.post("/forgot-password", response_model=APIResponse)
async def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Start a password reset; the answer is the same whether or not the email exists"""
    enforce_rate_limit(request, services, "forgot_password", services.settings.AUTH_RATE_LIMIT, body.email)
    token = await run_in_threadpool(services.users.request_password_reset, db, body.email)
    if token is not None:
        reset_link = f"{services.settings.FRONTEND_URL}/reset-password#token={token}"
        ttl_seconds = services.settings.PASSWORD_RESET_EXPIRE_MINUTES * 60
        sender = services.email_sender
        try:
            if sender is None:
                raise DeliveryFailureError("Email service not configured")
            await sender.send_password_reset(body.email.strip().lower(), reset_link, ttl_seconds)
        except DeliveryFailureError as exc:
            # a different status here would tell the caller the account exists
            if services.settings.OTP_DELIVERY_MODE == DeliveryMode.LOGGED_FALLBACK:
                logger.warning(f"Password reset delivery failed ({exc.message}); logged fallback link: {reset_link}")
            else:
                logger.error(f"Password reset delivery failed: {exc.message}")

    return APIResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password", response_model=APIResponse)
def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    enforce_rate_limit(request, services, "reset_password", services.settings.AUTH_RATE_LIMIT)
    user = services.users.reset_password(db, body.token, body.new_password)
    services.audit.log_event(
        db,
        user_id=user.id,
        action=audit.PASSWORD_RESET,
        target_type="user",
        target_id=str(user.id),
        ip_address=client_ip(request),
    )
    return APIResponse(message="Password has been reset. Please log in again.")


@router.post("/change-password", response_model=APIResponse)
def change_password(
    body: ChangePasswordRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Change password; every refresh token of the caller is revoked"""
    revoked = services.users.change_password(db, current_user, body.current_password, body.new_password)
    services.audit.log_event(
        db,
        user_id=current_user.id,
        action=audit.PASSWORD_CHANGE,
        target_type="user",
        target_id=str(current_user.id),
        ip_address=client_ip(request),
        metadata={"revoked": revoked},
    )
    return APIResponse(message="Password changed successfully", data={"revoked": revoked})


@router.get("/me", response_model=UserResponse)
def get_current_user_info(current_user: User = Depends(get_current_user)):
    """Get current user information"""
    return UserResponse.model_validate(current_user)


@router.put("/me", response_model=UserResponse)
def update_current_user(
    body: UserUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    user = services.users.update_profile(
        db,
        current_user,
        first_name=body.first_name,
        last_name=body.last_name,
        phone_number=body.phone_number,
        preferences=body.preferences,
    )
    return UserResponse.model_validate(user)


def _set_nonce_cookie(response: Response, nonce: str, services: Services) -> None:
    response.set_cookie(
        OAUTH_NONCE_COOKIE,
        nonce,
        max_age=services.settings.OAUTH_STATE_EXPIRE_SECONDS,
        path=FEDERATION_COOKIE_PATH,
        httponly=True,
        secure=services.settings.is_production,
        samesite="lax",
    )


def _clear_nonce_cookie(response: Response) -> Response:
    response.delete_cookie(OAUTH_NONCE_COOKIE, path=FEDERATION_COOKIE_PATH)
    return response


@router.get("/federated/start")
def federated_start(
    request: Request,
    intent: str = Query(LOGIN_INTENT, pattern="^(login|link)$"),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """
    Begin a provider round trip

    The login intent redirects the browser to the provider. The link intent
    needs the caller's bearer token and answers with the provider URL, since
    the state is issued to that user. Both set the nonce cookie the callback
    checks.
    """
    nonce = services.federation.new_state_nonce()
    if intent == LINK_INTENT:
        current_user = get_current_user(request, credentials, db, services)
        url = services.federation.authorization_url(nonce, LINK_INTENT, user_id=current_user.id)
        response = JSONResponse({"success": True, "authorizationUrl": url})
    else:
        url = services.federation.authorization_url(nonce, LOGIN_INTENT)
        response = RedirectResponse(url, status_code=status.HTTP_302_FOUND)
    _set_nonce_cookie(response, nonce, services)
    return response


@router.get("/federated/callback")
async def federated_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """
    Provider callback. Tokens are handed to the frontend in the URL fragment,
    which browsers do not send to servers.
    """
    frontend = services.settings.FRONTEND_URL
    failure = _clear_nonce_cookie(
        RedirectResponse(f"{frontend}/login?error=federation_failed", status_code=status.HTTP_302_FOUND)
    )

    if error or not code or not state:
        logger.warning(f"Federated callback without code/state (provider error: {error})")
        return failure

    nonce = request.cookies.get(OAUTH_NONCE_COOKIE)
    try:
        intent = services.federation.verify_state(state, nonce=nonce).get("intent", LOGIN_INTENT)
        if intent == LINK_INTENT:
            # the linking request must carry the user's bearer token, so the frontend finishes it
            fragment = urlencode({"code": code, "state": state})
            return _clear_nonce_cookie(
                RedirectResponse(f"{frontend}/auth/link#{fragment}", status_code=status.HTTP_302_FOUND)
            )

        user, pair = await services.federation.complete(db, code, state, nonce)
    except BaseAPIException as exc:
        logger.warning(f"Federated sign-in failed: {exc.message}")
        return failure

    await run_in_threadpool(
        services.audit.log_event,
        db,
        user_id=user.id,
        action=audit.FEDERATED_LOGIN,
        target_type="user",
        target_id=str(user.id),
        ip_address=client_ip(request),
        metadata={"provider": user.federated_provider},
    )
    fragment = urlencode({
        "access_token": pair.access_token,
        "refresh_token": pair.refresh_token,
        "expires_in": pair.expires_in,
        "token_type": pair.token_type,
    })
    return _clear_nonce_cookie(
        RedirectResponse(f"{frontend}/auth/callback#{fragment}", status_code=status.HTTP_302_FOUND)
    )


@router.post("/federated/link", response_model=UserResponse)
async def federated_link(
    body: FederatedLinkRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Attach a provider identity to the signed-in account; the state must have been issued to it"""
    assertion = await services.federation.exchange_code(body.code, body.state, user_id=current_user.id)
    user = await run_in_threadpool(services.federation.link, db, current_user, assertion)
    await run_in_threadpool(
        services.audit.log_event,
        db,
        user_id=user.id,
        action=audit.FEDERATED_LINK,
        target_type="user",
        target_id=str(user.id),
        ip_address=client_ip(request),
        metadata={"provider": assertion.provider},
    )
    return UserResponse.model_validate(user)


@router.post("/federated/unlink", response_model=UserResponse)
def federated_unlink(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    provider = current_user.federated_provider
    user = services.federation.unlink(db, current_user)
    services.audit.log_event(
        db,
        user_id=user.id,
        action=audit.FEDERATED_UNLINK,
        target_type="user",
        target_id=str(user.id),
        ip_address=client_ip(request),
        metadata={"provider": provider},
    )
    return UserResponse.model_validate(user)
