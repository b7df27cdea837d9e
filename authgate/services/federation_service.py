"""
Federated sign-in with Google OAuth2.

The browser is sent to Google with a signed ``state`` token of kind
``oauth_state``. The state carries the digest of a nonce held in an HttpOnly
cookie and, for account linking, the id of the signed-in user, so a state
obtained by someone else cannot be replayed. On callback the state is
verified, the code exchanged and the userinfo mapped onto a local account: by
provider id, then by a provider-verified email (auto link), then by creating
a new password-less user.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from authgate.config import Settings
from authgate.core.exceptions import (
    FederationFailedError,
    ResourceAlreadyExistsError,
    TokenVerificationError,
    InvalidTokenTypeError,
    ValidationError,
)
from authgate.core.security import OAUTH_STATE_KIND, AccessTokenIssuer, generate_opaque_token, hash_token
from authgate.models.user import User, default_preferences
from authgate.services.token_service import RefreshTokenLedger, TokenPair
from authgate.services.user_service import normalize_email

logger = logging.getLogger(__name__)

GOOGLE_PROVIDER = "google"
LOGIN_INTENT = "login"
LINK_INTENT = "link"
FEDERATION_INTENTS = (LOGIN_INTENT, LINK_INTENT)
GOOGLE_OAUTH = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": "openid email profile",
}


@dataclass(frozen=True)
class FederatedAssertion:
    """Identity asserted by the provider after a successful code exchange"""
    provider: str
    provider_id: str
    email: str
    email_verified: bool
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None


def parse_google_userinfo(userinfo: Dict[str, Any]) -> FederatedAssertion:
    """Map Google's userinfo payload; both the v2 and OIDC field names are accepted."""
    provider_id = userinfo.get("id") or userinfo.get("sub")
    email = normalize_email(userinfo.get("email"))
    if not provider_id or not email:
        raise FederationFailedError("Provider did not return an id and email")

    verified = userinfo.get("verified_email", userinfo.get("email_verified", False))
    if isinstance(verified, str):
        verified = verified.lower() == "true"

    return FederatedAssertion(
        provider=GOOGLE_PROVIDER,
        provider_id=str(provider_id),
        email=email,
        email_verified=bool(verified),
        first_name=userinfo.get("given_name"),
        last_name=userinfo.get("family_name"),
        avatar_url=userinfo.get("picture"),
    )


class FederationService:
    """Google OAuth2 bridge terminating in the same token issuance as password login"""

    def __init__(
        self,
        config: Settings,
        issuer: AccessTokenIssuer,
        ledger: RefreshTokenLedger,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = config.GOOGLE_CLIENT_ID
        self.client_secret = config.GOOGLE_CLIENT_SECRET
        self.callback_url = config.GOOGLE_CALLBACK_URL
        self.auto_link_by_email = config.FEDERATION_AUTO_LINK_BY_EMAIL
        self.state_ttl_seconds = config.OAUTH_STATE_EXPIRE_SECONDS
        self.timeout = config.DELIVERY_TIMEOUT_SECONDS
        self.issuer = issuer
        self.ledger = ledger
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.callback_url)

    @staticmethod
    def new_state_nonce() -> str:
        """Random value kept in an HttpOnly cookie; only its digest goes into the state"""
        return generate_opaque_token()

    def authorization_url(
        self,
        nonce: str,
        intent: str = LOGIN_INTENT,
        user_id: Optional[int] = None,
    ) -> str:
        """
        Provider consent URL carrying a freshly signed state token

        Args:
            nonce: Browser-bound value from new_state_nonce()
            intent: "login" or "link"
            user_id: Account being linked, required for the link intent
        """
        if not self.is_configured:
            raise FederationFailedError("Federated sign-in is not configured")
        if intent not in FEDERATION_INTENTS:
            raise FederationFailedError(f"Unknown federation intent: {intent}")
        if not nonce:
            raise FederationFailedError("Missing state nonce")

        claims: Dict[str, Any] = {"intent": intent, "nonce": hash_token(nonce)}
        if intent == LINK_INTENT:
            if user_id is None:
                raise FederationFailedError("Linking requires a signed-in user")
            claims["uid"] = user_id

        state = self.issuer.issue_state_token(self.state_ttl_seconds, claims)
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.callback_url,
            "response_type": "code",
            "scope": GOOGLE_OAUTH["scope"],
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{GOOGLE_OAUTH['auth_url']}?{urlencode(params)}"

    def verify_state(
        self,
        state: str,
        *,
        nonce: Optional[str] = None,
        user_id: Optional[int] = None,
        intent: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Check signature and expiry, then the binding of the state

        A state is only accepted together with the browser nonce it was issued
        for, or, for the link intent, the id of the user who started it.

        Returns:
            The state's claims (intent, nonce digest, uid)
        """
        try:
            claims = self.issuer.verify(state, expected_kind=OAUTH_STATE_KIND).extra
        except (TokenVerificationError, InvalidTokenTypeError) as exc:
            logger.warning(f"Rejected OAuth state: {exc.message}")
            raise FederationFailedError("Invalid or expired OAuth state")

        if nonce is None and user_id is None:
            logger.warning("Rejected OAuth state: no browser nonce or user to bind it to")
            raise FederationFailedError("Invalid or expired OAuth state")
        if nonce is not None and not hmac.compare_digest(str(claims.get("nonce", "")), hash_token(nonce)):
            logger.warning("Rejected OAuth state: nonce mismatch")
            raise FederationFailedError("Invalid or expired OAuth state")
        if user_id is not None and (claims.get("intent") != LINK_INTENT or claims.get("uid") != user_id):
            logger.warning(f"Rejected OAuth state: not issued to user {user_id}")
            raise FederationFailedError("Invalid or expired OAuth state")
        if intent is not None and claims.get("intent", LOGIN_INTENT) != intent:
            logger.warning(f"Rejected OAuth state: issued for {claims.get('intent')}, used for {intent}")
            raise FederationFailedError("Invalid or expired OAuth state")
        return claims

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=False,
            transport=self._transport,
        )

    async def exchange_code(
        self,
        code: str,
        state: str,
        *,
        nonce: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> FederatedAssertion:
        """
        Validate state, trade the code for a provider token and read userinfo

        Args:
            code: Authorization code from the callback
            state: Signed state from the callback
            nonce: Browser nonce from the cookie (login)
            user_id: Signed-in user the state must name (link)

        Raises:
            FederationFailedError: any state, HTTP or payload problem
        """
        expected_intent = LINK_INTENT if user_id is not None else LOGIN_INTENT
        self.verify_state(state, nonce=nonce, user_id=user_id, intent=expected_intent)
        if not code:
            raise FederationFailedError("Missing authorization code")
        if not self.is_configured:
            raise FederationFailedError("Federated sign-in is not configured")

        try:
            async with self._client() as client:
                token_response = await client.post(
                    GOOGLE_OAUTH["token_url"],
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.callback_url,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = token_result.get("access_token") if isinstance(token_result, dict) else None
                if not access_token:
                    logger.error("OAuth token response had no access_token")
                    raise FederationFailedError()

                userinfo_response = await client.get(
                    GOOGLE_OAUTH["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(f"OAuth exchange rejected: status={exc.response.status_code}")
            raise FederationFailedError()
        except httpx.HTTPError as exc:
            logger.error(f"OAuth exchange failed: {exc}")
            raise FederationFailedError()
        except ValueError as exc:
            logger.error(f"OAuth provider returned invalid JSON: {exc}")
            raise FederationFailedError()

        if not isinstance(userinfo, dict):
            logger.error("OAuth userinfo has an unexpected format")
            raise FederationFailedError()

        assertion = parse_google_userinfo(userinfo)
        logger.info(f"OAuth exchange succeeded for provider id {assertion.provider_id}")
        return assertion

    def resolve_user(self, db: Session, assertion: FederatedAssertion) -> User:
        """
        Find or create the local account for an assertion

        Linking and creation happen in one transaction; nothing is left behind
        when it fails.
        """
        try:
            user = (
                db.query(User)
                .filter(User.federated_id == assertion.provider_id)
                .first()
            )
            if user is not None:
                if not user.is_active:
                    raise FederationFailedError("Account is deactivated")
                return user

            user = db.query(User).filter(User.email == assertion.email).first()
            if user is not None:
                if not (self.auto_link_by_email and assertion.email_verified):
                    logger.warning(
                        f"Refused to link provider id {assertion.provider_id} to user {user.id}: "
                        f"auto link disabled or email not verified"
                    )
                    raise FederationFailedError()
                if not user.is_active:
                    raise FederationFailedError("Account is deactivated")
                if user.federated_id and user.federated_id != assertion.provider_id:
                    raise FederationFailedError("Account is linked to another identity")
                self._apply_link(user, assertion)
                db.commit()
                logger.info(f"Linked {assertion.provider} identity to existing user {user.id}")
                return user

            user = User(
                email=assertion.email,
                password_hash=None,
                first_name=assertion.first_name,
                last_name=assertion.last_name,
                role="user",
                is_active=True,
                is_verified=True,
                preferences=default_preferences(),
            )
            self._apply_link(user, assertion)
            db.add(user)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Failed to resolve federated user {assertion.provider_id}: {exc}")
            raise FederationFailedError()

        db.refresh(user)
        logger.info(f"Created user {user.id} from {assertion.provider} identity")
        return user

    @staticmethod
    def _apply_link(user: User, assertion: FederatedAssertion) -> None:
        user.federated_provider = assertion.provider
        user.federated_id = assertion.provider_id
        user.federated_email = assertion.email
        if assertion.avatar_url and not user.avatar_url:
            user.avatar_url = assertion.avatar_url

    async def complete(self, db: Session, code: str, state: str, nonce: Optional[str]) -> Tuple[User, TokenPair]:
        """Finish a login-intent round trip; database work runs in the threadpool."""
        assertion = await self.exchange_code(code, state, nonce=nonce)
        user = await run_in_threadpool(self.resolve_user, db, assertion)
        pair = await run_in_threadpool(self.ledger.issue_pair, db, user)
        return user, pair

    def link(self, db: Session, user: User, assertion: FederatedAssertion) -> User:
        """Attach a provider identity to an already authenticated user"""
        if user.federated_id == assertion.provider_id:
            return user
        if user.federated_id:
            raise ResourceAlreadyExistsError("Federated identity link")

        owner = (
            db.query(User)
            .filter(User.federated_id == assertion.provider_id)
            .first()
        )
        if owner is not None:
            raise ResourceAlreadyExistsError("Federated identity")

        self._apply_link(user, assertion)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise ResourceAlreadyExistsError("Federated identity")
        db.refresh(user)
        logger.info(f"Linked {assertion.provider} identity to user {user.id}")
        return user

    def unlink(self, db: Session, user: User) -> User:
        if not user.federated_id:
            raise ValidationError("No federated identity is linked")
        if not user.password_hash:
            raise ValidationError("Set a password before unlinking the only sign-in method")

        user.federated_provider = None
        user.federated_id = None
        user.federated_email = None
        db.commit()
        db.refresh(user)
        logger.info(f"Unlinked federated identity from user {user.id}")
        return user
