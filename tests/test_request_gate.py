from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi.security import HTTPAuthorizationCredentials

from authgate.api.deps import (
    get_current_admin_user,
    get_current_user,
    get_optional_current_user,
    require_role,
)
from authgate.core.exceptions import (
    AccountDeactivatedError,
    AuthorizationError,
    InvalidTokenTypeError,
    MissingTokenError,
    TokenExpiredError,
    TokenInvalidError,
    UserNotFoundError,
)
from authgate.core.security import AccessTokenIssuer, get_password_hash
from authgate.core.timeutil import utcnow
from authgate.models.user import User
from conftest import FakeClock


def _request():
    return SimpleNamespace(state=SimpleNamespace())


def _bearer(token):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def _make_user(db, role="user", is_active=True):
    user = User(
        email=f"{role}-{is_active}@example.com",
        password_hash=get_password_hash("Passw0rd!"),
        role=role,
        is_active=is_active,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _authenticate(services, db, token):
    request = _request()
    user = get_current_user(request, _bearer(token), db, services)
    return request, user


def test_valid_access_token_attaches_identity(services, db):
    user = _make_user(db)
    token = services.issuer.issue_access_token(user.id, user.role)

    request, current = _authenticate(services, db, token)

    assert current.id == user.id
    identity = request.state.identity
    assert identity.user_id == user.id
    assert identity.email == user.email
    assert identity.role == "user"
    assert identity.is_verified is False
    assert identity.token_id
    assert identity.token_expires_at > identity.token_issued_at
    assert set(identity.audit_metadata()) == {"jti", "iat", "exp"}


def test_missing_token(services, db):
    with pytest.raises(MissingTokenError):
        get_current_user(_request(), None, db, services)


def test_expired_token_keeps_its_kind(services, db):
    user = _make_user(db)
    stale = AccessTokenIssuer.from_settings(services.settings, secret=services.settings.SECRET_KEY)
    stale._clock = FakeClock(utcnow() - timedelta(days=8))
    with pytest.raises(TokenExpiredError):
        _authenticate(services, db, stale.issue_access_token(user.id, user.role))


def test_other_verification_failures_become_invalid_token(services, db):
    with pytest.raises(TokenInvalidError):
        _authenticate(services, db, "garbage")

    future = AccessTokenIssuer.from_settings(services.settings, secret=services.settings.SECRET_KEY)
    future._clock = FakeClock(utcnow() + timedelta(hours=1))
    with pytest.raises(TokenInvalidError):
        _authenticate(services, db, future.issue_access_token(1, "user"))


def test_refresh_and_state_tokens_never_authenticate(services, db):
    user = _make_user(db)
    refresh = services.ledger.issue(db, user.id)
    with pytest.raises(TokenInvalidError):
        _authenticate(services, db, refresh.token)

    state = services.issuer.issue_state_token(600)
    with pytest.raises(InvalidTokenTypeError):
        _authenticate(services, db, state)


def test_unknown_subject(services, db):
    with pytest.raises(UserNotFoundError):
        _authenticate(services, db, services.issuer.issue_access_token(424242, "user"))


def test_deactivated_subject(services, db):
    user = _make_user(db, is_active=False)
    with pytest.raises(AccountDeactivatedError):
        _authenticate(services, db, services.issuer.issue_access_token(user.id, user.role))


def test_optional_gate_swallows_failures(services, db):
    user = _make_user(db)
    assert get_optional_current_user(_request(), None, db, services) is None
    assert get_optional_current_user(_request(), _bearer("garbage"), db, services) is None
    assert get_optional_current_user(
        _request(), _bearer(services.issuer.issue_state_token(60)), db, services
    ) is None

    request = _request()
    token = services.issuer.issue_access_token(user.id, user.role)
    assert get_optional_current_user(request, _bearer(token), db, services).id == user.id
    assert request.state.identity.user_id == user.id


def test_role_requirements(db):
    member = _make_user(db)
    admin = _make_user(db, role="admin")
    root = _make_user(db, role="super_admin")

    with pytest.raises(AuthorizationError) as excinfo:
        get_current_admin_user(member)
    assert excinfo.value.status_code == 403
    assert get_current_admin_user(admin) is admin
    assert get_current_admin_user(root) is root

    only_root = require_role("super_admin")
    with pytest.raises(AuthorizationError):
        only_root(admin)
    assert only_root(root) is root
