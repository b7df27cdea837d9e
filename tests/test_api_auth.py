from urllib.parse import parse_qs, urlsplit

from authgate.core.security import get_password_hash
from authgate.models.user import User
from authgate.services.federation_service import FederationService
from conftest import GOOGLE_SETTINGS, FailingSender, google_transport, make_settings

API = "/api/v1"
PASSWORD = "Passw0rd!"


def _register(client, email="alice@example.com", password=PASSWORD):
    response = client.post(
        f"{API}/auth/register",
        json={"email": email, "password": password, "firstName": "Alice"},
    )
    assert response.status_code == 201, response.text
    return response.json()


def _login(client, email="alice@example.com", password=PASSWORD):
    return client.post(f"{API}/auth/login", json={"email": email, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _admin_headers(db, services, role="admin"):
    admin = User(
        email=f"{role}@example.com",
        password_hash=get_password_hash(PASSWORD),
        role=role,
        is_active=True,
    )
    db.add(admin)
    db.commit()
    db.refresh(admin)
    return admin, _bearer(services.issuer.issue_access_token(admin.id, admin.role))


def test_register_and_login(client):
    body = _register(client)

    assert body["user"]["email"] == "alice@example.com"
    assert body["user"]["firstName"] == "Alice"
    assert body["user"]["role"] == "user"
    assert body["user"]["isVerified"] is False
    assert body["tokenType"] == "bearer"
    assert body["accessToken"] and body["refreshToken"]
    assert "passwordHash" not in body["user"]

    response = _login(client, email="ALICE@example.com")
    assert response.status_code == 200
    assert response.json()["user"]["id"] == body["user"]["id"]
    assert response.json()["user"]["lastLogin"] is not None


def test_register_rejects_duplicates_and_weak_passwords(client):
    _register(client)

    duplicate = client.post(f"{API}/auth/register", json={"email": "Alice@Example.com", "password": PASSWORD})
    assert duplicate.status_code == 400
    assert duplicate.json()["code"] == "duplicate_email"

    weak = client.post(f"{API}/auth/register", json={"email": "bob@example.com", "password": "short"})
    assert weak.status_code == 400
    assert weak.json()["code"] == "weak_password"

    malformed = client.post(f"{API}/auth/register", json={"email": "not-an-email", "password": PASSWORD})
    assert malformed.status_code == 400
    assert malformed.json()["code"] == "validation_error"


def test_login_failures_are_uniform(client):
    _register(client)

    wrong_password = _login(client, password="Wr0ngpass!")
    unknown_email = _login(client, email="nobody@example.com")

    assert wrong_password.status_code == unknown_email.status_code == 401
    assert wrong_password.json()["error"] == unknown_email.json()["error"]
    assert wrong_password.json()["code"] == unknown_email.json()["code"] == "invalid_credentials"


def test_refresh_rotates_and_rejects_replay(client):
    tokens = _register(client)

    rotated = client.post(f"{API}/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]})
    assert rotated.status_code == 200
    assert rotated.json()["refreshToken"] != tokens["refreshToken"]
    assert client.get(f"{API}/auth/me", headers=_bearer(rotated.json()["accessToken"])).status_code == 200

    replay = client.post(f"{API}/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]})
    assert replay.status_code == 401
    assert replay.json()["code"] == "invalid_or_expired"


def test_logout_revokes_the_presented_token(client):
    tokens = _register(client)
    other = _login(client).json()

    response = client.post(
        f"{API}/auth/logout",
        json={"refreshToken": tokens["refreshToken"]},
        headers=_bearer(tokens["accessToken"]),
    )
    assert response.status_code == 200
    assert response.json()["revoked"] == 1

    assert client.post(f"{API}/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]}).status_code == 401
    assert client.post(f"{API}/auth/refresh-token", json={"refreshToken": other["refreshToken"]}).status_code == 200


def test_logout_cannot_revoke_someone_elses_token(client):
    alice = _register(client)
    bob = _register(client, email="bob@example.com")

    response = client.post(
        f"{API}/auth/logout",
        json={"refreshToken": bob["refreshToken"]},
        headers=_bearer(alice["accessToken"]),
    )
    assert response.status_code == 200
    assert response.json()["revoked"] == 0

    assert client.post(f"{API}/auth/refresh-token", json={"refreshToken": bob["refreshToken"]}).status_code == 200


def test_logout_all_ends_every_session(client):
    tokens = _register(client)
    other = _login(client).json()

    response = client.post(f"{API}/auth/logout-all", headers=_bearer(tokens["accessToken"]))
    assert response.status_code == 200
    assert response.json()["revoked"] == 2

    for refresh in (tokens["refreshToken"], other["refreshToken"]):
        assert client.post(f"{API}/auth/refresh-token", json={"refreshToken": refresh}).status_code == 401


def test_me_requires_a_valid_access_token(client, services):
    missing = client.get(f"{API}/auth/me")
    assert missing.status_code == 401
    assert missing.json()["code"] == "missing_token"

    garbage = client.get(f"{API}/auth/me", headers=_bearer("not-a-token"))
    assert garbage.status_code == 401
    assert garbage.json()["code"] == "invalid_token"

    state = services.issuer.issue_state_token(60)
    wrong_kind = client.get(f"{API}/auth/me", headers=_bearer(state))
    assert wrong_kind.status_code == 401
    assert wrong_kind.json()["code"] == "invalid_token_type"


def test_update_profile(client):
    tokens = _register(client)
    headers = _bearer(tokens["accessToken"])

    response = client.put(
        f"{API}/auth/me",
        json={"lastName": "Liddell", "phoneNumber": "+15551234567", "preferences": {"theme": "dark", "beta": True}},
        headers=headers,
    )
    assert response.status_code == 200
    user = response.json()
    assert user["lastName"] == "Liddell"
    assert user["phoneNumber"] == "+15551234567"
    assert user["phoneVerified"] is False
    assert user["preferences"]["theme"] == "dark"
    assert user["preferences"]["beta"] is True

    invalid = client.put(f"{API}/auth/me", json={"preferences": {"theme": "neon"}}, headers=headers)
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "validation_error"


def test_email_otp_flow(client, email_sender):
    _register(client)

    sent = client.post(f"{API}/auth/send-email-otp", json={"email": "alice@example.com"})
    assert sent.status_code == 200
    assert sent.json()["expiresIn"] == 180
    destination, code, _ = email_sender.sent[-1]
    assert destination == "alice@example.com"

    wrong = "000000" if code != "000000" else "111111"
    rejected = client.post(
        f"{API}/auth/verify-otp",
        json={"otpCode": wrong, "verificationType": "email", "email": "alice@example.com"},
    )
    assert rejected.status_code == 400
    assert rejected.json()["code"] == "otp_invalid_or_expired"

    verified = client.post(
        f"{API}/auth/verify-otp",
        json={"otpCode": code, "verificationType": "email", "email": "alice@example.com"},
    )
    assert verified.status_code == 200
    assert verified.json()["user"]["isVerified"] is True
    assert verified.json()["accessToken"]

    replay = client.post(
        f"{API}/auth/verify-otp",
        json={"otpCode": code, "verificationType": "email", "email": "alice@example.com"},
    )
    assert replay.status_code == 400


def test_sms_otp_flow(client, sms_sender):
    tokens = _register(client)
    client.put(f"{API}/auth/me", json={"phoneNumber": "+15551234567"}, headers=_bearer(tokens["accessToken"]))

    sent = client.post(f"{API}/auth/send-sms-otp", json={"phoneNumber": "+15551234567"})
    assert sent.status_code == 200

    verified = client.post(
        f"{API}/auth/verify-otp",
        json={"otpCode": sms_sender.last_code, "verificationType": "sms", "phoneNumber": "+15551234567"},
    )
    assert verified.status_code == 200
    assert verified.json()["user"]["phoneVerified"] is True


def test_otp_errors(client, services):
    unknown = client.post(f"{API}/auth/send-email-otp", json={"email": "nobody@example.com"})
    assert unknown.status_code == 404

    missing_destination = client.post(f"{API}/auth/verify-otp", json={"otpCode": "123456", "verificationType": "sms"})
    assert missing_destination.status_code == 400

    _register(client)
    services.otp_engine.senders["email"] = FailingSender()
    failed = client.post(f"{API}/auth/send-email-otp", json={"email": "alice@example.com"})
    assert failed.status_code == 502
    assert failed.json()["code"] == "delivery_failed"


def test_password_reset_flow(client, email_sender):
    tokens = _register(client)

    unknown = client.post(f"{API}/auth/forgot-password", json={"email": "nobody@example.com"})
    known = client.post(f"{API}/auth/forgot-password", json={"email": "alice@example.com"})
    assert unknown.status_code == known.status_code == 200
    assert unknown.json()["message"] == known.json()["message"]
    assert len(email_sender.reset_links) == 1

    destination, link = email_sender.reset_links[0]
    assert destination == "alice@example.com"
    token = link.split("#token=", 1)[1]

    reset = client.post(f"{API}/auth/reset-password", json={"token": token, "newPassword": "N3wpassword!"})
    assert reset.status_code == 200

    again = client.post(f"{API}/auth/reset-password", json={"token": token, "newPassword": "An0therpass!"})
    assert again.status_code == 400

    assert _login(client).status_code == 401
    assert _login(client, password="N3wpassword!").status_code == 200
    assert client.post(f"{API}/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]}).status_code == 401


def test_change_password(client):
    tokens = _register(client)
    headers = _bearer(tokens["accessToken"])

    wrong = client.post(
        f"{API}/auth/change-password",
        json={"currentPassword": "Wr0ngpass!", "newPassword": "N3wpassword!"},
        headers=headers,
    )
    assert wrong.status_code == 401

    changed = client.post(
        f"{API}/auth/change-password",
        json={"currentPassword": PASSWORD, "newPassword": "N3wpassword!"},
        headers=headers,
    )
    assert changed.status_code == 200
    assert changed.json()["data"]["revoked"] == 1
    assert _login(client, password="N3wpassword!").status_code == 200


def test_admin_deactivation_blocks_refresh_and_requests(client, db, services):
    tokens = _register(client)
    user_id = tokens["user"]["id"]
    _, admin_headers = _admin_headers(db, services)

    forbidden = client.patch(
        f"{API}/users/{user_id}/status",
        json={"isActive": False},
        headers=_bearer(tokens["accessToken"]),
    )
    assert forbidden.status_code == 403

    response = client.patch(f"{API}/users/{user_id}/status", json={"isActive": False}, headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["isActive"] is False

    refresh = client.post(f"{API}/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]})
    assert refresh.status_code == 401
    assert refresh.json()["code"] == "user_inactive_or_missing"
    me = client.get(f"{API}/auth/me", headers=_bearer(tokens["accessToken"]))
    assert me.status_code == 401
    assert me.json()["code"] == "account_deactivated"

    events = client.get(f"{API}/users/{user_id}/audit-events", headers=admin_headers)
    assert events.status_code == 200


def test_admin_cannot_manage_self_or_super_admin(client, db, services):
    admin, admin_headers = _admin_headers(db, services)
    root, _ = _admin_headers(db, services, role="super_admin")

    own = client.patch(f"{API}/users/{admin.id}/status", json={"isActive": False}, headers=admin_headers)
    assert own.status_code == 400
    above = client.delete(f"{API}/users/{root.id}", headers=admin_headers)
    assert above.status_code == 403
    missing = client.delete(f"{API}/users/999999", headers=admin_headers)
    assert missing.status_code == 404


def test_admin_delete_user(client, db, services):
    tokens = _register(client)
    user_id = tokens["user"]["id"]
    _, admin_headers = _admin_headers(db, services)

    response = client.delete(f"{API}/users/{user_id}", headers=admin_headers)
    assert response.status_code == 200
    assert client.get(f"{API}/users/{user_id}", headers=admin_headers).status_code == 404
    me = client.get(f"{API}/auth/me", headers=_bearer(tokens["accessToken"]))
    assert me.json()["code"] == "user_not_found"


def test_federated_callback_hands_tokens_to_frontend(client, services):
    services.federation = FederationService(
        make_settings(**GOOGLE_SETTINGS),
        services.issuer,
        services.ledger,
        transport=google_transport({"id": "g-1", "email": "fed@example.com", "verified_email": True}),
    )
    start = client.get(f"{API}/auth/federated/start", follow_redirects=False)
    assert start.status_code == 302
    state = parse_qs(urlsplit(start.headers["location"]).query)["state"][0]

    callback = client.get(
        f"{API}/auth/federated/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )
    assert callback.status_code == 302
    location = urlsplit(callback.headers["location"])
    assert location.path == "/auth/callback"
    assert not location.query
    fragment = parse_qs(location.fragment)
    me = client.get(f"{API}/auth/me", headers=_bearer(fragment["access_token"][0]))
    assert me.json()["email"] == "fed@example.com"
    assert me.json()["federatedProvider"] == "google"


def test_federated_callback_failure_redirects(client, services):
    failed = client.get(
        f"{API}/auth/federated/callback",
        params={"code": "auth-code", "state": "forged"},
        follow_redirects=False,
    )
    assert failed.status_code == 302
    assert failed.headers["location"].endswith("/login?error=federation_failed")

    denied = client.get(f"{API}/auth/federated/callback", params={"error": "access_denied"}, follow_redirects=False)
    assert denied.headers["location"].endswith("/login?error=federation_failed")


def _google(services, userinfo, calls=None):
    services.federation = FederationService(
        make_settings(**GOOGLE_SETTINGS),
        services.issuer,
        services.ledger,
        transport=google_transport(userinfo, calls=calls),
    )


def _start_link(client, headers):
    start = client.get(f"{API}/auth/federated/start", params={"intent": "link"}, headers=headers)
    assert start.status_code == 200, start.text
    return parse_qs(urlsplit(start.json()["authorizationUrl"]).query)["state"][0]


def _link_fragment(client, state):
    callback = client.get(
        f"{API}/auth/federated/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )
    location = urlsplit(callback.headers["location"])
    assert location.path == "/auth/link"
    return parse_qs(location.fragment)


def test_federated_link_and_unlink(client, services):
    _google(services, {"id": "g-2", "email": "other@example.com", "verified_email": True})
    tokens = _register(client)
    headers = _bearer(tokens["accessToken"])

    fragment = _link_fragment(client, _start_link(client, headers))

    linked = client.post(
        f"{API}/auth/federated/link",
        json={"code": fragment["code"][0], "state": fragment["state"][0]},
        headers=headers,
    )
    assert linked.status_code == 200
    assert linked.json()["federatedProvider"] == "google"
    assert linked.json()["email"] == "alice@example.com"

    unlinked = client.post(f"{API}/auth/federated/unlink", headers=headers)
    assert unlinked.status_code == 200
    assert unlinked.json()["federatedProvider"] is None


def test_federated_link_start_requires_sign_in(client, services):
    _google(services, {"id": "g-3", "email": "x@example.com", "verified_email": True})
    response = client.get(f"{API}/auth/federated/start", params={"intent": "link"}, follow_redirects=False)
    assert response.status_code == 401
    assert response.json()["code"] == "missing_token"


def test_link_state_issued_to_another_user_is_refused(client, services):
    calls = []
    _google(services, {"id": "g-bob", "email": "bob@example.com", "verified_email": True}, calls)
    alice = _register(client)
    bob = _register(client, email="bob@example.com")

    fragment = _link_fragment(client, _start_link(client, _bearer(bob["accessToken"])))

    hijack = client.post(
        f"{API}/auth/federated/link",
        json={"code": fragment["code"][0], "state": fragment["state"][0]},
        headers=_bearer(alice["accessToken"]),
    )
    assert hijack.status_code == 401
    assert hijack.json()["code"] == "federation_failed"
    assert calls == []

    me = client.get(f"{API}/auth/me", headers=_bearer(alice["accessToken"]))
    assert me.json()["federatedProvider"] is None


def test_federated_callback_requires_the_browser_nonce(client, services):
    calls = []
    _google(services, {"id": "g-4", "email": "fed@example.com", "verified_email": True}, calls)
    start = client.get(f"{API}/auth/federated/start", follow_redirects=False)
    assert "httponly" in start.headers["set-cookie"].lower()
    state = parse_qs(urlsplit(start.headers["location"]).query)["state"][0]

    client.cookies.clear()
    callback = client.get(
        f"{API}/auth/federated/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )
    assert callback.status_code == 302
    assert callback.headers["location"].endswith("/login?error=federation_failed")
    assert calls == []


def test_login_is_rate_limited(client, config):
    _register(client)
    statuses = [_login(client, password="Wr0ngpass!").status_code for _ in range(config.AUTH_RATE_LIMIT + 1)]
    assert statuses[:-1] == [401] * config.AUTH_RATE_LIMIT
    assert statuses[-1] == 429


def test_health_metrics_and_root(client):
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["readiness"]["database"]["ok"] is True
    assert health.json()["readiness"]["sweeper"]["running"] is False
    assert health.headers["X-Content-Type-Options"] == "nosniff"
    assert health.headers["X-Request-ID"]

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "authgate_http_requests_total" in metrics.text

    assert client.get("/").json()["name"] == "AuthGate"
