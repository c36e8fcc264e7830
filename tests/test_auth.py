from app.saudemax.db import session_scope
from app.saudemax.models import AuditEvent, User
from app.saudemax.modules.affiliates.models import AffiliateReferral, AffiliateVisit
from app.saudemax.modules.affiliates.service import create_affiliate_user


def _signup(client, email="new@example.com", **overrides):
    data = {
        "email": email,
        "password": "password-123",
        "password_confirm": "password-123",
        "full_name": "New Member",
        "preferred_language": "en",
    }
    data.update(overrides)
    return client.post("/auth/signup", data=data)


def _active_affiliate(app, email="aff@example.com") -> str:
    with session_scope(app) as s:
        admin = s.query(User).filter(User.email == "admin@example.com").one()
        affiliate = create_affiliate_user(
            s,
            {"email": email, "password": "password-123", "payout_method": "paypal"},
            base_url="http://testserver",
            commission_rate=10.0,
            actor=admin,
        )
        return affiliate.affiliate_code


def test_signup_creates_member_and_goes_to_enrollment(app, client):
    r = _signup(client)
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/member/enroll")

    with session_scope(app) as s:
        u = s.query(User).filter(User.email == "new@example.com").one()
        assert u.role_key == "member"
        assert s.query(AuditEvent).filter(AuditEvent.action == "auth.signup").count() == 1

    # Signed in straight away
    r = client.get("/member/enroll")
    assert r.status_code == 200


def test_signup_rejects_bad_payload(client):
    r = _signup(client, password="short", password_confirm="short")
    assert r.status_code == 400
    assert "at least 8 characters" in r.get_data(as_text=True)

    r = _signup(client, password_confirm="different-123")
    assert r.status_code == 400
    assert "Passwords do not match." in r.get_data(as_text=True)


def test_signup_duplicate_email(client):
    assert _signup(client).status_code == 302
    client.get("/auth/logout")
    r = _signup(client, email="NEW@example.com")
    assert r.status_code == 400
    assert "already exists" in r.get_data(as_text=True)


def test_ref_link_visit_then_signup_is_attributed(app, client):
    code = _active_affiliate(app)

    r = client.get(f"/?ref={code.lower()}")
    assert r.status_code == 200
    assert any("affiliate_ref=" in c for c in r.headers.getlist("Set-Cookie"))
    with client.session_transaction() as sess:
        assert sess["affiliate_ref"] == code

    r = _signup(client, email="referred@example.com")
    assert r.status_code == 302

    with session_scope(app) as s:
        referred = s.query(User).filter(User.email == "referred@example.com").one()
        referral = s.query(AffiliateReferral).one()
        assert referral.referred_user_id == referred.id
        assert referral.conversion_type == "signup"
        assert referral.status == "pending"
        visit = s.query(AffiliateVisit).one()
        assert visit.converted is True
    with client.session_transaction() as sess:
        assert "affiliate_ref" not in sess


def test_unknown_ref_code_does_not_block_signup(app, client):
    client.get("/?affiliate_code=NOPE1234")
    r = _signup(client, email="plain@example.com")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.query(AffiliateReferral).count() == 0
        assert s.query(AffiliateVisit).count() == 0


def test_logout_clears_session(client, login):
    login()
    assert client.get("/admin/").status_code == 200
    r = client.get("/auth/logout")
    assert r.status_code == 302
    assert client.get("/admin/").status_code == 302


def test_login_respects_local_next_only(client):
    r = client.post(
        "/auth/login",
        data={"email": "admin@example.com", "password": "admin-pass-1", "next": "/admin/audit"},
    )
    assert r.headers["Location"].endswith("/admin/audit")
    client.get("/auth/logout")

    r = client.post(
        "/auth/login",
        data={"email": "admin@example.com", "password": "admin-pass-1", "next": "//evil.example.com/"},
    )
    assert r.headers["Location"].endswith("/admin/")
