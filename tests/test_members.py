from datetime import date, timedelta
from pathlib import Path

import pytest

from app.saudemax.accounts import create_user
from app.saudemax.db import session_scope
from app.saudemax.models import AuditEvent, User
from app.saudemax.modules.members.models import (
    MemberDependent,
    MemberDocument,
    MemberProfile,
    NotificationPreference,
    ShareRequest,
    SupportMessage,
    SupportTicket,
)
from app.saudemax.modules.members.service import (
    DependentError,
    ShareRequestError,
    SupportTicketError,
    add_dependent,
    add_ticket_message,
    billing_totals,
    build_document_storage_key,
    can_view_document,
    create_invoice,
    delete_document,
    enroll_member,
    get_notification_preferences,
    mark_invoice,
    next_request_number,
    open_ticket,
    parse_dependent_rows,
    remove_dependent,
    review_share_request,
    set_member_status,
    share_request_totals,
    submit_share_request,
    update_notification_preferences,
    upload_document,
    validate_dependent_payload,
    validate_share_request_payload,
    visible_documents,
)
from app.saudemax.storage import LocalStorage


def _admin(db):
    return db.query(User).filter(User.email == "admin@example.com").one()


def _member(db, email="member@example.com", status="active", plan="complete-family"):
    user = create_user(db, email=email, password="password-123")
    profile = enroll_member(db, user, plan)
    if status != "pending":
        set_member_status(db, profile, status, _admin(db))
    return profile


def _claim(**overrides):
    payload = {
        "type": "medical",
        "description": "ER visit",
        "provider": "General Hospital",
        "service_date": (date.today() - timedelta(days=3)).isoformat(),
        "requested_amount": "1,250.00",
    }
    payload.update(overrides)
    return payload


def test_enroll_member(db):
    user = create_user(db, email="m@example.com", password="password-123")
    profile = enroll_member(db, user, "premium-individual", frequency="annual")
    assert profile.status == "pending"
    assert profile.member_number == f"SM-{profile.id:06d}"
    assert profile.monthly_contribution == 499
    assert profile.next_billing_date == date.today() + timedelta(days=365)
    assert profile.iua_level == "1500"
    assert profile.dependents == []

    with pytest.raises(ValueError, match="already enrolled"):
        enroll_member(db, user, "essential-individual")
    other = create_user(db, email="o@example.com", password="password-123")
    with pytest.raises(ValueError, match="valid plan"):
        enroll_member(db, other, "platinum")


def test_member_status_cancelled_is_final(db):
    admin = _admin(db)
    profile = _member(db)
    set_member_status(db, profile, "cancelled", admin, reason="moved abroad")
    with pytest.raises(ValueError):
        set_member_status(db, profile, "active", admin)
    with pytest.raises(ValueError):
        set_member_status(db, _member(db, email="x@example.com"), "frozen", admin)


def test_validate_share_request_payload():
    assert validate_share_request_payload(_claim()) == []
    tomorrow = (date.today() + timedelta(days=1)).isoformat()
    assert "Service date cannot be in the future." in validate_share_request_payload(_claim(service_date=tomorrow))
    assert "Service date must be YYYY-MM-DD." in validate_share_request_payload(_claim(service_date="03/01/2025"))
    assert "Requested amount must be greater than zero." in validate_share_request_payload(_claim(requested_amount="0"))
    for bad in ("nan", "inf", "-inf"):
        assert "Requested amount must be greater than zero." in validate_share_request_payload(_claim(requested_amount=bad))
    assert len(validate_share_request_payload({})) == 5


def test_share_request_lifecycle(db):
    admin = _admin(db)
    profile = _member(db)
    req = submit_share_request(db, profile, _claim(), profile.user)
    assert req.status == "submitted"
    assert req.requested_amount == 1250.0
    assert req.request_number == f"SR-{date.today().year}-0001"
    assert next_request_number(db) == f"SR-{date.today().year}-0002"

    with pytest.raises(ShareRequestError):
        review_share_request(db, req, "approved", admin, approved_amount=100.0)
    review_share_request(db, req, "under_review", admin)
    with pytest.raises(ShareRequestError, match="between 0 and the requested amount"):
        review_share_request(db, req, "approved", admin, approved_amount=2000.0)
    with pytest.raises(ShareRequestError, match="between 0 and the requested amount"):
        review_share_request(db, req, "approved", admin, approved_amount=float("nan"))
    assert req.status == "under_review"
    review_share_request(db, req, "approved", admin, approved_amount=1000.0, review_notes="Partial: out of network")
    assert req.reviewed_by_user_id == admin.id
    assert req.review_notes == "Partial: out of network"
    review_share_request(db, req, "paid", admin)
    assert req.paid_at is not None
    with pytest.raises(ShareRequestError):
        review_share_request(db, req, "denied", admin)

    denied = submit_share_request(db, profile, _claim(requested_amount="80"), profile.user)
    review_share_request(db, denied, "under_review", admin)
    review_share_request(db, denied, "denied", admin)

    assert share_request_totals([req, denied]) == {"requested": 1330.0, "approved": 1000.0, "paid": 1000.0}


def test_only_active_members_submit(db):
    profile = _member(db, status="pending")
    with pytest.raises(ShareRequestError, match="Only active members"):
        submit_share_request(db, profile, _claim(), profile.user)


def test_ticket_flow(db):
    admin = _admin(db)
    profile = _member(db)
    ticket = open_ticket(db, profile.user, {"subject": "Card", "description": "Lost my ID card", "priority": "high"})
    assert ticket.status == "open"
    assert ticket.category == "general"

    msg = add_ticket_message(db, ticket, admin, "We will mail a new one.")
    assert msg.sender_type == "admin"

    from app.saudemax.modules.members.service import set_ticket_status

    set_ticket_status(db, ticket, "resolved", admin)
    db.flush()
    last = db.query(SupportMessage).filter(SupportMessage.ticket_id == ticket.id).order_by(SupportMessage.id.desc()).first()
    assert last.sender_type == "system"
    assert last.content == "Status changed from open to resolved."

    # A member reply reopens a resolved ticket
    add_ticket_message(db, ticket, profile.user, "It has not arrived yet.")
    assert ticket.status == "open"

    set_ticket_status(db, ticket, "closed", admin)
    with pytest.raises(SupportTicketError, match="closed"):
        add_ticket_message(db, ticket, profile.user, "Hello?")
    with pytest.raises(SupportTicketError):
        set_ticket_status(db, ticket, "open", admin)
    with pytest.raises(SupportTicketError):
        add_ticket_message(db, open_ticket(db, profile.user, {"subject": "a", "description": "b"}), profile.user, "  ")


def test_document_upload_and_visibility(db, tmp_path):
    admin = _admin(db)
    storage = LocalStorage(root=tmp_path / "storage")
    mine = _member(db)
    theirs = _member(db, email="other@example.com")

    private = upload_document(
        db,
        storage,
        member=mine,
        file_bytes=b"%PDF-1.4 card",
        filename="id card.pdf",
        content_type="application/pdf",
        name="ID card",
        doc_type="id_card",
        user=admin,
    )
    public = upload_document(
        db,
        storage,
        member=None,
        file_bytes=b"guidelines",
        filename="guidelines.pdf",
        content_type="application/pdf",
        name="",
        doc_type="guidelines",
        user=admin,
        is_public=True,
    )
    assert private.original_filename == "id_card.pdf"
    assert private.storage_key.startswith(f"documents/members/{mine.id}/")
    assert private.storage_key.endswith(f"{private.sha256[:12]}_id_card.pdf")
    assert public.name == "guidelines.pdf"
    assert storage.exists(private.storage_key)
    with storage.open(private.storage_key) as fh:
        assert fh.read() == b"%PDF-1.4 card"

    assert {d.id for d in visible_documents(db, mine)} == {private.id, public.id}
    assert {d.id for d in visible_documents(db, theirs)} == {public.id}
    assert {d.id for d in visible_documents(db, None)} == {public.id}
    assert can_view_document(private, mine) is True
    assert can_view_document(private, theirs) is False

    with pytest.raises(ValueError, match="must be public"):
        upload_document(
            db, storage, member=None, file_bytes=b"x", filename="x.pdf", content_type=None, name="x", doc_type="other", user=admin
        )
    with pytest.raises(ValueError, match="empty"):
        upload_document(
            db, storage, member=mine, file_bytes=b"", filename="x.pdf", content_type=None, name="x", doc_type="other", user=admin
        )

    key = private.storage_key
    delete_document(db, storage, private, admin)
    assert not storage.exists(key)
    assert {d.id for d in visible_documents(db, mine)} == {public.id}
    assert db.query(AuditEvent).filter(AuditEvent.action == "document.delete").count() == 1


def test_build_document_storage_key():
    key = build_document_storage_key(7, "../../etc/passwd", upload_date=date(2025, 1, 2))
    assert key == "documents/members/7/2025-01-02/etc_passwd"
    assert build_document_storage_key(None, "", upload_date=date(2025, 1, 2)) == "documents/public/2025-01-02/document.bin"


def test_invoices(db):
    admin = _admin(db)
    profile = _member(db)
    due = date(2026, 5, 1)
    inv1 = create_invoice(db, profile, amount=749.0, due_date=due, description="May contribution", actor=admin)
    inv2 = create_invoice(db, profile, amount=749.0, due_date=due, description=None, actor=admin)
    assert inv1.invoice_number == "INV-2026-00001"
    assert inv2.invoice_number == "INV-2026-00002"
    with pytest.raises(ValueError):
        create_invoice(db, profile, amount=0, due_date=due, description=None, actor=admin)

    mark_invoice(db, inv1, "paid", admin, payment_method="card")
    assert inv1.paid_date == date.today()
    assert inv1.payment_method == "card"
    with pytest.raises(ValueError, match="Paid invoices"):
        mark_invoice(db, inv1, "failed", admin)
    mark_invoice(db, inv2, "overdue", admin)
    assert billing_totals([inv1, inv2]) == {"paid": 749.0, "outstanding": 749.0}


# ---------- HTTP ----------
def _dependent(**overrides):
    payload = {
        "first_name": "Ana",
        "last_name": "Silva",
        "date_of_birth": "2015-06-01",
        "relation": "child",
        "gender": "female",
    }
    payload.update(overrides)
    return payload


def test_enroll_with_iua_and_dependents(db):
    user = create_user(db, email="fam@example.com", password="password-123")
    profile = enroll_member(
        db,
        user,
        "complete-family",
        iua_level="3000",
        dependents=[_dependent(), _dependent(first_name="Rui", date_of_birth="1985-02-10", relation="spouse", gender="male")],
    )
    assert profile.iua_level == "3000"
    assert [d.full_name for d in profile.dependents] == ["Ana Silva", "Rui Silva"]
    ev = db.query(AuditEvent).filter(AuditEvent.action == "member.enroll").one()
    assert '"dependents": 2' in ev.metadata_json

    solo = create_user(db, email="solo@example.com", password="password-123")
    with pytest.raises(DependentError, match="family plan"):
        enroll_member(db, solo, "essential-individual", dependents=[_dependent()])
    with pytest.raises(ValueError, match="IUA"):
        enroll_member(db, solo, "essential-individual", iua_level="2000")
    with pytest.raises(DependentError, match="Dependent 2: Children must be under 26"):
        enroll_member(db, solo, "essential-family", dependents=[_dependent(), _dependent(date_of_birth="1990-01-01")])
    db.flush()
    assert db.query(MemberProfile).filter(MemberProfile.user_id == solo.id).count() == 0


def test_validate_dependent_payload():
    today = date(2026, 1, 15)
    assert validate_dependent_payload(_dependent(), today=today) == []
    assert validate_dependent_payload({}, today=today) == [
        "First name is required.",
        "Last name is required.",
        "Invalid relationship. Must be one of: spouse, child, stepchild, adopted_child, foster_child, other",
        "Invalid gender. Must be one of: male, female, other",
        "Date of birth is required.",
    ]
    assert validate_dependent_payload(_dependent(date_of_birth="2030-01-01"), today=today) == [
        "Date of birth cannot be in the future."
    ]
    assert validate_dependent_payload(_dependent(date_of_birth="01/02/2010"), today=today) == [
        "Date of birth must be YYYY-MM-DD."
    ]
    # Child age limit: 26th birthday is out, the day before is in
    assert validate_dependent_payload(_dependent(date_of_birth="2000-01-15"), today=today) == [
        "Children must be under 26 years old."
    ]
    assert validate_dependent_payload(_dependent(date_of_birth="2000-01-16"), today=today) == []
    assert validate_dependent_payload(_dependent(date_of_birth="1950-01-01", relation="spouse"), today=today) == []


def test_parse_dependent_rows_drops_blank_rows():
    rows = parse_dependent_rows(
        ["Ana", "", ""], ["Silva", "", ""], ["2015-06-01", "", ""], ["child", "", ""], ["female", "", ""]
    )
    assert rows == [_dependent()]
    assert parse_dependent_rows([], [], [], [], []) == []


def test_add_and_remove_dependents(db):
    member = _member(db)
    dep = add_dependent(db, member, _dependent(), member.user)
    assert member.dependents == [dep]
    assert db.query(AuditEvent).filter(AuditEvent.action == "member.dependent_add").count() == 1
    with pytest.raises(DependentError, match="First name"):
        add_dependent(db, member, _dependent(first_name=" "), member.user)

    other = _member(db, email="other@example.com")
    with pytest.raises(DependentError, match="does not belong"):
        remove_dependent(db, other, dep, other.user)

    remove_dependent(db, member, dep, member.user)
    assert member.dependents == []
    assert db.query(MemberDependent).count() == 0
    assert db.query(AuditEvent).filter(AuditEvent.action == "member.dependent_remove").count() == 1

    single = _member(db, email="single@example.com", plan="complete-individual")
    with pytest.raises(DependentError, match="family plan"):
        add_dependent(db, single, _dependent(), single.user)
    set_member_status(db, other, "cancelled", _admin(db))
    with pytest.raises(DependentError, match="Cancelled"):
        add_dependent(db, other, _dependent(), other.user)


def test_notification_preferences(db):
    member = _member(db)
    prefs = get_notification_preferences(db, member)
    assert prefs.email_notifications and prefs.sms_notifications
    assert prefs.share_request_updates and prefs.billing_reminders
    assert prefs.marketing_emails is False
    assert get_notification_preferences(db, member).id == prefs.id

    changed = update_notification_preferences(
        db, prefs, {"email_notifications": True, "sms_notifications": False, "marketing_emails": True}, member.user
    )
    assert changed == ["sms_notifications", "marketing_emails"]
    assert prefs.sms_notifications is False
    assert update_notification_preferences(db, prefs, {"sms_notifications": False}, member.user) == []
    assert db.query(AuditEvent).filter(AuditEvent.action == "member.notification_preferences").count() == 1


def _member_login(app, client, login, email="portal@example.com", status="active"):
    with session_scope(app) as s:
        _member(s, email=email, status=status)
    login(email, "password-123")


def test_member_without_profile_is_sent_to_enroll(client, make_user, login, post):
    make_user("fresh@example.com")
    login("fresh@example.com", "password-123")
    r = client.get("/member")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/member/enroll")

    r = post("/member/enroll", {"plan_code": "essential-family", "frequency": "monthly"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/member")
    r = client.get("/member")
    assert r.status_code == 200
    assert "SM-" in r.get_data(as_text=True)


def test_member_submits_share_request_over_http(app, client, login, post):
    _member_login(app, client, login)
    r = post("/member/share-requests/new", _claim())
    assert r.status_code == 302
    with session_scope(app) as s:
        req = s.query(ShareRequest).one()
        assert req.status == "submitted"
        req_id = req.id

    r = client.get(f"/member/share-requests/{req_id}")
    assert r.status_code == 200
    assert req.request_number in r.get_data(as_text=True)

    r = post("/member/share-requests/new", _claim(provider=""))
    assert r.status_code == 400


def test_member_cannot_see_other_members_rows(app, client, login, post):
    with session_scope(app) as s:
        owner = _member(s, email="owner@example.com")
        req_id = submit_share_request(s, owner, _claim(), owner.user).id
        ticket_id = open_ticket(s, owner.user, {"subject": "Mine", "description": "Private"}).id

    _member_login(app, client, login, email="nosy@example.com")
    assert client.get(f"/member/share-requests/{req_id}").status_code == 404
    assert client.get(f"/member/support/{ticket_id}").status_code == 404
    assert post(f"/member/support/{ticket_id}/reply", {"content": "hi"}).status_code == 404


def test_member_support_ticket_over_http(app, client, login, post):
    _member_login(app, client, login)
    r = post("/member/support", {"subject": "Billing question", "description": "Why two charges?", "category": "billing"})
    assert r.status_code == 302
    with session_scope(app) as s:
        ticket = s.query(SupportTicket).one()
        ticket_id = ticket.id
        assert ticket.category == "billing"

    r = post(f"/member/support/{ticket_id}/reply", {"content": "Any update?"})
    assert r.status_code == 302
    r = client.get(f"/member/support/{ticket_id}")
    assert "Any update?" in r.get_data(as_text=True)


def test_admin_reviews_share_request_over_http(app, client, login, post):
    with session_scope(app) as s:
        owner = _member(s, email="claimant@example.com")
        req_id = submit_share_request(s, owner, _claim(requested_amount="500"), owner.user).id

    login()
    assert client.get("/admin/share-requests").status_code == 200
    assert post(f"/admin/share-requests/{req_id}/review", {"status": "under_review"}).status_code == 302
    r = post(f"/admin/share-requests/{req_id}/review", {"status": "approved", "approved_amount": "450", "review_notes": "ok"})
    assert r.status_code == 302
    with session_scope(app) as s:
        req = s.get(ShareRequest, req_id)
        assert req.status == "approved"
        assert req.approved_amount == 450.0


def test_admin_member_status_and_export(app, client, login, post):
    with session_scope(app) as s:
        member_id = _member(s, email="pend@example.com", status="pending").id

    login()
    r = post(f"/admin/members/{member_id}/status", {"status": "active", "reason": "docs verified"})
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(MemberProfile, member_id).status == "active"

    r = client.get("/admin/members/export.csv")
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    assert "pend@example.com" in r.get_data(as_text=True)


def test_admin_uploads_public_document_members_can_download(app, client, login, post, make_user):
    import io

    login()
    r = post(
        "/admin/documents/upload",
        {
            "file": (io.BytesIO(b"rules pdf"), "rules.pdf"),
            "name": "Sharing rules",
            "type": "guidelines",
            "is_public": "1",
        },
        content_type="multipart/form-data",
    )
    assert r.status_code == 302
    assert any(Path("storage").rglob("*_rules.pdf"))
    client.get("/auth/logout")

    _member_login(app, client, login, email="reader@example.com")
    r = client.get("/member/documents")
    assert "Sharing rules" in r.get_data(as_text=True)
    r = client.get("/member/documents/1/download")
    assert r.status_code == 200
    assert r.data == b"rules pdf"

    client.get("/auth/logout")
    login()
    r = post("/admin/documents/1/delete", {})
    assert r.status_code == 302
    assert not any(Path("storage").rglob("*_rules.pdf"))
    assert post("/admin/documents/1/delete", {}).status_code == 404
    with session_scope(app) as s:
        assert s.query(MemberDocument).count() == 0


def test_enroll_with_dependents_over_http(app, client, make_user, login, post):
    make_user("family@example.com")
    login("family@example.com", "password-123")
    assert "Dependents (family plans only)" in client.get("/member/enroll").get_data(as_text=True)
    r = post(
        "/member/enroll",
        {
            "plan_code": "complete-family",
            "frequency": "monthly",
            "iua_level": "6000",
            "dependent_first_name": ["Ana", "", ""],
            "dependent_last_name": ["Silva", "", ""],
            "dependent_date_of_birth": ["2015-06-01", "", ""],
            "dependent_relation": ["child", "", ""],
            "dependent_gender": ["female", "", ""],
        },
    )
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/member")
    with session_scope(app) as s:
        profile = s.query(MemberProfile).one()
        assert profile.iua_level == "6000"
        assert [d.full_name for d in profile.dependents] == ["Ana Silva"]
    assert "Ana Silva" in client.get("/member/profile").get_data(as_text=True)


def test_individual_plan_rejects_dependents_over_http(app, client, make_user, login, post):
    make_user("single@example.com")
    login("single@example.com", "password-123")
    r = post(
        "/member/enroll",
        {
            "plan_code": "essential-individual",
            "dependent_first_name": ["Ana"],
            "dependent_last_name": ["Silva"],
            "dependent_date_of_birth": ["2015-06-01"],
            "dependent_relation": ["child"],
            "dependent_gender": ["female"],
        },
    )
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/member/enroll")
    with session_scope(app) as s:
        assert s.query(MemberProfile).count() == 0


def test_member_manages_dependents_over_http(app, client, login, post):
    with session_scope(app) as s:
        owner = _member(s, email="owner@example.com")
        foreign_id = add_dependent(s, owner, _dependent(first_name="Zed"), owner.user).id

    _member_login(app, client, login)
    r = post("/member/dependents", _dependent())
    assert r.status_code == 302
    with session_scope(app) as s:
        mine = s.query(MemberDependent).filter(MemberDependent.first_name == "Ana").one()
        mine_id = mine.id
    assert "Ana Silva" in client.get("/member/profile").get_data(as_text=True)

    r = post("/member/dependents", _dependent(relation="cousin"))
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.query(MemberDependent).count() == 2

    assert post(f"/member/dependents/{foreign_id}/delete", {}).status_code == 404
    assert post(f"/member/dependents/{mine_id}/delete", {}).status_code == 302
    with session_scope(app) as s:
        assert [d.first_name for d in s.query(MemberDependent).all()] == ["Zed"]


def test_member_notification_preferences_over_http(app, client, login, post):
    _member_login(app, client, login)
    r = client.get("/member/notifications")
    assert r.status_code == 200
    body = r.get_data(as_text=True)
    assert "Marketing Emails" in body
    assert "Sms Notifications" in body

    r = post(
        "/member/notifications",
        {"email_notifications": "1", "share_request_updates": "1", "billing_reminders": "1"},
        follow_redirects=True,
    )
    assert "Preferences updated successfully." in r.get_data(as_text=True)
    with session_scope(app) as s:
        prefs = s.query(NotificationPreference).one()
        assert prefs.sms_notifications is False
        assert prefs.marketing_emails is False
        assert prefs.email_notifications is True

    r = post(
        "/member/notifications",
        {"email_notifications": "1", "share_request_updates": "1", "billing_reminders": "1"},
        follow_redirects=True,
    )
    assert "No changes." in r.get_data(as_text=True)
