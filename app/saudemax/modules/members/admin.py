from __future__ import annotations

import io
from datetime import date

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, send_file, url_for
from sqlalchemy import or_

from app.saudemax.accounts import update_profile
from app.saudemax.constants import DEFAULT_IUA_LEVEL, IUA_LEVELS, PLANS, annual_amount
from app.saudemax.db import db_session
from app.saudemax.models import User
from app.saudemax.modules.members.models import (
    BillingRecord,
    MemberDependent,
    MemberDocument,
    MemberProfile,
    ShareRequest,
    SupportTicket,
)
from app.saudemax.modules.members.service import (
    BILLING_STATUSES,
    DEPENDENT_RELATIONS,
    DOCUMENT_TYPES,
    GENDERS,
    MEMBER_STATUSES,
    PREFERENCE_FIELDS,
    SHARE_REQUEST_TRANSITIONS,
    SHARE_REQUEST_TYPES,
    TICKET_CATEGORIES,
    TICKET_PRIORITIES,
    TICKET_STATUSES,
    TICKET_TRANSITIONS,
    DependentError,
    ShareRequestError,
    SupportTicketError,
    add_dependent,
    add_ticket_message,
    billing_totals,
    can_view_document,
    create_invoice,
    delete_document,
    enroll_member,
    get_member_profile,
    get_notification_preferences,
    mark_invoice,
    open_ticket,
    parse_amount,
    parse_date,
    parse_dependent_rows,
    remove_dependent,
    review_share_request,
    set_member_status,
    set_ticket_status,
    share_request_totals,
    submit_share_request,
    update_notification_preferences,
    upload_document,
    validate_share_request_payload,
    validate_ticket_payload,
    visible_documents,
)
from app.saudemax.rbac import require_login, require_permission, user_has_permission
from app.saudemax.storage import storage_from_config

bp = Blueprint("members", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _own_profile() -> MemberProfile | None:
    return get_member_profile(db_session(), _current_user())


def _send_document(doc: MemberDocument):
    storage = storage_from_config(current_app.config)
    try:
        fobj = storage.open(doc.storage_key)
    except FileNotFoundError:
        current_app.logger.error("Document %s missing from storage (key=%s)", doc.id, doc.storage_key)
        abort(404)
    return send_file(
        fobj,
        mimetype=doc.content_type or "application/octet-stream",
        as_attachment=True,
        download_name=doc.original_filename,
        max_age=0,
    )


# ============================================================================
# MEMBER PORTAL
# ============================================================================

@bp.get("/member/enroll")
@require_login
def enroll_get():
    if _own_profile() is not None:
        return redirect(url_for("members.dashboard"))
    selected = request.args.get("plan") or "complete-individual"
    plans = [{"code": code, **plan, "annual": annual_amount(code)} for code, plan in PLANS.items()]
    return render_template(
        "member/enroll.html",
        plans=plans,
        selected=selected,
        iua_levels=IUA_LEVELS,
        relations=DEPENDENT_RELATIONS,
        genders=GENDERS,
    )


@bp.post("/member/enroll")
@require_login
def enroll_post():
    s = db_session()
    u = _current_user()
    frequency = request.form.get("frequency") or "monthly"
    if frequency not in ("monthly", "annual"):
        frequency = "monthly"
    dependents = parse_dependent_rows(
        request.form.getlist("dependent_first_name"),
        request.form.getlist("dependent_last_name"),
        request.form.getlist("dependent_date_of_birth"),
        request.form.getlist("dependent_relation"),
        request.form.getlist("dependent_gender"),
    )
    try:
        enroll_member(
            s,
            u,
            (request.form.get("plan_code") or "").strip(),
            frequency=frequency,
            iua_level=(request.form.get("iua_level") or DEFAULT_IUA_LEVEL).strip(),
            dependents=dependents,
        )
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("members.enroll_get"))
    s.commit()
    flash("Enrollment received. Your membership will be activated after review.", "success")
    return redirect(url_for("members.dashboard"))


@bp.get("/member")
@require_login
def dashboard():
    s = db_session()
    u = _current_user()
    profile = _own_profile()
    if profile is None:
        return redirect(url_for("members.enroll_get"))
    requests_ = (
        s.query(ShareRequest)
        .filter(ShareRequest.member_id == profile.id)
        .order_by(ShareRequest.submitted_at.desc())
        .all()
    )
    bills = s.query(BillingRecord).filter(BillingRecord.member_id == profile.id).all()
    open_tickets = (
        s.query(SupportTicket)
        .filter(SupportTicket.user_id == u.id, SupportTicket.status.in_(("open", "in_progress")))
        .count()
    )
    return render_template(
        "member/dashboard.html",
        profile=profile,
        plan=PLANS.get(profile.plan_code),
        recent_requests=requests_[:5],
        request_totals=share_request_totals(requests_),
        billing=billing_totals(bills),
        open_tickets=open_tickets,
    )


@bp.get("/member/profile")
@require_login
def profile_get():
    profile = _own_profile()
    plan = PLANS.get(profile.plan_code) if profile else None
    return render_template(
        "member/profile.html",
        user=_current_user(),
        profile=profile,
        plan=plan,
        family_plan=bool(plan and plan["type"] == "family"),
        relations=DEPENDENT_RELATIONS,
        genders=GENDERS,
    )


@bp.post("/member/profile")
@require_login
def profile_post():
    s = db_session()
    u = _current_user()
    changes = update_profile(
        s,
        u,
        {"full_name": request.form.get("full_name"), "preferred_language": request.form.get("preferred_language")},
    )
    s.commit()
    flash("Profile updated." if changes else "No changes.", "success")
    return redirect(url_for("members.profile_get"))


@bp.post("/member/dependents")
@require_login
def dependent_add():
    s = db_session()
    profile = _own_profile()
    if profile is None:
        return redirect(url_for("members.enroll_get"))
    payload = {
        "first_name": request.form.get("first_name"),
        "last_name": request.form.get("last_name"),
        "date_of_birth": request.form.get("date_of_birth"),
        "relation": request.form.get("relation"),
        "gender": request.form.get("gender"),
    }
    try:
        dep = add_dependent(s, profile, payload, _current_user())
    except DependentError as e:
        flash(str(e), "danger")
        return redirect(url_for("members.profile_get"))
    s.commit()
    flash(f"Added {dep.full_name}.", "success")
    return redirect(url_for("members.profile_get"))


@bp.post("/member/dependents/<int:dependent_id>/delete")
@require_login
def dependent_remove(dependent_id: int):
    s = db_session()
    profile = _own_profile()
    dep = s.get(MemberDependent, dependent_id)
    # Row filter: only the owning member may remove a dependent
    if profile is None or dep is None or dep.member_id != profile.id:
        abort(404)
    remove_dependent(s, profile, dep, _current_user())
    s.commit()
    flash("Dependent removed.", "success")
    return redirect(url_for("members.profile_get"))


# ---------- Notification preferences ----------
@bp.get("/member/notifications")
@require_login
def notifications_get():
    s = db_session()
    profile = _own_profile()
    if profile is None:
        return redirect(url_for("members.enroll_get"))
    prefs = get_notification_preferences(s, profile)
    s.commit()
    return render_template("member/notifications.html", prefs=prefs, fields=PREFERENCE_FIELDS)


@bp.post("/member/notifications")
@require_login
def notifications_post():
    s = db_session()
    profile = _own_profile()
    if profile is None:
        return redirect(url_for("members.enroll_get"))
    prefs = get_notification_preferences(s, profile)
    # Unchecked boxes are absent from the form
    values = {field: request.form.get(field) == "1" for field in PREFERENCE_FIELDS}
    changed = update_notification_preferences(s, prefs, values, _current_user())
    s.commit()
    flash("Preferences updated successfully." if changed else "No changes.", "success")
    return redirect(url_for("members.notifications_get"))


# ---------- Share requests ----------
@bp.get("/member/share-requests")
@require_login
def share_requests_list():
    s = db_session()
    profile = _own_profile()
    if profile is None:
        return redirect(url_for("members.enroll_get"))
    rows = (
        s.query(ShareRequest)
        .filter(ShareRequest.member_id == profile.id)
        .order_by(ShareRequest.submitted_at.desc())
        .all()
    )
    return render_template("member/share_requests/list.html", requests=rows, totals=share_request_totals(rows))


@bp.get("/member/share-requests/new")
@require_login
def share_requests_new_get():
    if _own_profile() is None:
        return redirect(url_for("members.enroll_get"))
    return render_template("member/share_requests/new.html", types=SHARE_REQUEST_TYPES, form={})


@bp.post("/member/share-requests/new")
@require_login
def share_requests_new_post():
    s = db_session()
    u = _current_user()
    profile = _own_profile()
    if profile is None:
        abort(404)
    payload = {
        "type": request.form.get("type"),
        "description": request.form.get("description"),
        "provider": request.form.get("provider"),
        "service_date": request.form.get("service_date"),
        "requested_amount": request.form.get("requested_amount"),
        "notes": request.form.get("notes"),
    }
    errors = validate_share_request_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("member/share_requests/new.html", types=SHARE_REQUEST_TYPES, form=payload), 400
    try:
        req = submit_share_request(s, profile, payload, u)
    except ShareRequestError as e:
        flash(str(e), "danger")
        return redirect(url_for("members.share_requests_list"))
    s.commit()
    flash(f"Share request {req.request_number} submitted.", "success")
    return redirect(url_for("members.share_request_detail", request_id=req.id))


@bp.get("/member/share-requests/<int:request_id>")
@require_login
def share_request_detail(request_id: int):
    s = db_session()
    profile = _own_profile()
    req = s.get(ShareRequest, request_id)
    # Another member's row is reported as missing.
    if not req or profile is None or req.member_id != profile.id:
        abort(404)
    return render_template("member/share_requests/detail.html", req=req)


# ---------- Support ----------
@bp.get("/member/support")
@require_login
def support_list():
    s = db_session()
    u = _current_user()
    tickets = (
        s.query(SupportTicket)
        .filter(SupportTicket.user_id == u.id)
        .order_by(SupportTicket.updated_at.desc())
        .all()
    )
    return render_template(
        "member/support/list.html",
        tickets=tickets,
        categories=TICKET_CATEGORIES,
        priorities=TICKET_PRIORITIES,
    )


@bp.post("/member/support")
@require_login
def support_create():
    s = db_session()
    u = _current_user()
    payload = {
        "subject": request.form.get("subject"),
        "description": request.form.get("description"),
        "category": request.form.get("category") or "general",
        "priority": request.form.get("priority") or "medium",
    }
    errors = validate_ticket_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("members.support_list"))
    ticket = open_ticket(s, u, payload)
    s.commit()
    flash("Support ticket created.", "success")
    return redirect(url_for("members.support_detail", ticket_id=ticket.id))


def _own_ticket(ticket_id: int) -> SupportTicket:
    ticket = db_session().get(SupportTicket, ticket_id)
    if not ticket or ticket.user_id != _current_user().id:
        abort(404)
    return ticket


@bp.get("/member/support/<int:ticket_id>")
@require_login
def support_detail(ticket_id: int):
    return render_template("member/support/detail.html", ticket=_own_ticket(ticket_id))


@bp.post("/member/support/<int:ticket_id>/reply")
@require_login
def support_reply(ticket_id: int):
    s = db_session()
    ticket = _own_ticket(ticket_id)
    try:
        add_ticket_message(s, ticket, _current_user(), request.form.get("content") or "")
    except SupportTicketError as e:
        flash(str(e), "danger")
        return redirect(url_for("members.support_detail", ticket_id=ticket.id))
    s.commit()
    return redirect(url_for("members.support_detail", ticket_id=ticket.id))


# ---------- Documents ----------
@bp.get("/member/documents")
@require_login
def documents_list():
    s = db_session()
    docs = visible_documents(s, _own_profile()).order_by(MemberDocument.uploaded_at.desc()).all()
    return render_template("member/documents.html", documents=docs)


@bp.get("/member/documents/<int:document_id>/download")
@require_login
def document_download(document_id: int):
    s = db_session()
    doc = s.get(MemberDocument, document_id)
    if not doc:
        abort(404)
    if not can_view_document(doc, _own_profile()) and not user_has_permission(_current_user(), "documents.manage"):
        abort(404)
    return _send_document(doc)


# ---------- Billing ----------
@bp.get("/member/billing")
@require_login
def billing():
    s = db_session()
    profile = _own_profile()
    if profile is None:
        return redirect(url_for("members.enroll_get"))
    records = (
        s.query(BillingRecord)
        .filter(BillingRecord.member_id == profile.id)
        .order_by(BillingRecord.due_date.desc())
        .all()
    )
    return render_template("member/billing.html", profile=profile, records=records, totals=billing_totals(records))


# ============================================================================
# STAFF: MEMBERS
# ============================================================================

@bp.get("/admin/members")
@require_permission("members.view")
def admin_members():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    status_filter = (request.args.get("status") or "").strip()
    q = s.query(MemberProfile).join(User, MemberProfile.user_id == User.id)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(User.email.ilike(like), User.full_name.ilike(like), MemberProfile.member_number.ilike(like)))
    if status_filter:
        q = q.filter(MemberProfile.status == status_filter)
    members = q.order_by(MemberProfile.created_at.desc(), MemberProfile.id.desc()).all()
    return render_template(
        "admin/members/list.html",
        members=members,
        search=search,
        status_filter=status_filter,
        statuses=MEMBER_STATUSES,
    )


@bp.get("/admin/members/export.csv")
@require_permission("members.view")
def admin_members_export():
    from app.saudemax.analytics import members_csv

    s = db_session()
    members = s.query(MemberProfile).order_by(MemberProfile.id.asc()).all()
    data = members_csv(members)
    return send_file(
        io.BytesIO(data.encode("utf-8")),
        mimetype="text/csv",
        as_attachment=True,
        download_name=f"members_{date.today().strftime('%Y%m%d')}.csv",
        max_age=0,
    )


@bp.get("/admin/members/<int:member_id>")
@require_permission("members.view")
def admin_member_detail(member_id: int):
    s = db_session()
    profile = s.get(MemberProfile, member_id)
    if not profile:
        abort(404)
    records = s.query(BillingRecord).filter(BillingRecord.member_id == profile.id).order_by(BillingRecord.due_date.desc()).all()
    requests_ = s.query(ShareRequest).filter(ShareRequest.member_id == profile.id).order_by(ShareRequest.submitted_at.desc()).all()
    documents = s.query(MemberDocument).filter(MemberDocument.member_id == profile.id).all()
    return render_template(
        "admin/members/detail.html",
        profile=profile,
        plan=PLANS.get(profile.plan_code),
        records=records,
        totals=billing_totals(records),
        requests=requests_,
        documents=documents,
        statuses=MEMBER_STATUSES,
        billing_statuses=BILLING_STATUSES,
        document_types=DOCUMENT_TYPES,
    )


@bp.post("/admin/members/<int:member_id>/status")
@require_permission("members.manage")
def admin_member_status(member_id: int):
    s = db_session()
    profile = s.get(MemberProfile, member_id)
    if not profile:
        abort(404)
    try:
        set_member_status(s, profile, (request.form.get("status") or "").strip(), _current_user(), request.form.get("reason"))
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("members.admin_member_detail", member_id=member_id))
    s.commit()
    flash(f"Member {profile.member_number} is now {profile.status}.", "success")
    return redirect(url_for("members.admin_member_detail", member_id=member_id))


@bp.post("/admin/members/<int:member_id>/invoices")
@require_permission("members.manage")
def admin_invoice_create(member_id: int):
    s = db_session()
    profile = s.get(MemberProfile, member_id)
    if not profile:
        abort(404)
    try:
        due = parse_date(request.form.get("due_date")) or date.today()
        create_invoice(
            s,
            profile,
            amount=parse_amount(request.form.get("amount")) or profile.monthly_contribution,
            due_date=due,
            description=request.form.get("description"),
            actor=_current_user(),
        )
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("members.admin_member_detail", member_id=member_id))
    s.commit()
    flash("Invoice created.", "success")
    return redirect(url_for("members.admin_member_detail", member_id=member_id))


@bp.post("/admin/invoices/<int:record_id>/status")
@require_permission("members.manage")
def admin_invoice_status(record_id: int):
    s = db_session()
    record = s.get(BillingRecord, record_id)
    if not record:
        abort(404)
    try:
        mark_invoice(s, record, (request.form.get("status") or "").strip(), _current_user(), request.form.get("payment_method"))
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("members.admin_member_detail", member_id=record.member_id))
    s.commit()
    flash(f"Invoice {record.invoice_number} marked {record.status}.", "success")
    return redirect(url_for("members.admin_member_detail", member_id=record.member_id))


# ============================================================================
# STAFF: SHARE REQUESTS
# ============================================================================

@bp.get("/admin/share-requests")
@require_permission("share_requests.review")
def admin_share_requests():
    s = db_session()
    status_filter = (request.args.get("status") or "").strip()
    q = s.query(ShareRequest)
    if status_filter:
        q = q.filter(ShareRequest.status == status_filter)
    rows = q.order_by(ShareRequest.submitted_at.desc(), ShareRequest.id.desc()).all()
    return render_template(
        "admin/share_requests/list.html",
        requests=rows,
        status_filter=status_filter,
        statuses=tuple(SHARE_REQUEST_TRANSITIONS),
    )


@bp.get("/admin/share-requests/<int:request_id>")
@require_permission("share_requests.review")
def admin_share_request_detail(request_id: int):
    s = db_session()
    req = s.get(ShareRequest, request_id)
    if not req:
        abort(404)
    return render_template(
        "admin/share_requests/detail.html",
        req=req,
        next_statuses=SHARE_REQUEST_TRANSITIONS.get(req.status, ()),
    )


@bp.post("/admin/share-requests/<int:request_id>/review")
@require_permission("share_requests.review")
def admin_share_request_review(request_id: int):
    s = db_session()
    req = s.get(ShareRequest, request_id)
    if not req:
        abort(404)
    try:
        review_share_request(
            s,
            req,
            (request.form.get("status") or "").strip(),
            _current_user(),
            approved_amount=parse_amount(request.form.get("approved_amount")),
            review_notes=request.form.get("review_notes"),
        )
    except ShareRequestError as e:
        flash(str(e), "danger")
        return redirect(url_for("members.admin_share_request_detail", request_id=req.id))
    s.commit()
    flash(f"Share request {req.request_number} is now {req.status.replace('_', ' ')}.", "success")
    return redirect(url_for("members.admin_share_request_detail", request_id=req.id))


# ============================================================================
# STAFF: SUPPORT
# ============================================================================

@bp.get("/admin/support")
@require_permission("support.manage")
def admin_support():
    s = db_session()
    status_filter = (request.args.get("status") or "").strip()
    q = s.query(SupportTicket)
    if status_filter:
        q = q.filter(SupportTicket.status == status_filter)
    tickets = q.order_by(SupportTicket.updated_at.desc(), SupportTicket.id.desc()).all()
    return render_template(
        "admin/support/list.html",
        tickets=tickets,
        status_filter=status_filter,
        statuses=TICKET_STATUSES,
    )


@bp.get("/admin/support/<int:ticket_id>")
@require_permission("support.manage")
def admin_support_detail(ticket_id: int):
    s = db_session()
    ticket = s.get(SupportTicket, ticket_id)
    if not ticket:
        abort(404)
    return render_template(
        "admin/support/detail.html",
        ticket=ticket,
        next_statuses=TICKET_TRANSITIONS.get(ticket.status, ()),
    )


@bp.post("/admin/support/<int:ticket_id>/reply")
@require_permission("support.manage")
def admin_support_reply(ticket_id: int):
    s = db_session()
    ticket = s.get(SupportTicket, ticket_id)
    if not ticket:
        abort(404)
    try:
        add_ticket_message(s, ticket, _current_user(), request.form.get("content") or "")
    except SupportTicketError as e:
        flash(str(e), "danger")
        return redirect(url_for("members.admin_support_detail", ticket_id=ticket.id))
    if ticket.status == "open":
        ticket.status = "in_progress"
    s.commit()
    return redirect(url_for("members.admin_support_detail", ticket_id=ticket.id))


@bp.post("/admin/support/<int:ticket_id>/status")
@require_permission("support.manage")
def admin_support_status(ticket_id: int):
    s = db_session()
    ticket = s.get(SupportTicket, ticket_id)
    if not ticket:
        abort(404)
    try:
        set_ticket_status(s, ticket, (request.form.get("status") or "").strip(), _current_user())
    except SupportTicketError as e:
        flash(str(e), "danger")
        return redirect(url_for("members.admin_support_detail", ticket_id=ticket.id))
    s.commit()
    flash(f"Ticket #{ticket.id} is now {ticket.status.replace('_', ' ')}.", "success")
    return redirect(url_for("members.admin_support_detail", ticket_id=ticket.id))


# ============================================================================
# STAFF: DOCUMENTS
# ============================================================================

@bp.get("/admin/documents")
@require_permission("documents.manage")
def admin_documents():
    s = db_session()
    docs = s.query(MemberDocument).order_by(MemberDocument.uploaded_at.desc()).all()
    members = s.query(MemberProfile).order_by(MemberProfile.member_number.asc()).all()
    return render_template("admin/documents/list.html", documents=docs, members=members, document_types=DOCUMENT_TYPES)


@bp.post("/admin/documents/upload")
@require_permission("documents.manage")
def admin_document_upload():
    s = db_session()
    f = request.files.get("file")
    if not f or not f.filename:
        flash("Choose a file to upload.", "danger")
        return redirect(url_for("members.admin_documents"))
    member = None
    member_id = (request.form.get("member_id") or "").strip()
    if member_id:
        member = s.get(MemberProfile, int(member_id)) if member_id.isdigit() else None
        if member is None:
            flash("Unknown member.", "danger")
            return redirect(url_for("members.admin_documents"))
    try:
        doc = upload_document(
            s,
            storage_from_config(current_app.config),
            member=member,
            file_bytes=f.read(),
            filename=f.filename,
            content_type=f.mimetype,
            name=request.form.get("name") or "",
            doc_type=(request.form.get("type") or "other").strip(),
            user=_current_user(),
            description=request.form.get("description"),
            is_public=request.form.get("is_public") == "1",
        )
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("members.admin_documents"))
    s.commit()
    flash(f"Uploaded {doc.name}.", "success")
    return redirect(url_for("members.admin_documents"))


@bp.get("/admin/documents/<int:document_id>/download")
@require_permission("documents.manage")
def admin_document_download(document_id: int):
    doc = db_session().get(MemberDocument, document_id)
    if not doc:
        abort(404)
    return _send_document(doc)


@bp.post("/admin/documents/<int:document_id>/delete")
@require_permission("documents.manage")
def admin_document_delete(document_id: int):
    s = db_session()
    doc = s.get(MemberDocument, document_id)
    if not doc:
        abort(404)
    name = doc.name
    delete_document(s, storage_from_config(current_app.config), doc, _current_user())
    s.commit()
    flash(f"Deleted {name}.", "success")
    return redirect(url_for("members.admin_documents"))
