from __future__ import annotations

import hashlib
import math
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func, or_
from werkzeug.utils import secure_filename

from app.saudemax.audit import record_event
from app.saudemax.constants import DEFAULT_IUA_LEVEL, IUA_LEVELS, PLANS
from app.saudemax.modules.members.models import (
    BillingRecord,
    MemberDependent,
    MemberDocument,
    MemberProfile,
    NotificationPreference,
    ShareRequest,
    SupportMessage,
    SupportTicket,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session
    from app.saudemax.models import User
    from app.saudemax.storage import Storage


MEMBER_STATUSES = ("active", "pending", "suspended", "cancelled")
SHARE_REQUEST_TYPES = ("medical", "dental", "vision", "emergency", "prescription")
SHARE_REQUEST_TRANSITIONS = {
    "submitted": ("under_review",),
    "under_review": ("approved", "denied"),
    "approved": ("paid",),
    "denied": (),
    "paid": (),
}
TICKET_CATEGORIES = ("billing", "claims", "technical", "general")
TICKET_PRIORITIES = ("low", "medium", "high", "urgent")
TICKET_STATUSES = ("open", "in_progress", "resolved", "closed")
TICKET_TRANSITIONS = {
    "open": ("in_progress", "resolved", "closed"),
    "in_progress": ("resolved", "closed"),
    "resolved": ("closed", "open"),
    "closed": (),
}
DOCUMENT_TYPES = ("id_card", "guidelines", "invoice", "enrollment", "certificate", "other")
BILLING_STATUSES = ("pending", "paid", "overdue", "failed")
DEPENDENT_RELATIONS = ("spouse", "child", "stepchild", "adopted_child", "foster_child", "other")
CHILD_RELATIONS = ("child", "stepchild", "adopted_child", "foster_child")
MAX_CHILD_AGE = 26
GENDERS = ("male", "female", "other")
PREFERENCE_FIELDS = (
    "email_notifications",
    "sms_notifications",
    "share_request_updates",
    "billing_reminders",
    "marketing_emails",
)


class ShareRequestError(ValueError):
    pass


class SupportTicketError(ValueError):
    pass


class DependentError(ValueError):
    pass


def parse_date(s: str | None) -> date | None:
    """Parse YYYY-MM-DD date string."""
    if not s:
        return None
    s = s.strip()
    if not s:
        return None
    return date.fromisoformat(s)


def parse_amount(raw: str | None) -> float | None:
    raw = (raw or "").strip().replace(",", "")
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return round(value, 2)


# ---------- Profiles ----------
def get_member_profile(s: "Session", user: "User | None") -> MemberProfile | None:
    if user is None:
        return None
    return s.query(MemberProfile).filter(MemberProfile.user_id == user.id).one_or_none()


def enroll_member(
    s: "Session",
    user: "User",
    plan_code: str,
    *,
    frequency: str = "monthly",
    iua_level: str = DEFAULT_IUA_LEVEL,
    dependents: list[dict] | None = None,
) -> MemberProfile:
    if plan_code not in PLANS:
        raise ValueError("Please choose a valid plan.")
    if iua_level not in IUA_LEVELS:
        raise ValueError(f"Invalid IUA level. Must be one of: {', '.join(IUA_LEVELS)}")
    if get_member_profile(s, user) is not None:
        raise ValueError("You are already enrolled.")
    dependents = dependents or []
    if dependents and PLANS[plan_code]["type"] != "family":
        raise DependentError("Dependents require a family plan.")
    for n, payload in enumerate(dependents, start=1):
        errors = validate_dependent_payload(payload)
        if errors:
            raise DependentError(f"Dependent {n}: {errors[0]}")

    today = date.today()
    profile = MemberProfile(
        user_id=user.id,
        plan_code=plan_code,
        status="pending",
        enrollment_date=today,
        next_billing_date=today + timedelta(days=365 if frequency == "annual" else 30),
        monthly_contribution=PLANS[plan_code]["monthly"],
        iua_level=iua_level,
    )
    for payload in dependents:
        profile.dependents.append(_dependent_from_payload(payload))
    s.add(profile)
    s.flush()
    profile.member_number = f"SM-{profile.id:06d}"
    record_event(
        s,
        actor=user,
        action="member.enroll",
        entity_type="MemberProfile",
        entity_id=str(profile.id),
        metadata={
            "plan_code": plan_code,
            "frequency": frequency,
            "iua_level": iua_level,
            "dependents": len(dependents),
        },
    )
    return profile


# ---------- Dependents ----------
def age_on(born: date, today: date) -> int:
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


def parse_dependent_rows(
    first_names: list[str],
    last_names: list[str],
    birth_dates: list[str],
    relations: list[str],
    genders: list[str],
) -> list[dict]:
    """Build dependent payloads from the parallel enrollment form columns (blank rows dropped)."""
    rows: list[dict] = []
    for i, first in enumerate(first_names):
        row = {
            "first_name": first,
            "last_name": last_names[i] if i < len(last_names) else "",
            "date_of_birth": birth_dates[i] if i < len(birth_dates) else "",
            "relation": relations[i] if i < len(relations) else "",
            "gender": genders[i] if i < len(genders) else "",
        }
        if not any((v or "").strip() for v in row.values()):
            continue
        rows.append(row)
    return rows


def validate_dependent_payload(payload: dict, today: date | None = None) -> list[str]:
    today = today or date.today()
    errors: list[str] = []
    if not (payload.get("first_name") or "").strip():
        errors.append("First name is required.")
    if not (payload.get("last_name") or "").strip():
        errors.append("Last name is required.")
    relation = (payload.get("relation") or "").strip()
    if relation not in DEPENDENT_RELATIONS:
        errors.append(f"Invalid relationship. Must be one of: {', '.join(DEPENDENT_RELATIONS)}")
    if (payload.get("gender") or "").strip() not in GENDERS:
        errors.append(f"Invalid gender. Must be one of: {', '.join(GENDERS)}")
    try:
        born = parse_date(payload.get("date_of_birth"))
    except ValueError:
        errors.append("Date of birth must be YYYY-MM-DD.")
        return errors
    if born is None:
        errors.append("Date of birth is required.")
    elif born > today:
        errors.append("Date of birth cannot be in the future.")
    elif relation in CHILD_RELATIONS and age_on(born, today) >= MAX_CHILD_AGE:
        errors.append(f"Children must be under {MAX_CHILD_AGE} years old.")
    return errors


def _dependent_from_payload(payload: dict) -> MemberDependent:
    return MemberDependent(
        first_name=payload["first_name"].strip(),
        last_name=payload["last_name"].strip(),
        date_of_birth=parse_date(payload["date_of_birth"]),
        relation=payload["relation"].strip(),
        gender=payload["gender"].strip(),
    )


def add_dependent(s: "Session", member: MemberProfile, payload: dict, user: "User") -> MemberDependent:
    if PLANS.get(member.plan_code, {}).get("type") != "family":
        raise DependentError("Dependents require a family plan.")
    if member.status == "cancelled":
        raise DependentError("Cancelled memberships cannot be changed.")
    errors = validate_dependent_payload(payload)
    if errors:
        raise DependentError(errors[0])
    dep = _dependent_from_payload(payload)
    member.dependents.append(dep)
    s.flush()
    record_event(
        s,
        actor=user,
        action="member.dependent_add",
        entity_type="MemberDependent",
        entity_id=str(dep.id),
        metadata={"member_id": member.id, "relation": dep.relation},
    )
    return dep


def remove_dependent(s: "Session", member: MemberProfile, dep: MemberDependent, user: "User") -> None:
    if dep.member_id != member.id:
        raise DependentError("Dependent does not belong to this member.")
    record_event(
        s,
        actor=user,
        action="member.dependent_remove",
        entity_type="MemberDependent",
        entity_id=str(dep.id),
        metadata={"member_id": member.id, "name": dep.full_name},
    )
    member.dependents.remove(dep)
    s.flush()


# ---------- Notification preferences ----------
def get_notification_preferences(s: "Session", member: MemberProfile) -> NotificationPreference:
    """Return the member's preferences, creating the defaults on first access."""
    prefs = s.query(NotificationPreference).filter(NotificationPreference.member_id == member.id).one_or_none()
    if prefs is None:
        prefs = NotificationPreference(
            member_id=member.id,
            email_notifications=True,
            sms_notifications=True,
            share_request_updates=True,
            billing_reminders=True,
            marketing_emails=False,
        )
        s.add(prefs)
        s.flush()
    return prefs


def update_notification_preferences(
    s: "Session", prefs: NotificationPreference, values: dict[str, bool], user: "User"
) -> list[str]:
    changed: list[str] = []
    for field in PREFERENCE_FIELDS:
        if field not in values:
            continue
        new = bool(values[field])
        if getattr(prefs, field) != new:
            setattr(prefs, field, new)
            changed.append(field)
    if changed:
        prefs.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="member.notification_preferences",
            entity_type="NotificationPreference",
            entity_id=str(prefs.id),
            metadata={f: getattr(prefs, f) for f in changed},
        )
    return changed


def set_member_status(s: "Session", profile: MemberProfile, status: str, actor: "User", reason: str | None = None) -> MemberProfile:
    if status not in MEMBER_STATUSES:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(MEMBER_STATUSES)}")
    if profile.status == "cancelled":
        raise ValueError("Cancelled memberships cannot be changed.")
    old = profile.status
    profile.status = status
    profile.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="member.status_change",
        entity_type="MemberProfile",
        entity_id=str(profile.id),
        reason=reason,
        metadata={"member_number": profile.member_number, "old": old, "new": status},
    )
    return profile


# ---------- Share requests ----------
def next_request_number(s: "Session", today: date | None = None) -> str:
    year = (today or date.today()).year
    prefix = f"SR-{year}-"
    count = s.query(func.count(ShareRequest.id)).filter(ShareRequest.request_number.like(f"{prefix}%")).scalar() or 0
    return f"{prefix}{count + 1:04d}"


def validate_share_request_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if (payload.get("type") or "").strip() not in SHARE_REQUEST_TYPES:
        errors.append(f"Invalid type. Must be one of: {', '.join(SHARE_REQUEST_TYPES)}")
    if not (payload.get("description") or "").strip():
        errors.append("Description is required.")
    if not (payload.get("provider") or "").strip():
        errors.append("Provider is required.")
    try:
        service_date = parse_date(payload.get("service_date"))
    except ValueError:
        service_date = None
        errors.append("Service date must be YYYY-MM-DD.")
    else:
        if service_date is None:
            errors.append("Service date is required.")
        elif service_date > date.today():
            errors.append("Service date cannot be in the future.")
    amount = parse_amount(payload.get("requested_amount"))
    if amount is None or amount <= 0:
        errors.append("Requested amount must be greater than zero.")
    return errors


def submit_share_request(s: "Session", member: MemberProfile, payload: dict, user: "User") -> ShareRequest:
    if member.status != "active":
        raise ShareRequestError("Only active members can submit share requests.")
    req = ShareRequest(
        member_id=member.id,
        request_number=next_request_number(s),
        type=payload["type"].strip(),
        description=payload["description"].strip(),
        provider=payload["provider"].strip(),
        service_date=parse_date(payload.get("service_date")),
        requested_amount=parse_amount(payload.get("requested_amount")),
        notes=(payload.get("notes") or "").strip() or None,
        status="submitted",
        submitted_at=datetime.utcnow(),
    )
    s.add(req)
    s.flush()
    record_event(
        s,
        actor=user,
        action="share_request.submit",
        entity_type="ShareRequest",
        entity_id=str(req.id),
        metadata={"request_number": req.request_number, "requested_amount": req.requested_amount},
    )
    return req


def review_share_request(
    s: "Session",
    req: ShareRequest,
    new_status: str,
    reviewer: "User",
    *,
    approved_amount: float | None = None,
    review_notes: str | None = None,
) -> ShareRequest:
    allowed = SHARE_REQUEST_TRANSITIONS.get(req.status, ())
    if new_status not in allowed:
        raise ShareRequestError(f"Cannot move a request from {req.status} to {new_status}.")
    now = datetime.utcnow()
    if new_status == "approved":
        if (
            approved_amount is None
            or not math.isfinite(approved_amount)
            or approved_amount < 0
            or approved_amount > req.requested_amount
        ):
            raise ShareRequestError("Approved amount must be between 0 and the requested amount.")
        req.approved_amount = round(approved_amount, 2)
    if new_status in ("approved", "denied"):
        req.reviewed_at = now
        req.reviewed_by_user_id = reviewer.id
    if new_status == "paid":
        req.paid_at = now
    if review_notes:
        req.review_notes = review_notes.strip()
    old = req.status
    req.status = new_status
    record_event(
        s,
        actor=reviewer,
        action=f"share_request.{new_status}",
        entity_type="ShareRequest",
        entity_id=str(req.id),
        reason=review_notes,
        metadata={"request_number": req.request_number, "old": old, "approved_amount": req.approved_amount},
    )
    return req


def share_request_totals(requests: list[ShareRequest]) -> dict[str, float]:
    return {
        "requested": round(sum(r.requested_amount for r in requests), 2),
        "approved": round(sum(r.approved_amount or 0 for r in requests if r.status in ("approved", "paid")), 2),
        "paid": round(sum(r.approved_amount or 0 for r in requests if r.status == "paid"), 2),
    }


# ---------- Support ----------
def validate_ticket_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not (payload.get("subject") or "").strip():
        errors.append("Subject is required.")
    if not (payload.get("description") or "").strip():
        errors.append("Description is required.")
    if (payload.get("category") or "general") not in TICKET_CATEGORIES:
        errors.append(f"Invalid category. Must be one of: {', '.join(TICKET_CATEGORIES)}")
    if (payload.get("priority") or "medium") not in TICKET_PRIORITIES:
        errors.append(f"Invalid priority. Must be one of: {', '.join(TICKET_PRIORITIES)}")
    return errors


def open_ticket(s: "Session", user: "User", payload: dict) -> SupportTicket:
    now = datetime.utcnow()
    ticket = SupportTicket(
        user_id=user.id,
        subject=payload["subject"].strip(),
        description=payload["description"].strip(),
        category=payload.get("category") or "general",
        priority=payload.get("priority") or "medium",
        status="open",
        created_at=now,
        updated_at=now,
    )
    s.add(ticket)
    s.flush()
    record_event(
        s,
        actor=user,
        action="support.ticket_open",
        entity_type="SupportTicket",
        entity_id=str(ticket.id),
        metadata={"subject": ticket.subject, "category": ticket.category, "priority": ticket.priority},
    )
    return ticket


def sender_type_for(user: "User") -> str:
    key = user.role_key
    if key in ("admin", "advisor"):
        return key
    return "member"


def add_ticket_message(s: "Session", ticket: SupportTicket, user: "User", content: str) -> SupportMessage:
    content = (content or "").strip()
    if not content:
        raise SupportTicketError("Message cannot be empty.")
    if ticket.status == "closed":
        raise SupportTicketError("This ticket is closed.")
    sender_type = sender_type_for(user)
    msg = SupportMessage(ticket_id=ticket.id, sender_user_id=user.id, sender_type=sender_type, content=content)
    s.add(msg)
    if sender_type == "member" and ticket.status == "resolved":
        ticket.status = "open"
    ticket.updated_at = datetime.utcnow()
    s.flush()
    return msg


def set_ticket_status(s: "Session", ticket: SupportTicket, new_status: str, actor: "User") -> SupportTicket:
    allowed = TICKET_TRANSITIONS.get(ticket.status, ())
    if new_status not in allowed:
        raise SupportTicketError(f"Cannot move a ticket from {ticket.status} to {new_status}.")
    old = ticket.status
    ticket.status = new_status
    ticket.updated_at = datetime.utcnow()
    s.add(
        SupportMessage(
            ticket_id=ticket.id,
            sender_user_id=None,
            sender_type="system",
            content=f"Status changed from {old} to {new_status}.",
        )
    )
    record_event(
        s,
        actor=actor,
        action="support.ticket_status",
        entity_type="SupportTicket",
        entity_id=str(ticket.id),
        metadata={"old": old, "new": new_status},
    )
    return ticket


# ---------- Documents ----------
def build_document_storage_key(member_id: int | None, filename: str, upload_date: date | None = None) -> str:
    if upload_date is None:
        upload_date = date.today()
    safe_filename = secure_filename(filename) or "document.bin"
    owner = f"members/{member_id}" if member_id else "public"
    return f"documents/{owner}/{upload_date.isoformat()}/{safe_filename}"


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def upload_document(
    s: "Session",
    storage: "Storage",
    *,
    member: MemberProfile | None,
    file_bytes: bytes,
    filename: str,
    content_type: str | None,
    name: str,
    doc_type: str,
    user: "User",
    description: str | None = None,
    is_public: bool = False,
) -> MemberDocument:
    if doc_type not in DOCUMENT_TYPES:
        raise ValueError(f"Invalid document type. Must be one of: {', '.join(DOCUMENT_TYPES)}")
    if not file_bytes:
        raise ValueError("Uploaded file is empty.")
    if member is None and not is_public:
        raise ValueError("Documents without a member must be public.")
    sha256, size_bytes = file_digest_and_bytes(file_bytes)
    key = build_document_storage_key(member.id if member else None, f"{sha256[:12]}_{filename}")
    storage.put_bytes(key, file_bytes, content_type=content_type)
    doc = MemberDocument(
        member_id=member.id if member else None,
        name=(name or "").strip() or (secure_filename(filename) or "document.bin"),
        type=doc_type,
        description=(description or "").strip() or None,
        is_public=is_public,
        storage_key=key,
        original_filename=secure_filename(filename) or "document.bin",
        content_type=content_type or "application/octet-stream",
        sha256=sha256,
        size_bytes=size_bytes,
        uploaded_by_user_id=user.id,
    )
    s.add(doc)
    s.flush()
    record_event(
        s,
        actor=user,
        action="document.upload",
        entity_type="MemberDocument",
        entity_id=str(doc.id),
        metadata={"member_id": doc.member_id, "filename": doc.original_filename, "is_public": is_public},
    )
    return doc


def delete_document(s: "Session", storage: "Storage", doc: MemberDocument, user: "User") -> None:
    """Remove the stored file and its row."""
    storage.delete(doc.storage_key)
    record_event(
        s,
        actor=user,
        action="document.delete",
        entity_type="MemberDocument",
        entity_id=str(doc.id),
        metadata={"member_id": doc.member_id, "filename": doc.original_filename, "storage_key": doc.storage_key},
    )
    s.delete(doc)
    s.flush()


def visible_documents(s: "Session", member: MemberProfile | None) -> "Query":
    """Row filter: a member sees their own documents plus public ones."""
    q = s.query(MemberDocument)
    if member is None:
        return q.filter(MemberDocument.is_public.is_(True))
    return q.filter(or_(MemberDocument.member_id == member.id, MemberDocument.is_public.is_(True)))


def can_view_document(doc: MemberDocument, member: MemberProfile | None) -> bool:
    return doc.is_public or (member is not None and doc.member_id == member.id)


# ---------- Billing ----------
def billing_totals(records: list[BillingRecord]) -> dict[str, float]:
    return {
        "paid": round(sum(r.amount for r in records if r.status == "paid"), 2),
        "outstanding": round(sum(r.amount for r in records if r.status in ("pending", "overdue", "failed")), 2),
    }


def create_invoice(s: "Session", member: MemberProfile, *, amount: float, due_date: date, description: str | None, actor: "User") -> BillingRecord:
    if amount is None or amount <= 0:
        raise ValueError("Invoice amount must be greater than zero.")
    count = s.query(func.count(BillingRecord.id)).scalar() or 0
    record = BillingRecord(
        member_id=member.id,
        invoice_number=f"INV-{due_date.year}-{count + 1:05d}",
        amount=round(amount, 2),
        due_date=due_date,
        description=(description or "").strip() or None,
        status="pending",
    )
    s.add(record)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="billing.invoice_create",
        entity_type="BillingRecord",
        entity_id=str(record.id),
        metadata={"invoice_number": record.invoice_number, "amount": record.amount},
    )
    return record


def mark_invoice(s: "Session", record: BillingRecord, status: str, actor: "User", payment_method: str | None = None) -> BillingRecord:
    if status not in BILLING_STATUSES:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(BILLING_STATUSES)}")
    if record.status == "paid":
        raise ValueError("Paid invoices cannot be changed.")
    old = record.status
    record.status = status
    if status == "paid":
        record.paid_date = date.today()
        record.payment_method = payment_method or record.payment_method
    record_event(
        s,
        actor=actor,
        action="billing.invoice_status",
        entity_type="BillingRecord",
        entity_id=str(record.id),
        metadata={"invoice_number": record.invoice_number, "old": old, "new": status},
    )
    return record
