from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.saudemax.db import db_session
from app.saudemax.models import User
from app.saudemax.modules.commission_rules.models import CommissionRule
from app.saudemax.modules.commission_rules.service import (
    APPLIES_TO,
    RULE_TYPES,
    create_rule,
    delete_rule,
    parse_tiers,
    toggle_rule,
    update_rule,
    validate_rule_payload,
)
from app.saudemax.rbac import require_permission

bp = Blueprint("commission_rules", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload_from_form() -> dict:
    return {
        "name": request.form.get("name"),
        "type": request.form.get("type"),
        "amount": request.form.get("amount"),
        "applies_to": request.form.get("applies_to"),
        "active": request.form.get("active") == "1",
        "tiers": parse_tiers(
            request.form.getlist("tier_min"),
            request.form.getlist("tier_max"),
            request.form.getlist("tier_rate"),
        ),
    }


def _render_form(rule: CommissionRule | None, form: dict, status: int = 200):
    return (
        render_template(
            "admin/commission_rules/form.html",
            rule=rule,
            form=form,
            rule_types=RULE_TYPES,
            applies_to_options=APPLIES_TO,
        ),
        status,
    )


@bp.get("/commission-rules")
@require_permission("commission_rules.manage")
def rules_list():
    s = db_session()
    rules = s.query(CommissionRule).order_by(CommissionRule.created_at.desc(), CommissionRule.id.desc()).all()
    return render_template("admin/commission_rules/list.html", rules=rules)


@bp.get("/commission-rules/new")
@require_permission("commission_rules.manage")
def rules_new_get():
    return _render_form(None, {"type": "percent", "applies_to": "enrollment", "active": True, "tiers": []})


@bp.post("/commission-rules/new")
@require_permission("commission_rules.manage")
def rules_new_post():
    s = db_session()
    u = _current_user()
    payload = _payload_from_form()
    errors = validate_rule_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return _render_form(None, payload, 400)
    rule = create_rule(s, payload, u)
    s.commit()
    flash(f"Commission rule '{rule.name}' created.", "success")
    return redirect(url_for("commission_rules.rules_list"))


@bp.get("/commission-rules/<int:rule_id>/edit")
@require_permission("commission_rules.manage")
def rules_edit_get(rule_id: int):
    s = db_session()
    rule = s.get(CommissionRule, rule_id)
    if not rule:
        abort(404)
    form = {
        "name": rule.name,
        "type": rule.type,
        "amount": rule.amount,
        "applies_to": rule.applies_to,
        "active": rule.active,
        "tiers": rule.tiers or [],
    }
    return _render_form(rule, form)


@bp.post("/commission-rules/<int:rule_id>/edit")
@require_permission("commission_rules.manage")
def rules_edit_post(rule_id: int):
    s = db_session()
    u = _current_user()
    rule = s.get(CommissionRule, rule_id)
    if not rule:
        abort(404)
    payload = _payload_from_form()
    errors = validate_rule_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return _render_form(rule, payload, 400)
    update_rule(s, rule, payload, u)
    s.commit()
    flash(f"Commission rule '{rule.name}' updated.", "success")
    return redirect(url_for("commission_rules.rules_list"))


@bp.post("/commission-rules/<int:rule_id>/toggle")
@require_permission("commission_rules.manage")
def rules_toggle(rule_id: int):
    s = db_session()
    u = _current_user()
    rule = s.get(CommissionRule, rule_id)
    if not rule:
        abort(404)
    toggle_rule(s, rule, u)
    s.commit()
    flash(f"Commission rule '{rule.name}' {'activated' if rule.active else 'deactivated'}.", "success")
    return redirect(url_for("commission_rules.rules_list"))


@bp.post("/commission-rules/<int:rule_id>/delete")
@require_permission("commission_rules.manage")
def rules_delete(rule_id: int):
    s = db_session()
    u = _current_user()
    rule = s.get(CommissionRule, rule_id)
    if not rule:
        abort(404)
    name = rule.name
    delete_rule(s, rule, u)
    s.commit()
    flash(f"Commission rule '{name}' deleted.", "success")
    return redirect(url_for("commission_rules.rules_list"))
