from app.saudemax.db import session_scope
from app.saudemax.models import AuditEvent
from app.saudemax.modules.commission_rules.models import CommissionRule
from app.saudemax.modules.commission_rules.service import (
    calculate_commission,
    effective_rate,
    parse_tiers,
    tier_rate_for,
    validate_rule_payload,
)


def _rule(**kw) -> CommissionRule:
    return CommissionRule(name=kw.pop("name", "r"), applies_to=kw.pop("applies_to", "both"), active=True, **kw)


def test_validate_rule_payload():
    assert validate_rule_payload({"name": "Launch", "type": "percent", "amount": "12.5", "applies_to": "enrollment"}) == []

    errors = validate_rule_payload({"name": "", "type": "bogus", "applies_to": "never"})
    assert "Name is required." in errors
    assert any(e.startswith("Invalid type") for e in errors)
    assert any(e.startswith("Invalid 'applies to'") for e in errors)

    errors = validate_rule_payload({"name": "Flat", "type": "flat", "amount": "-5", "applies_to": "both"})
    assert errors == ["Amount cannot be negative."]

    errors = validate_rule_payload({"name": "T", "type": "tiered", "applies_to": "both", "tiers": []})
    assert errors == ["At least one tier is required for tiered commission type."]

    errors = validate_rule_payload(
        {"name": "T", "type": "tiered", "applies_to": "both", "tiers": [{"min": 5, "max": 2, "rate": -1}]}
    )
    assert len(errors) == 2

    for bad in ("nan", "inf", "-inf"):
        errors = validate_rule_payload({"name": "P", "type": "percent", "amount": bad, "applies_to": "both"})
        assert errors == ["Amount is required for flat and percentage commission types."]
    errors = validate_rule_payload(
        {"name": "T", "type": "tiered", "applies_to": "both", "tiers": [{"min": 1, "max": None, "rate": float("nan")}]}
    )
    assert errors == ["Tier 1: rate must be a non-negative number."]


def test_parse_tiers_drops_blank_rows():
    tiers = parse_tiers(["1", "", "11"], ["10", "", ""], ["5", "", "7.5"])
    assert tiers == [{"min": 1, "max": 10, "rate": 5.0}, {"min": 11, "max": None, "rate": 7.5}]
    assert parse_tiers(["1.5"], [""], ["x"]) == [{"min": None, "max": None, "rate": None}]
    assert parse_tiers(["inf"], ["nan"], ["inf"]) == [{"min": None, "max": None, "rate": None}]


def test_calculate_commission_per_type():
    assert calculate_commission(_rule(type="flat", amount=25.0), 999.0) == 25.0
    assert calculate_commission(_rule(type="percent", amount=12.5), 349.0) == 43.62
    assert calculate_commission(_rule(type="percent", amount=10.0), None) == 0.0

    tiered = _rule(type="tiered", tiers=[{"min": 1, "max": 5, "rate": 10.0}, {"min": 6, "max": None, "rate": 15.0}])
    assert calculate_commission(tiered, 200.0, referral_number=5) == 20.0
    assert calculate_commission(tiered, 200.0, referral_number=6) == 30.0
    assert effective_rate(tiered, 6) == 15.0
    assert effective_rate(_rule(type="flat", amount=25.0)) == 0.0

    gap = _rule(type="tiered", tiers=[{"min": 3, "max": None, "rate": 10.0}])
    assert tier_rate_for(gap.tiers, 1) is None
    assert calculate_commission(gap, 200.0, referral_number=1) == 0.0


def test_rules_admin_crud(app, client, login, post):
    login()
    r = client.get("/admin/commission-rules/new")
    assert r.status_code == 200

    r = post(
        "/admin/commission-rules/new",
        {
            "name": "Volume tiers",
            "type": "tiered",
            "applies_to": "enrollment",
            "active": "1",
            "tier_min": ["11", "1"],
            "tier_max": ["", "10"],
            "tier_rate": ["15", "10"],
        },
    )
    assert r.status_code == 302

    with session_scope(app) as s:
        rule = s.query(CommissionRule).one()
        rule_id = rule.id
        assert rule.amount is None
        assert [t["min"] for t in rule.tiers] == [1, 11]

    r = client.get("/admin/commission-rules")
    assert "Volume tiers" in r.get_data(as_text=True)

    r = post(f"/admin/commission-rules/{rule_id}/toggle")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(CommissionRule, rule_id).active is False

    r = post(
        f"/admin/commission-rules/{rule_id}/edit",
        {"name": "Flat bonus", "type": "flat", "amount": "30", "applies_to": "both", "active": "1"},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        rule = s.get(CommissionRule, rule_id)
        assert (rule.name, rule.type, rule.amount, rule.tiers, rule.active) == ("Flat bonus", "flat", 30.0, None, True)

    r = post(f"/admin/commission-rules/{rule_id}/delete")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.query(CommissionRule).count() == 0
        actions = [ev.action for ev in s.query(AuditEvent).filter(AuditEvent.entity_type == "CommissionRule")]
        assert sorted(actions) == sorted(
            ["commission_rule.create", "commission_rule.deactivate", "commission_rule.edit", "commission_rule.delete"]
        )


def test_rules_admin_rejects_invalid_form(client, login, post):
    login()
    r = post("/admin/commission-rules/new", {"name": "", "type": "percent", "applies_to": "both"})
    assert r.status_code == 400
    assert "Name is required." in r.get_data(as_text=True)


def test_advisor_cannot_manage_rules(client, make_user, login):
    make_user("advisor@example.com", role_key="advisor")
    login("advisor@example.com", "password-123")
    assert client.get("/admin/").status_code == 200
    assert client.get("/admin/commission-rules").status_code == 403
