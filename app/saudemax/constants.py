"""
Central constants for the SaudeMAX application.
"""
from __future__ import annotations

# Plan catalogue (monthly contribution in USD; annual billing is 12 months less 10%)
PLANS = {
    "essential-individual": {"name": "Essential Individual", "type": "individual", "monthly": 199.0, "popular": False},
    "complete-individual": {"name": "Complete Individual", "type": "individual", "monthly": 349.0, "popular": True},
    "premium-individual": {"name": "Premium Individual", "type": "individual", "monthly": 499.0, "popular": False},
    "essential-family": {"name": "Essential Family", "type": "family", "monthly": 449.0, "popular": False},
    "complete-family": {"name": "Complete Family", "type": "family", "monthly": 749.0, "popular": True},
    "premium-family": {"name": "Premium Family", "type": "family", "monthly": 999.0, "popular": False},
}

ANNUAL_DISCOUNT = 0.10


def annual_amount(plan_code: str) -> float:
    return round(PLANS[plan_code]["monthly"] * 12 * (1 - ANNUAL_DISCOUNT), 2)


# Initial Unshared Amount: what a member pays per need before sharing starts
IUA_LEVELS = ("1500", "3000", "6000")
DEFAULT_IUA_LEVEL = "1500"


# Referral code capture (?ref=CODE)
REF_QUERY_PARAMS = ("ref", "affiliate_code")
REF_SESSION_KEY = "affiliate_ref"
REF_COOKIE_NAME = "affiliate_ref"
REF_COOKIE_MAX_AGE = 30 * 24 * 3600
