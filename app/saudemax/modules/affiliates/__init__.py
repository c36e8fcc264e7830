"""Affiliate program: profiles, visit and referral tracking, commissions and withdrawals."""
