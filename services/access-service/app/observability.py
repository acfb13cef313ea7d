"""Prometheus counters for authentication and invitation activity."""

from __future__ import annotations

from prometheus_client import Counter

AUTH_FAILURES = Counter(
    "access_auth_failures_total",
    "Rejected authentication attempts",
    ["reason"],
)

TOKENS_ISSUED = Counter(
    "access_tokens_issued_total",
    "Tokens minted by the token manager",
    ["kind"],
)

INVITATIONS = Counter(
    "access_invitations_total",
    "Invitation lifecycle transitions",
    ["outcome"],
)

AUDIT_WRITE_FAILURES = Counter(
    "access_audit_write_failures_total",
    "Audit entries that could not be persisted",
)
