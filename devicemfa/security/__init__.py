"""Success-token utilities."""

from devicemfa.security.tokens import create_access_token, issue_success_token, verify_token

__all__ = [
    "create_access_token",
    "issue_success_token",
    "verify_token",
]
