"""Core primitives: typed failures and clock helpers."""
