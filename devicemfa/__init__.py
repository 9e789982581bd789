"""
devicemfa - device-bound multi-factor authentication.

A FastAPI credential authority that verifies ECDSA signatures from
enrolled devices and falls back to one-time codes delivered out-of-band,
plus the client side: capability classification, key management and the
enrollment/sign-in state machine.
"""

__version__ = "1.0.0"
