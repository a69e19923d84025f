"""
Common utilities for the access-controlled cipher ledger.

Modules:
- config: environment / SSM parameter resolution
- identity: Ed25519 signers and ledger identities
- policy: requester authorization policies
- decryption: decryption capabilities (mock, Fernet, remote HTTP)
- rate_limiter: sliding-window throttle for outbound calls
"""

__all__ = [
    "config",
    "decryption",
    "identity",
    "policy",
    "rate_limiter",
]
