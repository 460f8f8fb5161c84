"""Authentication module.

Resolves bearer credentials into chat identities.

Services:
    - IdentityProvider: abstract ``verify(token) -> Identity`` contract.
    - JWTIdentityProvider: HS256 JWT verification (and token issuance for tooling).
"""
from .identity import Identity, IdentityProvider, JWTIdentityProvider

__all__ = [
    "Identity",
    "IdentityProvider",
    "JWTIdentityProvider",
]
