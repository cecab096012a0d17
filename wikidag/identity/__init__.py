"""Title normalization and canonical representative selection."""

from .normalize import normalize_title
from .resolver import IdentityResolution, IdentityResolver, IdentityResult, resolve_identities

__all__ = [
    "normalize_title",
    "IdentityResolution",
    "IdentityResolver",
    "IdentityResult",
    "resolve_identities",
]
