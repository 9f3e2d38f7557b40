from . import health, public_signatures, signing_requests

__all__ = [
    "health",
    "public_signatures",
    "signing_requests",
]
