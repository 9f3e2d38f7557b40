# noqa: F401 to ensure models are imported for metadata
from signflow.models.signing import Signer, SigningEvent, SigningRequest

__all__ = [
    "Signer",
    "SigningEvent",
    "SigningRequest",
]
