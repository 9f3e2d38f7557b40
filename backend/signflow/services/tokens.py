import secrets
from typing import Callable, Iterable

from signflow.core.config import settings
from signflow.services.exceptions import SigningConflictError

MIN_TOKEN_BYTES = 16

TokenFactory = Callable[[], str]


def generate_access_token(nbytes: int | None = None) -> str:
    """Return a URL-safe capability token with at least 128 bits of entropy."""
    size = max(int(nbytes or settings.signing_token_bytes), MIN_TOKEN_BYTES)
    return secrets.token_urlsafe(size)


def issue_unique_tokens(
    count: int,
    exists: Callable[[Iterable[str]], set[str]],
    *,
    factory: TokenFactory | None = None,
    attempts: int | None = None,
) -> list[str]:
    """Draw ``count`` tokens that collide neither with the store nor with each other.

    ``exists`` receives candidate tokens and returns the subset already stored.
    Each slot gets ``attempts`` draws before the whole call gives up.
    """
    make_token = factory or generate_access_token
    max_attempts = max(int(attempts or settings.token_generation_attempts), 1)
    issued: list[str] = []
    for _ in range(count):
        for _attempt in range(max_attempts):
            candidate = make_token()
            if candidate in issued:
                continue
            if exists([candidate]):
                continue
            issued.append(candidate)
            break
        else:
            raise SigningConflictError(
                "Could not generate a unique access token",
                reason="token_collision",
            )
    return issued
