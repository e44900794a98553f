"""Challenge catalog and identity collaborators."""

from typing import Protocol, runtime_checkable

from engagement.challenges.schemas import Challenge, Identity


@runtime_checkable
class ChallengeCatalog(Protocol):
    """Read-only source of challenge metadata."""

    def get_challenge(self, challenge_id: str) -> Challenge | None:
        """Return the challenge or None if unknown."""
        ...


@runtime_checkable
class IdentityProvider(Protocol):
    """Supplies the user operations are performed as."""

    def current_user(self) -> Identity | None:
        """Return the signed-in identity, if any."""
        ...


class InMemoryChallengeCatalog:
    """Catalog backed by a dict, for tests and embedding applications."""

    def __init__(self, challenges: list[Challenge] | None = None) -> None:
        self._challenges: dict[str, Challenge] = {c.id: c for c in challenges or []}

    def add(self, challenge: Challenge) -> None:
        self._challenges[challenge.id] = challenge

    def get_challenge(self, challenge_id: str) -> Challenge | None:
        return self._challenges.get(challenge_id)


class StaticIdentityProvider:
    """Identity provider returning a fixed, switchable identity."""

    def __init__(self, identity: Identity | None = None) -> None:
        self._identity = identity

    def sign_in(self, identity: Identity) -> None:
        self._identity = identity

    def sign_out(self) -> None:
        self._identity = None

    def current_user(self) -> Identity | None:
        return self._identity
