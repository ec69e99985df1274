"""Authentication models shared across the API."""

from dataclasses import dataclass


@dataclass
class User:
    """Authenticated caller, as asserted by the upstream API gateway."""
    email: str
    user_id: str
    name: str

    @property
    def actor(self) -> str:
        """Identifier recorded as ``performed_by`` in audit records."""
        return self.email or self.user_id
