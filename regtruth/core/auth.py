from dataclasses import dataclass, field
from enum import Enum


class PrincipalType(str, Enum):
    HUMAN = "human"
    MACHINE = "machine"


@dataclass(slots=True)
class Principal:
    """Authenticated caller. Audit rows and command payloads identify it by ``actor_label``."""

    principal_type: PrincipalType
    subject: str
    scopes: frozenset[str] = field(default_factory=frozenset)
    role: str | None = None
    actor_id: str | None = None

    @property
    def is_human(self) -> bool:
        return self.principal_type is PrincipalType.HUMAN

    @property
    def actor_label(self) -> str:
        return f"{self.principal_type.value}:{self.actor_id or self.subject}"

    def require_scopes(self, required: set[str]) -> None:
        missing = sorted(required.difference(self.scopes))
        if missing:
            raise PermissionError(f"{self.actor_label} lacks scopes: {', '.join(missing)}")
