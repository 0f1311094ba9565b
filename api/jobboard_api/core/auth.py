from dataclasses import dataclass
from enum import Enum


class PrincipalType(str, Enum):
    HUMAN = "human"
    MACHINE = "machine"


class AccountRole(str, Enum):
    CANDIDATE = "candidate"
    EMPLOYER = "employer"
    STAFF = "staff"
    ADMIN = "admin"
    OWNER = "owner"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    role: str | None = None
    actor_id: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")

    def require_account_id(self) -> str:
        """Return the internal account id the principal acts as."""
        if self.principal_type is not PrincipalType.HUMAN or not self.actor_id:
            raise PermissionError("an authenticated account is required")
        return self.actor_id
