"""
Team Context

Explicit caller identity passed into every pipeline call. The HTTP layer
builds it from gateway headers; webhooks run under a system context for the
team that owns the matching flow input.
"""

from dataclasses import dataclass

from ..common.errors import Unauthorized

ACCOUNTS_WRITE = "accounts:write"
FLOWS_WRITE = "flows:write"
DISCUSSIONS_PROCESS = "discussions:process"
USER_MAPPINGS_WRITE = "user_mappings:write"

ROLE_PERMISSIONS = {
    "owner": {ACCOUNTS_WRITE, FLOWS_WRITE, DISCUSSIONS_PROCESS, USER_MAPPINGS_WRITE},
    "admin": {ACCOUNTS_WRITE, FLOWS_WRITE, DISCUSSIONS_PROCESS, USER_MAPPINGS_WRITE},
    "member": {DISCUSSIONS_PROCESS, USER_MAPPINGS_WRITE},
    "system": {FLOWS_WRITE, DISCUSSIONS_PROCESS, USER_MAPPINGS_WRITE},
}


@dataclass(frozen=True)
class TeamContext:
    """Who is calling, and for which team"""
    team_id: str
    user_id: str = ""
    role: str = "member"

    @classmethod
    def system(cls, team_id: str) -> "TeamContext":
        return cls(team_id=team_id, user_id="system", role="system")

    def can(self, permission: str) -> bool:
        return permission in ROLE_PERMISSIONS.get(self.role, set())

    def require(self, permission: str) -> None:
        """Raise Unauthorized unless the caller holds ``permission``"""
        if not self.can(permission):
            raise Unauthorized(f"role '{self.role}' lacks '{permission}'")
