"""The authenticated party behind a request.

Identity is resolved upstream (auth gateway); the core only receives the
user id and role and decides what that pair may do.
"""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass

from milestone_escrow.domain.enums import UserRole
from milestone_escrow.domain.exceptions import UnauthorizedError


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: UserRole = UserRole.HOMEOWNER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_automation(self) -> bool:
        return self.role == UserRole.AUTOMATION


def ensure_can_act(
    actor: Actor,
    action: str,
    *,
    user_ids: Collection[str] = (),
    roles: Collection[UserRole] = (UserRole.ADMIN,),
    allow_automation: bool = False,
) -> None:
    """Allow the listed users and roles; refuse everyone else.

    AUTOMATION actors are refused unless allow_automation is set, even when
    their user id is listed: money-moving decisions need a human.

    Raises:
        UnauthorizedError: If the actor may not perform the action.
    """
    if actor.is_automation and not allow_automation:
        raise UnauthorizedError(actor.user_id, action)
    if actor.user_id in user_ids or actor.role in roles:
        return
    raise UnauthorizedError(actor.user_id, action)
