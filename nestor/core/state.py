"""Single-owner registry of groups and live sessions.

One HostState is created by the host and passed to the queue, the session
manager and the IPC dispatcher. Nothing else holds group or session state,
and there are no module-level registries.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from nestor.core.errors import GroupError, SessionStateError
from nestor.core.types import Group
from nestor.core.validation import validate_folder

if TYPE_CHECKING:
    from nestor.session.types import Session

logger = logging.getLogger(__name__)


class HostState:
    """Groups known to the host and the session (if any) each one has live."""

    def __init__(self, main_folder: str) -> None:
        self.main_folder = main_folder
        self._groups: dict[str, Group] = {}
        self._sessions: dict[str, Session] = {}
        self.accepting = True

    # === Groups ===

    def register_group(self, group: Group) -> Group:
        """Add or replace a group. The main flag is derived from its folder.

        Raises:
            GroupError: If the folder is unsafe or belongs to another group.
        """
        validate_folder(group.folder)
        group = group.with_main_flag(self.main_folder)
        for existing in self._groups.values():
            if existing.folder == group.folder and existing.group_id != group.group_id:
                raise GroupError(
                    f"Folder {group.folder!r} already belongs to group {existing.group_id!r}"
                )
        self._groups[group.group_id] = group
        return group

    def get_group(self, group_id: str) -> Group | None:
        return self._groups.get(group_id)

    def group_by_folder(self, folder: str) -> Group | None:
        for group in self._groups.values():
            if group.folder == folder:
                return group
        return None

    def list_groups(self) -> list[Group]:
        return list(self._groups.values())

    def main_group(self) -> Group | None:
        return self.group_by_folder(self.main_folder)

    # === Sessions ===

    def live_session(self, group_id: str) -> Session | None:
        session = self._sessions.get(group_id)
        if session is not None and session.state.is_live:
            return session
        return None

    def attach_session(self, session: Session) -> None:
        """Record a new session for its group.

        Raises:
            SessionStateError: If the group already has a live session.
        """
        current = self.live_session(session.group_id)
        if current is not None:
            raise SessionStateError(
                f"Group {session.group_id} already has a {current.state.value} session"
            )
        self._sessions[session.group_id] = session

    def detach_session(self, session: Session) -> None:
        if self._sessions.get(session.group_id) is session:
            del self._sessions[session.group_id]

    def live_sessions(self) -> list[Session]:
        return [s for s in self._sessions.values() if s.state.is_live]
