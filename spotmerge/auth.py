"""Moderator capability lookup.

Authentication itself lives outside this service; callers hand us an
`Identity` and we only ask whether it may moderate.
"""
from __future__ import annotations

from typing import Iterable, Protocol

from spotmerge.config import settings
from spotmerge.schemas.merge import Identity


class ModeratorPolicy(Protocol):
    def has_moderator_capability(self, identity: Identity) -> bool: ...


class SettingsModeratorPolicy:
    """Moderators are the user ids listed in `MODERATOR_USER_IDS`."""

    def __init__(self, moderator_ids: Iterable[str] | None = None) -> None:
        ids = settings.MODERATOR_USER_IDS if moderator_ids is None else moderator_ids
        self._moderators = frozenset(str(i).strip() for i in ids if str(i).strip())

    def has_moderator_capability(self, identity: Identity) -> bool:
        return identity.user_id in self._moderators
