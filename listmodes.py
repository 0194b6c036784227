"""
pychand List Modes
Channel modes holding many independent entries (ban masks, exceptions)

Copyright (C) 2026 pychand Project

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import fnmatch
import logging
import time
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from modes import ModeAction, ModeHandler, ModeType

logger = logging.getLogger(__name__)


@dataclass
class ListEntry:
    mask: str
    set_by: str
    set_at: int


@runtime_checkable
class ListModeExporter(Protocol):
    """
    Capability implemented by anything that owns list-mode entries.

    sync_channel() appends one (letter, parameter) pair per entry it holds
    for the channel through snapshot.add(). It must not change the channel
    and must return without blocking.
    """

    def sync_channel(self, channel, snapshot) -> None:
        ...


class ListModeBase(ModeHandler):
    """Generic list mode: +X mask adds an entry, -X mask removes it"""

    list_mode = True

    def __init__(self, letter, name, max_entries=100):
        super().__init__(letter, name, ModeType.CHANNEL,
                         param_on_add=True, param_on_remove=True)
        self.max_entries = max_entries

    def entries(self, channel):
        return channel.list_modes.get(self.letter, [])

    def find(self, channel, mask):
        mask_lower = mask.lower()
        for entry in self.entries(channel):
            if entry.mask.lower() == mask_lower:
                return entry
        return None

    def on_mode_change(self, source, dest, channel, parameter, adding):
        mask = (parameter or "").strip()
        if not mask or ' ' in mask:
            return ModeAction.DENY

        existing = self.find(channel, mask)
        if adding:
            if existing:
                return ModeAction.DENY
            entries = channel.list_modes.setdefault(self.letter, [])
            if len(entries) >= self.max_entries:
                logger.debug(f"{channel.name} +{self.letter} list is full")
                return ModeAction.DENY
            entries.append(ListEntry(mask, source.name, int(time.time())))
            return ModeAction.ALLOW

        if not existing:
            return ModeAction.DENY
        entries = channel.list_modes[self.letter]
        entries.remove(existing)
        if not entries:
            del channel.list_modes[self.letter]
        return ModeAction.ALLOW

    def matches(self, channel, user) -> bool:
        """True if the user's prefix matches any entry of this list"""
        user_mask = user.prefix().lower()
        for entry in self.entries(channel):
            if fnmatch.fnmatch(user_mask, entry.mask.lower()):
                return True
        return False

    def sync_channel(self, channel, snapshot) -> None:
        for entry in self.entries(channel):
            snapshot.add(self.letter, entry.mask)


class BanMode(ListModeBase):
    """+b, managed by the core rather than a loadable module"""

    def __init__(self, max_entries=100):
        super().__init__('b', 'ban', max_entries)


class BanExceptionMode(ListModeBase):
    def __init__(self, max_entries=100):
        super().__init__('e', 'banexception', max_entries)


class InviteExceptionMode(ListModeBase):
    def __init__(self, max_entries=100):
        super().__init__('I', 'invex', max_entries)
