"""
pychand Mode Handlers
Channel mode handler base classes and the built-in non-list channel modes

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

from enum import Enum


class ModeType(Enum):
    USER = "user"
    CHANNEL = "channel"


class ModeAction(Enum):
    """Outcome of a single mode change, as returned by a handler"""
    ALLOW = "allow"
    DENY = "deny"


class ModeHandler:
    """
    Base class for a mode letter.

    Subclasses override on_mode_change() and return ModeAction.ALLOW when
    the channel was changed, or ModeAction.DENY to reject the change.
    """

    list_mode = False

    def __init__(self, letter: str, name: str, mode_type=ModeType.CHANNEL,
                 param_on_add=False, param_on_remove=False, oper_only=False):
        self.letter = letter
        self.name = name
        self.mode_type = mode_type
        self.param_on_add = param_on_add
        self.param_on_remove = param_on_remove
        self.oper_only = oper_only

    def needs_param(self, adding: bool) -> bool:
        return self.param_on_add if adding else self.param_on_remove

    def is_set(self, channel) -> bool:
        return channel.has_mode(self.letter)

    def on_mode_change(self, source, dest, channel, parameter, adding):
        raise NotImplementedError

    def __repr__(self):
        return f"<{type(self).__name__} +{self.letter} ({self.name})>"


class SimpleChannelMode(ModeHandler):
    """A parameterless on/off channel mode such as +n or +t"""

    def __init__(self, letter, name, oper_only=False):
        super().__init__(letter, name, ModeType.CHANNEL, oper_only=oper_only)

    def on_mode_change(self, source, dest, channel, parameter, adding):
        if adding == channel.has_mode(self.letter):
            return ModeAction.DENY
        if adding:
            channel.set_mode(self.letter)
        else:
            channel.unset_mode(self.letter)
        return ModeAction.ALLOW


class KeyMode(ModeHandler):
    """+k <key>: channel key, parameter required both ways"""

    def __init__(self):
        super().__init__('k', 'key', ModeType.CHANNEL,
                         param_on_add=True, param_on_remove=True)

    def on_mode_change(self, source, dest, channel, parameter, adding):
        if adding:
            key = parameter.strip()[:32] if parameter else ""
            if not key or ' ' in key or channel.get_mode_param('k') == key:
                return ModeAction.DENY
            channel.set_mode('k', key)
            return ModeAction.ALLOW
        if not channel.has_mode('k'):
            return ModeAction.DENY
        channel.unset_mode('k')
        return ModeAction.ALLOW


class LimitMode(ModeHandler):
    """+l <count>: user limit, parameter only when setting"""

    def __init__(self):
        super().__init__('l', 'limit', ModeType.CHANNEL, param_on_add=True)

    def on_mode_change(self, source, dest, channel, parameter, adding):
        if adding:
            try:
                limit = int(parameter)
            except (TypeError, ValueError):
                return ModeAction.DENY
            if limit <= 0 or channel.get_mode_param('l') == str(limit):
                return ModeAction.DENY
            channel.set_mode('l', str(limit))
            return ModeAction.ALLOW
        if not channel.has_mode('l'):
            return ModeAction.DENY
        channel.unset_mode('l')
        return ModeAction.ALLOW


def core_channel_modes():
    """Built-in non-list channel modes, in registration order"""
    return [
        SimpleChannelMode('i', 'inviteonly'),
        KeyMode(),
        LimitMode(),
        SimpleChannelMode('m', 'moderated'),
        SimpleChannelMode('n', 'noextmsg'),
        SimpleChannelMode('p', 'private'),
        SimpleChannelMode('s', 'secret'),
        SimpleChannelMode('t', 'topiclock'),
    ]
