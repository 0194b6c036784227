"""
pychand Permanent Channels Module
Provides channel mode +P and a crash-safe database of permanent channels

A channel with +P is not destroyed when its last member leaves. Whenever
such a channel's modes or topic change the database is marked dirty, and
the next background timer tick rewrites the whole database file. At boot
the file is read back and every channel in it is recreated.

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

import os
import re
import stat
import time
import logging
import tempfile
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional

from chand import ConfigurationError, ModResult, ServerConfig
from modes import ModeAction, ModeHandler, ModeType

logger = logging.getLogger(__name__)

DB_HEADER = "# This file is automatically generated by permchannels. Any changes will be overwritten."
DB_CONFIG_TAG = '<config format="xml">'

TAG_RE = re.compile(r'^<permchannels(?P<attrs>(?:\s+\w+="[^"]*")*)\s*/?>$')
ATTR_RE = re.compile(r'(\w+)="([^"]*)"')


class RecordParseError(ValueError):
    """A line of the database could not be turned into a record"""


@dataclass
class PersistedRecord:
    channel: str
    ts: Optional[int] = None
    topic: str = ""
    topicts: int = 0
    topicsetby: str = ""
    modes: str = ""


@dataclass
class LoadReport:
    created: int = 0
    existing: int = 0
    skipped: int = 0

# ==============================================================================
# +P MODE
# ==============================================================================


class PermanentMode(ModeHandler):
    """Handles the +P channel mode"""

    def __init__(self, server):
        super().__init__('P', 'permanent', ModeType.CHANNEL, oper_only=True)
        self.server = server

    def on_mode_change(self, source, dest, channel, parameter, adding):
        if adding == self.is_set(channel):
            return ModeAction.DENY

        if adding:
            channel.set_mode(self.letter)
        else:
            channel.unset_mode(self.letter)
            self.server.check_destroy(channel)

        return ModeAction.ALLOW

# ==============================================================================
# LIST MODE SNAPSHOTS
# ==============================================================================


class SnapshotContext:
    """List-mode entries gathered for one channel during one write cycle"""

    def __init__(self, channel):
        self.channel = channel
        self.entries = []  # [(letter, parameter), ...]

    def add(self, letter, parameter):
        self.entries.append((letter, parameter))

    def truncate(self, size):
        del self.entries[size:]

    @property
    def letters(self):
        return "".join(letter for letter, _ in self.entries)

    @property
    def params(self):
        return [param for _, param in self.entries]

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


class ModeSnapshotCollector:
    """
    Asks every list-mode owner for the entries it holds on a channel.

    The core ban list goes first, then every other exporter in the order
    it was registered. That order depends on module load order and may
    differ between restarts.
    """

    def __init__(self, registry):
        self.registry = registry

    def sources(self):
        sources = []
        if self.registry.ban is not None:
            sources.append(self.registry.ban)
        sources.extend(self.registry.list_exporters(ModeType.CHANNEL))
        return sources

    def collect(self, channel, snapshot=None):
        if snapshot is None:
            snapshot = SnapshotContext(channel)
        for exporter in self.sources():
            mark = len(snapshot)
            try:
                exporter.sync_channel(channel, snapshot)
            except Exception as e:
                # Drop whatever this exporter managed to add before failing
                snapshot.truncate(mark)
                logger.error(f"List mode export for {channel.name} failed in {exporter!r}: {e}")
        return snapshot

# ==============================================================================
# SERIALIZATION
# ==============================================================================


class ChannelSerializer:
    def __init__(self, collector, save_listmodes=True):
        self.collector = collector
        self.save_listmodes = save_listmodes

    @staticmethod
    def build_modes(chanmodes, snapshot):
        """
        Merge list modes into a "letters params" mode string.

        The list letters go right before the first space, or at the end if
        no non-list mode has a parameter; their masks go after everything.
        """
        if not snapshot:
            return chanmodes

        p = chanmodes.find(' ')
        if p == -1:
            chanmodes += snapshot.letters
        else:
            chanmodes = chanmodes[:p] + snapshot.letters + chanmodes[p:]

        return chanmodes + ' ' + ' '.join(snapshot.params)

    def serialize(self, channel) -> PersistedRecord:
        chanmodes = channel.chan_modes(show_params=True)
        if self.save_listmodes:
            chanmodes = self.build_modes(chanmodes, self.collector.collect(channel))

        return PersistedRecord(
            channel=channel.name,
            ts=channel.created_at,
            topic=channel.topic,
            topicts=channel.topic_set_at,
            topicsetby=channel.topic_set_by,
            modes=chanmodes,
        )

    @staticmethod
    def format_record(record: PersistedRecord) -> str:
        escape = ServerConfig.escape_value
        return (f'<permchannels channel="{escape(record.channel)}"'
                f' ts="{record.ts}"'
                f' topic="{escape(record.topic)}"'
                f' topicts="{record.topicts}"'
                f' topicsetby="{escape(record.topicsetby)}"'
                f' modes="{escape(record.modes)}">')

    @staticmethod
    def parse_record(line: str) -> PersistedRecord:
        """Inverse of format_record(). Raises RecordParseError."""
        match = TAG_RE.match(line.strip())
        if not match:
            raise RecordParseError(f"malformed permchannels tag: {line.strip()[:80]!r}")

        attrs = {key: ServerConfig.unescape_value(value)
                 for key, value in ATTR_RE.findall(match.group('attrs'))}

        def number(key, default):
            value = attrs.get(key, "")
            if value == "":
                return default
            try:
                return int(value)
            except ValueError:
                raise RecordParseError(f"{key}={value!r} is not a number")

        return PersistedRecord(
            channel=attrs.get('channel', ""),
            ts=number('ts', None),
            topic=attrs.get('topic', ""),
            topicts=number('topicts', 0),
            topicsetby=attrs.get('topicsetby', ""),
            modes=attrs.get('modes', ""),
        )

# ==============================================================================
# DATABASE WRITER
# ==============================================================================


class DurableWriter:
    """
    Replaces the database file with a complete new set of records.

    The records go to a fresh temporary file in the same directory, which is
    flushed to disk and then renamed over the old file, so the file under its
    real name is always either the old or the new database. With
    atomic_replace off (platforms that cannot rename over an existing file)
    the old file is removed first, which leaves a short window with no
    database at all.
    """

    def __init__(self, filename, atomic_replace=True):
        self.filename = filename
        self.atomic_replace = atomic_replace

    def write(self, records: Iterable[PersistedRecord]) -> bool:
        # No file configured, nothing to write
        if not self.filename:
            return True

        directory = os.path.dirname(os.path.abspath(self.filename))
        try:
            fd, tmp_path = tempfile.mkstemp(
                prefix=os.path.basename(self.filename) + '.', suffix='.tmp', dir=directory)
        except OSError as e:
            logger.error(f"Cannot create database! {e}")
            return False

        try:
            with os.fdopen(fd, 'w', encoding='utf-8', newline='\n') as stream:
                stream.write(DB_HEADER + '\n')
                stream.write(DB_CONFIG_TAG + '\n')
                for record in records:
                    stream.write(ChannelSerializer.format_record(record) + '\n')
                stream.flush()
                os.fsync(stream.fileno())
        except Exception as e:
            logger.error(f"Cannot write to new database! {e}")
            self._discard(tmp_path)
            return False

        # mkstemp creates the file 0600; keep the permissions of the old database
        if os.path.exists(self.filename):
            try:
                os.chmod(tmp_path, stat.S_IMODE(os.stat(self.filename).st_mode))
            except OSError as e:
                logger.warning(f"Cannot copy permissions of {self.filename}: {e}")

        if not self.atomic_replace and os.path.exists(self.filename):
            logger.warning(f"Removing {self.filename} before replacing it (non-atomic)")
            try:
                os.remove(self.filename)
            except OSError as e:
                logger.error(f"Cannot remove old database! {e} (new database left at {tmp_path})")
                return False

        try:
            os.replace(tmp_path, self.filename)
        except OSError as e:
            logger.error(f"Cannot replace old with new database! {e} (new database left at {tmp_path})")
            return False

        return True

    @staticmethod
    def _discard(path):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Could not remove temporary database {path}: {e}")

# ==============================================================================
# DATABASE LOADER
# ==============================================================================


class DatabaseLoader:
    def __init__(self, server, filename, static_channels=None):
        self.server = server
        self.filename = filename
        self.static_channels = static_channels or []

    def read_file(self) -> Iterator[PersistedRecord]:
        if not self.filename or not os.path.exists(self.filename):
            logger.info(f"No permchannels database at {self.filename!r}, nothing to load")
            return

        try:
            # Records end at '\n' only; str.splitlines() would also break on
            # control characters such as \x1d that may appear in a topic
            with open(self.filename, 'r', encoding='utf-8', newline='\n') as f:
                lines = f.read().split('\n')
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Cannot read permchannels database {self.filename}: {e}")
            return

        for lineno, line in enumerate(lines, 1):
            line = line.strip()
            if not line or line.startswith('#') or line.startswith('<config') or line == '</config>':
                continue
            if not line.startswith('<permchannels'):
                logger.debug(f"{self.filename}:{lineno}: ignoring {line[:40]!r}")
                continue
            try:
                yield ChannelSerializer.parse_record(line)
            except RecordParseError as e:
                logger.error(f"{self.filename}:{lineno}: skipping record: {e}")

    def read_static(self) -> Iterator[PersistedRecord]:
        """Permanent channels declared in the server config"""
        for entry in self.static_channels:
            if not isinstance(entry, dict):
                logger.error(f"Ignoring permchannels config entry {entry!r}")
                continue
            try:
                yield PersistedRecord(
                    channel=str(entry.get('channel', "")),
                    ts=int(entry['ts']) if entry.get('ts') else None,
                    topic=str(entry.get('topic', "")),
                    topicts=int(entry.get('topicts') or 0),
                    topicsetby=str(entry.get('topicsetby', "")),
                    modes=str(entry.get('modes', "")),
                )
            except (TypeError, ValueError) as e:
                logger.error(f"Ignoring permchannels config entry {entry!r}: {e}")

    def load(self, now=None) -> LoadReport:
        report = LoadReport()
        now = now or int(time.time())
        max_len = self.server.config.get('limits', 'max_channel_length', default=50)

        for source in (self.read_file(), self.read_static()):
            for record in source:
                if not record.channel or len(record.channel) > max_len:
                    logger.warning(f"Ignoring permchannels tag with empty or too long channel name ({record.channel!r})")
                    report.skipped += 1
                    continue
                if self.server.find_channel(record.channel):
                    report.existing += 1
                    continue
                self.restore(record, now)
                report.created += 1

        logger.info(f"Permanent channels loaded: {report.created} created, "
                    f"{report.existing} already present, {report.skipped} skipped")
        return report

    def restore(self, record: PersistedRecord, now):
        ts = record.ts if record.ts is not None else now
        channel = self.server.create_channel(record.channel, max(ts, 1))

        channel.topic = record.topic
        if record.topicts or record.topic:
            channel.topic_set_at = record.topicts or now
            channel.topic_set_by = record.topicsetby or self.server.servername

        logger.debug(f"Added {channel.name} with topic {channel.topic!r}")

        if record.modes:
            self.replay_modes(channel, record.modes)
        return channel

    def replay_modes(self, channel, modes):
        """
        Re-apply a stored mode string. Load only ever adds modes, as the
        server itself, straight through each mode's handler.
        """
        tokens = modes.split()
        if not tokens:
            return
        modeseq, params = tokens[0], tokens[1:]
        actor = self.server.system_actor

        for letter in modeseq:
            handler = self.server.modes.find_mode(letter, ModeType.CHANNEL)
            if handler is None:
                logger.debug(f"{channel.name}: unknown mode {letter!r} in database, skipped")
                continue

            par = None
            if handler.needs_param(True):
                if not params:
                    logger.warning(f"{channel.name}: no parameter left for mode {letter}, skipped")
                    continue
                par = params.pop(0)

            if handler.on_mode_change(actor, actor, channel, par, True) is ModeAction.DENY:
                logger.debug(f"{channel.name}: mode {letter} {par or ''} refused during load")

# ==============================================================================
# MODULE
# ==============================================================================


class PermanentChannels:
    """
    The permchannels module: owns +P, the dirty flag, the one-shot load
    guard and the configured database path.
    """

    def __init__(self, server):
        self.server = server
        self.mode = PermanentMode(server)
        self.dirty = False
        self.loaded = False
        self.rehash()

        self.collector = ModeSnapshotCollector(server.modes)
        if not server.modes.add_mode(self.mode):
            raise ConfigurationError(f"channel mode {self.mode.letter} is already in use")

        self.hooks = [
            ('post_mode', self.on_post_mode),
            ('post_topic_change', self.on_post_topic_change),
            ('channel_pre_delete', self.on_channel_pre_delete),
            ('background_timer', self.on_background_timer),
            ('modules_ready', self.load_database),
            ('rehash', self.on_rehash),
        ]
        for event, callback in self.hooks:
            server.attach(event, callback)

    def rehash(self):
        config = self.server.config
        filename = config.get('persistence', 'filename', default="")
        listmodes = config.get('persistence', 'listmodes', default=True)
        atomic_replace = config.get('persistence', 'atomic_replace', default=os.name != 'nt')
        interval = config.get('persistence', 'save_interval', default=5)
        static_channels = config.get('permchannels', 'channels', default=[])

        if filename is None:
            filename = ""
        if not isinstance(filename, str):
            raise ConfigurationError(f"persistence.filename must be a string, not {filename!r}")
        if not isinstance(listmodes, bool):
            raise ConfigurationError(f"persistence.listmodes must be true or false, not {listmodes!r}")
        if not isinstance(atomic_replace, bool):
            raise ConfigurationError(f"persistence.atomic_replace must be true or false, not {atomic_replace!r}")
        if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
            raise ConfigurationError(f"persistence.save_interval must be a positive number, not {interval!r}")
        if not isinstance(static_channels, list):
            raise ConfigurationError("permchannels.channels must be a list")

        self.filename = filename
        self.save_listmodes = listmodes
        self.static_channels = static_channels
        self.writer = DurableWriter(filename, atomic_replace)
        if not filename:
            logger.warning("No permchannels database file configured, channels will not be saved")

    def on_rehash(self):
        try:
            self.rehash()
        except ConfigurationError as e:
            logger.error(f"permchannels: keeping previous settings: {e}")

    # --- dirty tracking ----------------------------------------------------

    def mark_dirty(self):
        self.dirty = True

    def on_post_mode(self, source, channel, letter, parameter, adding):
        if letter == self.mode.letter or self.mode.is_set(channel):
            self.mark_dirty()

    def on_post_topic_change(self, source, channel, topic):
        if self.mode.is_set(channel):
            self.mark_dirty()

    def on_channel_pre_delete(self, channel):
        if self.mode.is_set(channel):
            return ModResult.DENY
        return ModResult.PASSTHRU

    def on_background_timer(self, now):
        if self.dirty:
            self.write_database()
        self.dirty = False

    # --- database ----------------------------------------------------------

    def permanent_channels(self) -> List:
        return [c for c in self.server.channels.values() if self.mode.is_set(c)]

    def write_database(self) -> bool:
        serializer = ChannelSerializer(self.collector, self.save_listmodes)
        records = []
        for channel in self.permanent_channels():
            try:
                records.append(serializer.serialize(channel))
            except Exception as e:
                logger.error(f"Cannot serialize {channel.name}, database not written: {e}")
                return False

        if not self.writer.write(records):
            return False
        if self.filename:
            logger.info(f"Saved {len(records)} permanent channels to {self.filename}")
        return True

    def load_database(self) -> Optional[LoadReport]:
        """
        Recreate the channels stored in the database. Runs once per process,
        and only while this server is not linked to any other.
        """
        if self.loaded:
            return None
        self.loaded = True

        # Channels created here get timestamps the rest of the network knows
        # nothing about, so never load into a linked network
        servers = self.server.link_manager.get_server_list()
        if len(servers) >= 2:
            logger.warning(f"Not loading permchannels database: linked to {len(servers) - 1} server(s)")
            return None

        loader = DatabaseLoader(self.server, self.filename, self.static_channels)
        try:
            return loader.load()
        except Exception as e:
            logger.error(f"Error loading permchannels database: {e}")
            return None

    # --- unload ------------------------------------------------------------

    def unload(self):
        if self.dirty:
            self.write_database()
            self.dirty = False

        for event, callback in self.hooks:
            self.server.detach(event, callback)
        self.server.modes.del_mode(self.mode)

        # Channels kept alive only by +P go away with the mode
        for channel in list(self.server.channels.values()):
            channel.unset_mode(self.mode.letter)
            self.server.check_destroy(channel)
