#!/usr/bin/env python3
"""
pychand Permanent Channels Test Suite
Tests +P, dirty tracking, list mode snapshots and the database writer

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

import asyncio
import os
import stat
import sys
import tempfile
from unittest import mock

from chand import ChannelServer, ServerConfig, User
from permchannels import (
    DB_HEADER, ChannelSerializer, DurableWriter, ModeSnapshotCollector,
    PermanentChannels, PersistedRecord, SnapshotContext,
)


class TestRunner:
    def __init__(self):
        self.passed = 0
        self.failed = 0
        self.tests = []

    def test(self, name):
        def decorator(func):
            self.tests.append((name, func))
            return func
        return decorator

    async def run_all(self):
        for name, func in self.tests:
            print(f"\n{'='*70}")
            print(f"TEST: {name}")
            print('='*70)
            try:
                await func()
                print(f"✅ PASSED: {name}")
                self.passed += 1
            except AssertionError as e:
                print(f"❌ FAILED: {name}")
                print(f"   Reason: {e}")
                self.failed += 1
            except Exception as e:
                print(f"❌ ERROR: {name}")
                print(f"   Exception: {e}")
                import traceback
                traceback.print_exc()
                self.failed += 1

        print(f"\n{'='*70}")
        print(f"RESULTS: {self.passed} passed, {self.failed} failed")
        print('='*70)
        return self.failed == 0


runner = TestRunner()


def make_server(directory, **persistence):
    """A server with permchannels loaded, writing into directory"""
    config = ServerConfig()
    config.set('persistence', 'filename', value=os.path.join(directory, 'permchannels.conf'))
    for key, value in persistence.items():
        config.set('persistence', key, value=value)
    server = ChannelServer(config)
    perm = server.load_module(PermanentChannels)
    return server, perm


def make_oper(nickname="admin"):
    user = User(nickname, nickname, "staff.example")
    user.set_mode('o', True)
    return user


def read_lines(path):
    with open(path, encoding='utf-8') as f:
        return f.read().splitlines()


class CountingWriter(DurableWriter):
    def __init__(self, filename):
        super().__init__(filename)
        self.writes = 0

    def write(self, records):
        self.writes += 1
        return super().write(records)


class ListExporter:
    """An exporter owned by some other module"""

    def __init__(self, letter, masks, fail=False):
        self.letter = letter
        self.masks = masks
        self.fail = fail

    def sync_channel(self, channel, snapshot):
        for mask in self.masks:
            snapshot.add(self.letter, mask)
        if self.fail:
            raise RuntimeError("exporter went away")


@runner.test("+P needs a privileged source")
async def test_permanent_mode_requires_oper():
    with tempfile.TemporaryDirectory() as tmp:
        server, perm = make_server(tmp)
        user = User("alice", "alice", "home.example")
        channel = server.join(user, "#lobby")

        result = server.process_mode(user, channel, "+P", [])
        assert not result.applied, "Chanop without oper privileges set +P"
        assert result.rejected[0][1:] == ('P', None, "permission denied")
        assert not perm.mode.is_set(channel)
        assert not perm.dirty

        result = server.process_mode(make_oper(), channel, "+P", [])
        assert result.applied == [(True, 'P', None)]
        assert perm.mode.is_set(channel)
        assert perm.dirty, "Setting +P should mark the database dirty"


@runner.test("Setting +P to its current value is rejected and not dirty")
async def test_noop_flag_change_rejected():
    with tempfile.TemporaryDirectory() as tmp:
        server, perm = make_server(tmp)
        oper = make_oper()
        channel = server.create_channel("#quiet", 1000)

        result = server.process_mode(oper, channel, "-P", [])
        assert result.rejected == [(False, 'P', None, "denied")]
        assert not perm.dirty

        server.process_mode(oper, channel, "+P", [])
        perm.dirty = False
        result = server.process_mode(oper, channel, "+P", [])
        assert result.rejected == [(True, 'P', None, "denied")]
        assert not result.applied
        assert not perm.dirty, "Rejected +P marked the database dirty"


@runner.test("Permanent channel survives its last member, -P destroys it at once")
async def test_destroy_veto_and_immediate_destroy():
    with tempfile.TemporaryDirectory() as tmp:
        server, perm = make_server(tmp)
        oper = make_oper()
        user = User("bob", "bob", "home.example")
        channel = server.join(user, "#keep")
        server.process_mode(oper, channel, "+P", [])

        server.part(user, "#keep")
        assert server.find_channel("#keep") is channel, "Empty +P channel was destroyed"

        result = server.process_mode(oper, channel, "-P", [])
        assert result.applied == [(False, 'P', None)]
        assert server.find_channel("#keep") is None, "Empty channel kept after -P"
        assert perm.dirty

        other = server.join(user, "#busy")
        server.process_mode(oper, other, "+P", [])
        server.process_mode(oper, other, "-P", [])
        assert server.find_channel("#busy") is other, "Occupied channel destroyed by -P"


@runner.test("Many changes within one interval give one write")
async def test_dirty_coalescing():
    with tempfile.TemporaryDirectory() as tmp:
        server, perm = make_server(tmp)
        perm.writer = CountingWriter(perm.filename)
        oper = make_oper()
        channel = server.create_channel("#busy", 1000)
        server.process_mode(oper, channel, "+P", [])

        for i in range(10):
            server.set_topic(oper, channel, f"topic {i}")
        server.process_mode(oper, channel, "+b", ["*!*@one.example"])
        server.process_mode(oper, channel, "+m", [])

        server.fire('background_timer', 2000)
        assert perm.writer.writes == 1, f"Expected 1 write, got {perm.writer.writes}"
        assert not perm.dirty

        server.fire('background_timer', 2005)
        assert perm.writer.writes == 1, "Clean tick wrote the database"

        lines = read_lines(perm.filename)
        assert 'topic="topic 9"' in lines[2]
        assert 'modes="Pmb *!*@one.example"' in lines[2]


@runner.test("Changes to channels without +P are not tracked")
async def test_non_permanent_changes_not_dirty():
    with tempfile.TemporaryDirectory() as tmp:
        server, perm = make_server(tmp)
        oper = make_oper()
        channel = server.create_channel("#temp", 1000)

        server.set_topic(oper, channel, "nobody cares")
        server.process_mode(oper, channel, "+nt", [])
        assert not perm.dirty


@runner.test("List modes go before the first space, masks at the end")
async def test_list_mode_insertion():
    snapshot = SnapshotContext(None)
    snapshot.add('b', "*!*@a.example")
    snapshot.add('e', "friend!*@*")

    assert ChannelSerializer.build_modes("Pntk secret", snapshot) == \
        "Pntkbe secret *!*@a.example friend!*@*"
    assert ChannelSerializer.build_modes("Pntkl secret 20", snapshot) == \
        "Pntklbe secret 20 *!*@a.example friend!*@*"
    assert ChannelSerializer.build_modes("Pnt", snapshot) == "Pntbe *!*@a.example friend!*@*"
    assert ChannelSerializer.build_modes("", snapshot) == "be *!*@a.example friend!*@*"
    assert ChannelSerializer.build_modes("Pnt", SnapshotContext(None)) == "Pnt"


@runner.test("Collector asks the ban list first and survives a failing exporter")
async def test_collector_order_and_failures():
    with tempfile.TemporaryDirectory() as tmp:
        server, perm = make_server(tmp)
        oper = make_oper()
        channel = server.create_channel("#lists", 1000)
        server.process_mode(oper, channel, "+eb", ["friend!*@*", "*!*@bad.example"])

        server.modes.add_exporter(ListExporter('X', ["half", "done"], fail=True))
        server.modes.add_exporter(ListExporter('Z', ["zmask"]))

        snapshot = ModeSnapshotCollector(server.modes).collect(channel)
        assert snapshot.entries == [
            ('b', "*!*@bad.example"),
            ('e', "friend!*@*"),
            ('Z', "zmask"),
        ], f"Unexpected snapshot {snapshot.entries}"
        assert snapshot.letters == "beZ"
        assert len(snapshot.params) == len(snapshot.letters)


@runner.test("An unregistered exporter is left out of the next snapshot")
async def test_unregistered_exporter():
    with tempfile.TemporaryDirectory() as tmp:
        server, perm = make_server(tmp)
        oper = make_oper()
        channel = server.create_channel("#lists", 1000)
        server.process_mode(oper, channel, "+Pb", ["*!*@bad.example"])

        exporter = ListExporter('Z', ["zmask"])
        server.modes.add_exporter(exporter)
        collector = ModeSnapshotCollector(server.modes)
        assert collector.collect(channel).letters == "bZ"

        server.modes.del_exporter(exporter)
        snapshot = collector.collect(channel)
        assert snapshot.entries == [('b', "*!*@bad.example")]
        assert 'Z' not in snapshot.letters

        assert perm.write_database()
        assert 'zmask' not in read_lines(perm.filename)[2]


@runner.test("Escaping is exactly reversible")
async def test_escape_round_trip():
    samples = [
        'plain',
        'say "hi" & <wave>',
        'already &amp; escaped &quot;',
        'two\nlines',
        'carriage\r\nreturn\r',
        '&unknown; &',
    ]
    for text in samples:
        escaped = ServerConfig.escape_value(text)
        assert '"' not in escaped and '<' not in escaped
        assert '\n' not in escaped and '\r' not in escaped
        assert ServerConfig.unescape_value(escaped) == text, f"Round trip failed for {text!r}"


@runner.test("Database holds exactly the +P channels")
async def test_file_contains_only_permanent_channels():
    with tempfile.TemporaryDirectory() as tmp:
        server, perm = make_server(tmp)
        oper = make_oper()
        kept = server.create_channel("#kept", 1000)
        dropped = server.create_channel("#dropped", 1001)
        server.create_channel("#never", 1002)
        server.process_mode(oper, kept, "+P", [])
        server.process_mode(oper, dropped, "+P", [])
        assert perm.write_database()
        assert len(read_lines(perm.filename)) == 4

        dropped.members["someone"] = User("someone")
        server.process_mode(oper, dropped, "-P", [])
        assert perm.write_database()

        lines = read_lines(perm.filename)
        assert lines[0] == DB_HEADER
        assert lines[1] == '<config format="xml">'
        assert len(lines) == 3, f"Stale entries left: {lines}"
        assert lines[2].startswith('<permchannels channel="#kept" ts="1000"')


@runner.test("Interrupted write leaves the old database untouched")
async def test_interrupted_write_is_atomic():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        writer = DurableWriter(path)
        assert writer.write([PersistedRecord("#old", 1000, "old topic", 1001, "admin", "Pnt")])
        with open(path, 'rb') as f:
            before = f.read()

        def crashing_records():
            yield PersistedRecord("#new", 2000)
            raise OSError("No space left on device")

        assert not writer.write(crashing_records())
        with open(path, 'rb') as f:
            assert f.read() == before, "Old database changed by a failed write"
        assert os.listdir(tmp) == ['permchannels.conf'], "Temporary file left behind"


@runner.test("Failed replace keeps both the old database and the new data")
async def test_failed_replace_keeps_data():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        writer = DurableWriter(path)
        assert writer.write([PersistedRecord("#old", 1000)])
        with open(path, 'rb') as f:
            before = f.read()

        with mock.patch('permchannels.os.replace', side_effect=OSError("device busy")):
            assert not writer.write([PersistedRecord("#new", 2000)])

        with open(path, 'rb') as f:
            assert f.read() == before
        leftovers = [name for name in os.listdir(tmp) if name.endswith('.tmp')]
        assert len(leftovers) == 1, "New database should stay on disk for recovery"
        assert '#new' in read_lines(os.path.join(tmp, leftovers[0]))[2]


@runner.test("Non-atomic fallback removes then renames")
async def test_non_atomic_replace():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        writer = DurableWriter(path, atomic_replace=False)
        assert writer.write([PersistedRecord("#first", 1)])
        assert writer.write([PersistedRecord("#second", 2)])
        lines = read_lines(path)
        assert len(lines) == 3 and '#second' in lines[2]
        assert os.listdir(tmp) == ['permchannels.conf']


@runner.test("Rewriting the database keeps its file permissions")
async def test_rewrite_keeps_permissions():
    if os.name != 'posix':
        return
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        for atomic in (True, False):
            writer = DurableWriter(path, atomic_replace=atomic)
            assert writer.write([PersistedRecord("#first", 1)])
            os.chmod(path, 0o644)
            assert writer.write([PersistedRecord("#second", 2)])
            assert stat.S_IMODE(os.stat(path).st_mode) == 0o644, f"Mode lost (atomic={atomic})"


@runner.test("Empty filename disables writing")
async def test_no_filename_no_write():
    with tempfile.TemporaryDirectory() as tmp:
        server, perm = make_server(tmp, filename="")
        channel = server.create_channel("#nowhere", 1000)
        server.process_mode(make_oper(), channel, "+P", [])
        assert perm.write_database()
        assert os.listdir(tmp) == []


@runner.test("Bad persistence settings refuse to load the module")
async def test_configuration_error():
    with tempfile.TemporaryDirectory() as tmp:
        server, perm = make_server(tmp, listmodes="yes")
        assert perm is None
        assert server.modes.find_mode('P') is None
        assert not server.hooks['background_timer']

        server, perm = make_server(tmp, save_interval=0)
        assert perm is None


@runner.test("listmodes off leaves bans out of the database")
async def test_listmodes_disabled():
    with tempfile.TemporaryDirectory() as tmp:
        server, perm = make_server(tmp, listmodes=False)
        oper = make_oper()
        channel = server.create_channel("#nolists", 1000)
        server.process_mode(oper, channel, "+Pntb", ["*!*@x.example"])
        assert perm.write_database()
        assert 'modes="Pnt"' in read_lines(perm.filename)[2]


@runner.test("Unload flushes pending changes and drops empty channels")
async def test_unload():
    with tempfile.TemporaryDirectory() as tmp:
        server, perm = make_server(tmp)
        oper = make_oper()
        user = User("carol")
        empty = server.create_channel("#empty", 1000)
        busy = server.join(user, "#busy")
        server.process_mode(oper, empty, "+P", [])
        server.process_mode(oper, busy, "+P", [])
        assert perm.dirty

        server.unload_module(perm)
        assert len(read_lines(perm.filename)) == 4, "Pending changes not flushed on unload"
        assert server.find_channel("#empty") is None
        assert server.find_channel("#busy") is busy
        assert not busy.has_mode('P')
        assert server.modes.find_mode('P') is None

        server.part(user, "#busy")
        assert server.find_channel("#busy") is None


if __name__ == "__main__":
    sys.exit(0 if asyncio.run(runner.run_all()) else 1)
