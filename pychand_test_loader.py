#!/usr/bin/env python3
"""
pychand Permanent Channels Loader Test Suite
Tests reading the database back and recreating channels at boot

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
import sys
import tempfile

from chand import ChannelServer, ServerConfig, User
from permchannels import DB_HEADER, DatabaseLoader, PermanentChannels


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


def make_server(path, static_channels=None, **persistence):
    """A fresh server (as after a restart) using the database at path"""
    config = ServerConfig()
    config.set('persistence', 'filename', value=path)
    for key, value in persistence.items():
        config.set('persistence', key, value=value)
    if static_channels is not None:
        config.set('permchannels', 'channels', value=static_channels)
    server = ChannelServer(config)
    perm = server.load_module(PermanentChannels)
    return server, perm


def make_oper(nickname="admin"):
    user = User(nickname, nickname, "staff.example")
    user.set_mode('o', True)
    return user


def write_db(path, *tags):
    with open(path, 'w', encoding='utf-8') as f:
        f.write(DB_HEADER + '\n<config format="xml">\n')
        for tag in tags:
            f.write(tag + '\n')


def masks(channel, letter):
    return sorted(entry.mask for entry in channel.list_modes.get(letter, []))


@runner.test("Scenario: #test with topic, +nt, +P and one ban survives a restart")
async def test_scenario_round_trip():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        server, perm = make_server(path)
        oper = make_oper()

        channel = server.create_channel("#test", 1000)
        server.set_topic(oper, channel, "Hello")
        channel.topic_set_at = 1001
        result = server.process_mode(oper, channel, "+ntP", [])
        assert len(result.applied) == 3
        server.process_mode(oper, channel, "+b", ["*!*@spammer.example"])
        server.fire('background_timer', 1002)

        server, perm = make_server(path)
        report = perm.load_database()
        assert report.created == 1

        loaded = server.find_channel("#test")
        assert loaded is not None, "#test was not recreated"
        assert loaded.created_at == 1000
        assert loaded.topic == "Hello"
        assert loaded.topic_set_at == 1001
        assert loaded.topic_set_by == "admin"
        assert loaded.has_mode('n') and loaded.has_mode('t')
        assert perm.mode.is_set(loaded)
        assert masks(loaded, 'b') == ["*!*@spammer.example"]


@runner.test("Round trip keeps parameter modes and every list entry")
async def test_round_trip_modes():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        server, perm = make_server(path)
        oper = make_oper()

        channel = server.create_channel("#full", 1234)
        server.set_topic(oper, channel, 'quotes "and" <brackets> & more')
        server.process_mode(oper, channel, "+Pntkl", ["sekrit", "25"])
        server.process_mode(oper, channel, "+bbeI",
                            ["*!*@a.example", "*!*@b.example", "ok!*@*", "*!*@friends.example"])
        assert perm.write_database()

        server, perm = make_server(path)
        perm.load_database()
        loaded = server.find_channel("#full")
        assert loaded.topic == channel.topic
        assert loaded.created_at == 1234
        assert dict(loaded.modes) == dict(channel.modes), f"{loaded.modes} != {channel.modes}"
        for letter in "beI":
            assert masks(loaded, letter) == masks(channel, letter), f"+{letter} lists differ"


@runner.test("Formatting codes in a topic survive a restart")
async def test_formatting_codes_round_trip():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        server, perm = make_server(path)
        oper = make_oper()

        channel = server.create_channel("#fmt", 1000)
        server.process_mode(oper, channel, "+P", [])
        server.set_topic(oper, channel, "Welcome \x1ditalic\x1d and \x0cff")
        server.create_channel("#after", 1001)
        server.process_mode(oper, server.find_channel("#after"), "+P", [])
        assert perm.write_database()

        server, perm = make_server(path)
        report = perm.load_database()
        assert report.created == 2 and report.skipped == 0
        assert server.find_channel("#fmt").topic == "Welcome \x1ditalic\x1d and \x0cff"
        assert server.find_channel("#after") is not None


@runner.test("Control and separator characters in topic and setter survive a restart")
async def test_control_characters_round_trip():
    specials = "\r\n\x0b\x0c\x1c\x1d\x1e\x85\u2028\u2029\x02\x03\x0f\x16\x1f\t"
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        server, perm = make_server(path)
        oper = make_oper()

        names = []
        for i, char in enumerate(specials):
            channel = server.create_channel(f"#c{i}", 1000 + i)
            server.process_mode(oper, channel, "+P", [])
            channel.topic = f"a{char}b{char}"
            channel.topic_set_by = f"set{char}by"
            channel.topic_set_at = 2000 + i
            names.append(channel.name)
        assert perm.write_database()

        server, perm = make_server(path)
        report = perm.load_database()
        assert report.created == len(specials), f"Only {report.created} channels came back"
        for i, char in enumerate(specials):
            loaded = server.find_channel(names[i])
            assert loaded.topic == f"a{char}b{char}", f"Topic with {char!r} changed"
            assert loaded.topic_set_by == f"set{char}by", f"Setter with {char!r} changed"
            assert loaded.topic_set_at == 2000 + i


@runner.test("Loading twice creates nothing new and raises nothing")
async def test_idempotent_load():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        write_db(path,
                 '<permchannels channel="#one" ts="10" topic="" topicts="0" topicsetby="" modes="Pn">',
                 '<permchannels channel="#two" ts="20" topic="" topicts="0" topicsetby="" modes="P">')
        server, perm = make_server(path)

        report = perm.load_database()
        assert report.created == 2
        assert perm.load_database() is None, "Second load was not skipped"
        server.fire('modules_ready')
        assert len(server.channels) == 2

        again = DatabaseLoader(server, path).load()
        assert again.created == 0 and again.existing == 2
        assert len(server.channels) == 2


@runner.test("Empty and over-long channel names are skipped, the rest loads")
async def test_bad_names_skipped():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        too_long = "#" + "x" * 60
        write_db(path,
                 '<permchannels channel="" ts="10" topic="" topicts="0" topicsetby="" modes="P">',
                 f'<permchannels channel="{too_long}" ts="10" topic="" topicts="0" topicsetby="" modes="P">',
                 '<permchannels channel="#fine" ts="10" topic="" topicts="0" topicsetby="" modes="P">')
        server, perm = make_server(path)

        report = perm.load_database()
        assert report.skipped == 2 and report.created == 1
        assert list(server.channels) == ["#fine"]


@runner.test("Malformed lines are skipped without stopping the load")
async def test_malformed_records_skipped():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        write_db(path,
                 '<permchannels channel="#broken ts="10">',
                 '<permchannels channel="#badts" ts="yesterday" modes="P">',
                 '<somethingelse value="1">',
                 '<permchannels channel="#good" ts="30" topic="" topicts="0" topicsetby="" modes="P">')
        server, perm = make_server(path)

        report = perm.load_database()
        assert report.created == 1
        assert server.find_channel("#good").created_at == 30
        assert server.find_channel("#badts") is None


@runner.test("Unknown mode letters are skipped without eating a parameter")
async def test_unknown_mode_letter():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        write_db(path,
                 '<permchannels channel="#odd" ts="10" topic="" topicts="0" topicsetby="" modes="+PnXkb sekrit *!*@x.example">')
        server, perm = make_server(path)
        perm.load_database()

        channel = server.find_channel("#odd")
        assert perm.mode.is_set(channel)
        assert channel.get_mode_param('k') == "sekrit"
        assert masks(channel, 'b') == ["*!*@x.example"]
        assert not channel.has_mode('X')


@runner.test("No load while linked to another server")
async def test_linked_server_blocks_load():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        write_db(path, '<permchannels channel="#one" ts="10" topic="" topicts="0" topicsetby="" modes="P">')
        server, perm = make_server(path)
        server.link_manager.add_server("hub.example", 1, "Hub")

        assert perm.load_database() is None
        assert not server.channels

        server.link_manager.handle_server_split("hub.example")
        assert perm.load_database() is None, "Load ran a second time"


@runner.test("Topic timestamp and setter get defaults")
async def test_topic_defaults():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        write_db(path,
                 '<permchannels channel="#topic" ts="10" topic="Hi there" topicts="0" topicsetby="" modes="P">',
                 '<permchannels channel="#notopic" ts="10" topic="" topicts="0" topicsetby="" modes="P">')
        server, perm = make_server(path)
        report = DatabaseLoader(server, path).load(now=5000)
        assert report.created == 2

        channel = server.find_channel("#topic")
        assert channel.topic == "Hi there"
        assert channel.topic_set_at == 5000
        assert channel.topic_set_by == server.servername

        channel = server.find_channel("#notopic")
        assert channel.topic_set_at == 0 and channel.topic_set_by == ""


@runner.test("A channel that already exists is left alone")
async def test_existing_channel_untouched():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        write_db(path, '<permchannels channel="#Lobby" ts="10" topic="stored" topicts="11" topicsetby="x" modes="Pm">')
        server, perm = make_server(path)
        user = User("dave")
        channel = server.join(user, "#lobby")
        created_at = channel.created_at

        report = perm.load_database()
        assert report.existing == 1 and report.created == 0
        assert channel.topic == "" and channel.created_at == created_at
        assert not channel.has_mode('m') and not perm.mode.is_set(channel)


@runner.test("Channels from the server config are created too")
async def test_static_channels():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        server, perm = make_server(path, static_channels=[
            {"channel": "#help", "modes": "Pnt", "topic": "Ask away", "ts": 50},
            "not a dict",
        ])
        report = perm.load_database()
        assert report.created == 1

        channel = server.find_channel("#help")
        assert channel.created_at == 50
        assert channel.topic == "Ask away"
        assert perm.mode.is_set(channel) and channel.has_mode('t')


@runner.test("Loading does not mark the database dirty, missing file is fine")
async def test_load_is_quiet():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        server, perm = make_server(path)
        report = perm.load_database()
        assert report.created == 0
        assert not os.path.exists(path)

        write_db(path, '<permchannels channel="#one" ts="10" topic="t" topicts="11" topicsetby="x" modes="Pntb *!*@x.example">')
        server, perm = make_server(path)
        perm.load_database()
        assert server.find_channel("#one") is not None
        assert not perm.dirty


@runner.test("Boot loads the database and the timer writes changes")
async def test_boot_and_background_timer():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        write_db(path, '<permchannels channel="#boot" ts="10" topic="" topicts="0" topicsetby="" modes="Pn">')
        server, perm = make_server(path, save_interval=0.01)

        await server.boot()
        try:
            channel = server.find_channel("#boot")
            assert channel is not None, "Boot did not load the database"
            server.set_topic(make_oper(), channel, "written by the timer")
            assert perm.dirty
            for _ in range(100):
                await asyncio.sleep(0.01)
                if not perm.dirty:
                    break
            assert not perm.dirty, "Timer never ran"
            with open(path, encoding='utf-8') as f:
                assert 'topic="written by the timer"' in f.read()
        finally:
            await server.shutdown()
        assert server.timer_task is None


@runner.test("Rehash restarts the timer with a new save interval")
async def test_rehash_changes_interval():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'permchannels.conf')
        server, perm = make_server(path, save_interval=3600)

        await server.boot()
        try:
            old_task = server.timer_task
            server.config.set('persistence', 'save_interval', value=0.01)
            server.rehash()
            assert server.timer_task is not old_task
            assert server.timer_interval == 0.01

            channel = server.create_channel("#rehash", 10)
            server.process_mode(make_oper(), channel, "+P", [])
            assert perm.dirty
            for _ in range(100):
                await asyncio.sleep(0.01)
                if not perm.dirty:
                    break
            assert not perm.dirty, "Timer still running with the old interval"
            assert os.path.exists(path)

            task = server.timer_task
            server.config.set('persistence', 'save_interval', value="soon")
            server.rehash()
            assert server.timer_task is task, "Bad interval replaced the timer"
            assert server.timer_interval == 0.01
        finally:
            await server.shutdown()


if __name__ == "__main__":
    sys.exit(0 if asyncio.run(runner.run_all()) else 1)
