#!/usr/bin/env python3
"""
pychand Core Test Suite
Tests the mode pipeline, list modes, hooks, linking and config handling

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
import json
import os
import sys
import tempfile

from chand import ChannelServer, ModResult, ServerConfig, SystemActor, User, validate_channel_name


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


@runner.test("New channels get the default modes and first member is host")
async def test_join_defaults():
    server = ChannelServer()
    alice = User("alice", "alice", "home.example")
    channel = server.join(alice, "#Lobby")

    assert channel.name == "#Lobby"
    assert server.find_channel("#lobby") is channel
    assert channel.chan_modes() == "nt"
    assert channel.is_host("alice")
    assert server.join(User("bob"), "lobby") is None, "Invalid channel name accepted"


@runner.test("Mode pipeline applies, rejects and consumes parameters in order")
async def test_mode_pipeline():
    server = ChannelServer()
    alice = User("alice", "alice", "home.example")
    bob = User("bob", "bob", "home.example")
    channel = server.join(alice, "#modes")
    server.join(bob, "#modes")

    result = server.process_mode(alice, channel, "+kQl-n", ["sekrit", "10"])
    assert result.applied == [(True, 'k', "sekrit"), (True, 'l', "10"), (False, 'n', None)]
    assert result.rejected == [(True, 'Q', None, "unknown mode")]
    assert result.mode_string() == "+kl-n sekrit 10"
    assert channel.chan_modes() == "tkl sekrit 10"

    result = server.process_mode(alice, channel, "+b", [])
    assert result.rejected == [(True, 'b', None, "missing parameter")]

    result = server.process_mode(bob, channel, "+m", [])
    assert result.rejected == [(True, 'm', None, "not a channel host")]

    result = server.process_mode(alice, channel, "-k+l", ["sekrit", "0"])
    assert result.applied == [(False, 'k', "sekrit")]
    assert result.rejected == [(True, 'l', "0", "denied")]


@runner.test("Bans keep users out unless an exception matches")
async def test_bans_and_exceptions():
    server = ChannelServer()
    alice = User("alice", "alice", "home.example")
    channel = server.join(alice, "#guarded")

    result = server.process_mode(alice, channel, "+bb", ["*!*@spam.example", "*!*@spam.example"])
    assert len(result.applied) == 1, "Duplicate ban was added"

    spammer = User("spammer", "x", "spam.example")
    assert server.join(spammer, "#guarded") is None

    server.process_mode(alice, channel, "+e", ["spammer!*@*"])
    assert server.join(spammer, "#guarded") is channel

    result = server.process_mode(alice, channel, "-b", ["*!*@nothere.example"])
    assert result.rejected == [(False, 'b', "*!*@nothere.example", "denied")]


@runner.test("Topic lock needs a channel host")
async def test_topic_lock():
    server = ChannelServer()
    seen = []
    server.attach('post_topic_change', lambda source, channel, topic: seen.append(topic))
    alice = User("alice")
    bob = User("bob")
    channel = server.join(alice, "#topic")
    server.join(bob, "#topic")

    assert not server.set_topic(bob, channel, "mine now")
    assert server.set_topic(alice, channel, "welcome")
    assert channel.topic_set_by == "alice"
    assert seen == ["welcome"]


@runner.test("A veto hook keeps an empty channel, a failing hook is skipped")
async def test_destroy_hooks():
    server = ChannelServer()
    keep = set()

    def veto(channel):
        return ModResult.DENY if channel.name in keep else ModResult.PASSTHRU

    def broken(channel):
        raise RuntimeError("hook crashed")

    server.attach('channel_pre_delete', broken)
    server.attach('channel_pre_delete', veto)
    alice = User("alice")

    server.join(alice, "#kept")
    keep.add("#kept")
    server.part(alice, "#kept")
    assert server.find_channel("#kept") is not None

    keep.clear()
    assert server.check_destroy(server.find_channel("#kept"))
    assert server.find_channel("#kept") is None


@runner.test("System actor is privileged and named after the server")
async def test_system_actor():
    server = ChannelServer()
    actor = server.system_actor
    assert isinstance(actor, SystemActor)
    assert actor.is_privileged and actor.name == "irc.local"
    assert not User("guest").is_privileged


@runner.test("Server list includes this server and follows splits")
async def test_server_list():
    server = ChannelServer()
    links = server.link_manager
    assert links.get_server_list() == ["irc.local"]

    links.add_server("hub.example", 1, "Hub")
    links.add_server("leaf.example", 2, "Leaf", uplink="hub.example")
    assert links.get_server_list() == ["irc.local", "hub.example", "leaf.example"]

    links.handle_server_split("hub.example")
    assert links.get_server_list() == ["irc.local"]


@runner.test("Config file is merged over the defaults")
async def test_config_merge():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'pychand_config.json')
        with open(path, 'w') as f:
            json.dump({"server": {"name": "irc.example"}, "persistence": {"listmodes": False}}, f)

        config = ServerConfig(path)
        assert config.get('server', 'name') == "irc.example"
        assert config.get('persistence', 'listmodes') is False
        assert config.get('persistence', 'filename') == "permchannels.conf"
        assert config.get('nope', 'missing', default=7) == 7

        fresh = os.path.join(tmp, 'fresh.json')
        ServerConfig(fresh)
        assert os.path.exists(fresh), "Missing config file was not written out"


@runner.test("Channel name validation")
async def test_validate_channel_name():
    assert validate_channel_name("#ok") == (True, "")
    assert not validate_channel_name("")[0]
    assert not validate_channel_name("#")[0]
    assert not validate_channel_name("#a b")[0]
    assert not validate_channel_name("#" + "x" * 50, max_len=50)[0]


if __name__ == "__main__":
    sys.exit(0 if asyncio.run(runner.run_all()) else 1)
