#!/usr/bin/env python3
"""
pychand - Python channel daemon core

The in-process side of the server that loadable modules talk to: the
channel table, the mode-handler registry and mode-change pipeline, topic
changes, empty-channel destruction, the hook bus and the background timer.
"""

# Version info - updated with each release
__version__ = "1.0.0"
__version_label__ = "pychand"

import asyncio
import time
import logging
import logging.handlers
import json
import traceback
import sys
import signal
import argparse
import os
from enum import Enum
from pathlib import Path
from collections import defaultdict

from linking import ServerLinkManager
from listmodes import BanExceptionMode, BanMode, InviteExceptionMode, ListModeExporter
from modes import ModeAction, ModeType, core_channel_modes

# ==============================================================================
# LOGGING SETUP
# ==============================================================================

def setup_logging(systemd_mode=False, log_file='pychand.log', log_level='INFO'):
    """
    Configure logging for the server.

    Args:
        systemd_mode: If True, log to stdout only (journald captures it)
        log_file: Path to log file (ignored in systemd mode)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    # Base format - simpler for systemd (no timestamp, journald adds it)
    if systemd_mode:
        fmt = '[%(levelname)s] %(name)s: %(message)s'
    else:
        fmt = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]

    if not systemd_mode:
        try:
            # Rotating file handler: 10MB max, keep 5 backups
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=10*1024*1024,  # 10MB
                backupCount=5,
                encoding='utf-8'
            )
            handlers.append(file_handler)
        except Exception as e:
            print(f"Warning: Could not create log file {log_file}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=level,
        format=fmt,
        handlers=handlers,
        force=True  # Override any existing configuration
    )

    return logging.getLogger('pychand')


logger = logging.getLogger('pychand')

# ==============================================================================
# CONFIGURATION CLASS
# ==============================================================================


class ConfigurationError(Exception):
    """A required setting is missing or has an unusable value"""


class ServerConfig:
    DEFAULT = {
        "server": {
            "name": "irc.local",
            "network": "pychand Network"
        },
        "modes": {
            "channel_defaults": "nt"
        },
        "limits": {
            "max_channel_length": 50,
            "max_list_entries": 100
        },
        "persistence": {
            "auto_save": True,
            "save_interval": 5,
            "filename": "permchannels.conf",
            "listmodes": True,
            "atomic_replace": os.name != 'nt'
        },
        "permchannels": {
            # Channels created at startup; the modes must include P for
            # the channel to stay permanent, e.g.
            # {"channel": "#help", "modes": "Pnt", "topic": "Ask away"}
            "channels": []
        }
    }

    # Entities understood by escape_value/unescape_value, '&' first
    ESCAPES = [('&', '&amp;'), ('"', '&quot;'), ('<', '&lt;'), ('>', '&gt;'), ('\n', '&nl;'), ('\r', '&cr;')]

    def __init__(self, config_file=None):
        self.config_file = config_file
        self.data = self._deep_copy(self.DEFAULT)
        if config_file:
            self.load()

    def _deep_copy(self, d):
        if isinstance(d, dict):
            return {k: self._deep_copy(v) for k, v in d.items()}
        if isinstance(d, list):
            return [self._deep_copy(v) for v in d]
        return d

    def load(self):
        if Path(self.config_file).exists():
            try:
                with open(self.config_file, 'r') as f:
                    loaded = json.load(f)
                    self._merge(self.data, loaded)
                logger.info(f"Loaded config from {self.config_file}")
            except Exception as e:
                logger.error(f"Config error: {e}")
        else:
            self.save()

    def save(self):
        try:
            with open(self.config_file, 'w') as f:
                json.dump(self.data, f, indent=2)
            logger.info("Config saved")
        except Exception as e:
            logger.error(f"Save error: {e}")

    def _merge(self, base, override):
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._merge(base[key], value)
            else:
                base[key] = value

    def get(self, *path, default=None):
        value = self.data
        for key in path:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, *path, value):
        """Set a configuration value by path. Returns True on success."""
        if not path:
            return False
        current = self.data
        for key in path[:-1]:
            if key not in current or not isinstance(current[key], dict):
                current[key] = {}
            current = current[key]
        current[path[-1]] = value
        return True

    @classmethod
    def escape_value(cls, text):
        """Make a value safe to store inside a double-quoted config attribute"""
        for char, entity in cls.ESCAPES:
            text = text.replace(char, entity)
        return text

    @classmethod
    def unescape_value(cls, text):
        """Exact inverse of escape_value(). Unknown entities are kept as-is."""
        out = []
        i = 0
        while i < len(text):
            if text[i] == '&':
                for char, entity in cls.ESCAPES:
                    if text.startswith(entity, i):
                        out.append(char)
                        i += len(entity)
                        break
                else:
                    out.append('&')
                    i += 1
            else:
                out.append(text[i])
                i += 1
        return ''.join(out)

# ==============================================================================
# VALIDATION FUNCTIONS
# ==============================================================================

CHANNEL_PREFIXES = '#&'
CHANNEL_FORBIDDEN_CHARS = set(' ,\x07')


def is_channel(name: str) -> bool:
    """Check if a name is a channel (starts with # or &)"""
    return bool(name) and name[0] in CHANNEL_PREFIXES


def validate_channel_name(name: str, max_len=50) -> tuple:
    """
    Validate channel name format. Returns (valid, error_message).
    Called on join BEFORE creating the channel.
    """
    if not name:
        return False, "No channel name specified"
    if not is_channel(name):
        return False, "Channel name must start with # or &"
    if len(name) > max_len:
        return False, f"Channel name too long (max {max_len})"
    if len(name) == 1:
        return False, "Channel name cannot be just a prefix"
    for c in name[1:]:
        if c in CHANNEL_FORBIDDEN_CHARS or ord(c) < 32:
            return False, "Channel name contains invalid characters"
    return True, ""

# ==============================================================================
# ACTORS
# ==============================================================================


class Actor:
    """Anything that can be the source or target of a change"""
    is_privileged = False

    @property
    def name(self):
        raise NotImplementedError


class User(Actor):
    def __init__(self, nickname, username="unknown", host="CHAT"):
        self.nickname = nickname
        self.username = username
        self.host = host
        self.modes = {}
        self.channels = set()

    @property
    def name(self):
        return self.nickname

    @property
    def is_privileged(self):
        return self.has_mode('o') or self.has_mode('a')

    def set_mode(self, m, state):
        self.modes[m] = state

    def has_mode(self, m):
        return self.modes.get(m, False)

    def prefix(self):
        return f"{self.nickname}!{self.username}@{self.host}"


class SystemActor(Actor):
    """
    The server itself acting on channels, e.g. when replaying stored modes
    at startup. Not a connected client and never a channel member.
    """
    is_privileged = True

    def __init__(self, servername):
        self.servername = servername

    @property
    def name(self):
        return self.servername

    def prefix(self):
        return self.servername

    def __repr__(self):
        return f"<SystemActor {self.servername}>"

# ==============================================================================
# CHANNEL CLASS
# ==============================================================================


class Channel:
    def __init__(self, name, created_at=None):
        self.name = name
        self.members = {}
        self.hosts = set()
        self.modes = {}       # letter -> parameter (None for flags), non-list modes only
        self.list_modes = {}  # letter -> [ListEntry, ...]
        self.topic = ""
        self.topic_set_by = ""
        self.topic_set_at = 0
        self.created_at = created_at if created_at is not None else int(time.time())

    def has_member(self, nickname):
        return nickname in self.members

    def is_host(self, nickname):
        return nickname in self.hosts

    def has_mode(self, letter):
        return letter in self.modes

    def get_mode_param(self, letter):
        return self.modes.get(letter)

    def set_mode(self, letter, param=None):
        self.modes[letter] = param

    def unset_mode(self, letter):
        self.modes.pop(letter, None)

    def chan_modes(self, show_params=True):
        """
        Non-list modes as "letters params...", e.g. "Pntk secret".
        There is no leading '+' and letters keep the order they were set in.
        """
        letters = "".join(self.modes)
        params = [p for p in self.modes.values() if p is not None]
        if show_params and params:
            return letters + " " + " ".join(params)
        return letters

    def __repr__(self):
        return f"<Channel {self.name} +{self.chan_modes(False)}>"

# ==============================================================================
# MODE REGISTRY
# ==============================================================================


class ModeRegistry:
    """Mode letter -> handler lookup, per mode type"""

    def __init__(self):
        self._handlers = {}   # (ModeType, letter) -> ModeHandler
        self._exporters = []  # registration order
        self.ban = None       # core ban list, always queried first

    def add_mode(self, handler) -> bool:
        key = (handler.mode_type, handler.letter)
        if key in self._handlers:
            logger.error(f"Mode {handler.letter} already in use by {self._handlers[key]!r}")
            return False
        self._handlers[key] = handler
        if isinstance(handler, ListModeExporter):
            self._exporters.append(handler)
        return True

    def del_mode(self, handler) -> bool:
        key = (handler.mode_type, handler.letter)
        if self._handlers.get(key) is not handler:
            return False
        del self._handlers[key]
        if handler in self._exporters:
            self._exporters.remove(handler)
        if handler is self.ban:
            self.ban = None
        return True

    def add_exporter(self, exporter):
        """Register a list-mode exporter that is not itself a mode handler"""
        self._exporters.append(exporter)

    def del_exporter(self, exporter):
        if exporter in self._exporters:
            self._exporters.remove(exporter)

    def find_mode(self, letter, mode_type=ModeType.CHANNEL):
        return self._handlers.get((mode_type, letter))

    def list_exporters(self, mode_type=ModeType.CHANNEL):
        """Exporters other than the core ban list, in registration order"""
        return [e for e in self._exporters
                if e is not self.ban and getattr(e, 'mode_type', mode_type) == mode_type]


class ModResult(Enum):
    PASSTHRU = "passthru"
    DENY = "deny"


class ModeChangeResult:
    """What a mode change request did: (adding, letter, param) per change"""

    def __init__(self):
        self.applied = []
        self.rejected = []  # (adding, letter, param, reason)

    def mode_string(self):
        """The applied changes as a MODE line argument, e.g. "+nt-s key" """
        out, params, last = "", [], None
        for adding, letter, param in self.applied:
            sign = '+' if adding else '-'
            if sign != last:
                out += sign
                last = sign
            out += letter
            if param is not None:
                params.append(param)
        return " ".join([out] + params) if out else ""

# ==============================================================================
# MAIN SERVER CLASS
# ==============================================================================


class ChannelServer:
    def __init__(self, config=None):
        self.config = config or ServerConfig()
        self.servername = self.config.get('server', 'name', default='irc.local')
        self.channels = {}  # lowercased name -> Channel
        self.modes = ModeRegistry()
        self.system_actor = SystemActor(self.servername)
        self.hooks = defaultdict(list)
        self.modules = []
        self.link_manager = ServerLinkManager(self)
        self.timer_task = None
        self.timer_interval = None
        self._register_core_modes()

    def _register_core_modes(self):
        max_entries = self.config.get('limits', 'max_list_entries', default=100)
        for handler in core_channel_modes():
            self.modes.add_mode(handler)
        self.modes.ban = BanMode(max_entries)
        self.modes.add_mode(self.modes.ban)
        self.modes.add_mode(BanExceptionMode(max_entries))
        self.modes.add_mode(InviteExceptionMode(max_entries))

    # --- hooks -------------------------------------------------------------

    def attach(self, event, callback):
        self.hooks[event].append(callback)

    def detach(self, event, callback):
        if callback in self.hooks[event]:
            self.hooks[event].remove(callback)

    def fire(self, event, *args):
        """Call every callback for an event; a failing callback is logged and skipped"""
        results = []
        for callback in list(self.hooks[event]):
            try:
                results.append(callback(*args))
            except Exception as e:
                logger.error(f"Hook {event} error in {callback!r}: {e}")
        return results

    # --- modules -----------------------------------------------------------

    def load_module(self, factory):
        """Instantiate a module with this server. Returns it, or None on bad config."""
        try:
            module = factory(self)
        except ConfigurationError as e:
            logger.error(f"Cannot load {getattr(factory, '__name__', factory)}: {e}")
            return None
        self.modules.append(module)
        return module

    def unload_module(self, module):
        if module in self.modules:
            module.unload()
            self.modules.remove(module)

    def rehash(self):
        self.fire('rehash')
        if not self.timer_task or self.timer_task.done():
            return
        interval = self.config.get('persistence', 'save_interval', default=5)
        if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
            logger.error(f"Invalid save_interval {interval!r}, timer keeps {self.timer_interval}s")
            return
        if interval != self.timer_interval:
            self.timer_task.cancel()
            self._start_timer()

    # --- channels ----------------------------------------------------------

    def find_channel(self, name):
        return self.channels.get(name.lower())

    def create_channel(self, name, created_at=None):
        channel = Channel(name, created_at)
        self.channels[name.lower()] = channel
        return channel

    def join(self, user, chan_name):
        """Add a user to a channel, creating it with the default modes if needed"""
        max_len = self.config.get('limits', 'max_channel_length', default=50)
        valid, error = validate_channel_name(chan_name, max_len)
        if not valid:
            logger.debug(f"JOIN {chan_name} by {user.nickname} refused: {error}")
            return None

        channel = self.find_channel(chan_name)
        if channel is None:
            channel = self.create_channel(chan_name)
            defaults = self.config.get('modes', 'channel_defaults', default='nt')
            self.process_mode(self.system_actor, channel, '+' + defaults, [])
        elif self._is_banned(channel, user) and not user.is_privileged:
            return None

        channel.members[user.nickname] = user
        user.channels.add(channel.name.lower())
        if len(channel.members) == 1:
            channel.hosts.add(user.nickname)
        return channel

    def _is_banned(self, channel, user):
        if self.modes.ban is None or not self.modes.ban.matches(channel, user):
            return False
        exceptions = self.modes.find_mode('e')
        return not (exceptions and exceptions.list_mode and exceptions.matches(channel, user))

    def part(self, user, chan_name):
        channel = self.find_channel(chan_name)
        if not channel or user.nickname not in channel.members:
            return False
        del channel.members[user.nickname]
        channel.hosts.discard(user.nickname)
        user.channels.discard(channel.name.lower())
        self.check_destroy(channel)
        return True

    def check_destroy(self, channel):
        """
        Destroy a channel if it is empty and no module vetoes it through
        the channel_pre_delete hook. Returns True if it was destroyed.
        """
        if channel.members:
            return False
        if ModResult.DENY in self.fire('channel_pre_delete', channel):
            return False
        if self.channels.get(channel.name.lower()) is channel:
            del self.channels[channel.name.lower()]
            self.fire('channel_delete', channel)
            logger.debug(f"Channel {channel.name} destroyed")
        return True

    # --- topic and modes ---------------------------------------------------

    def _can_change(self, source, channel):
        return source.is_privileged or channel.is_host(source.name)

    def set_topic(self, source, channel, topic):
        if channel.has_mode('t') and not self._can_change(source, channel):
            return False
        channel.topic = topic
        channel.topic_set_by = source.name
        channel.topic_set_at = int(time.time())
        self.fire('post_topic_change', source, channel, topic)
        logger.info(f"Topic set in {channel.name} by {source.name}")
        return True

    def process_mode(self, source, channel, mode_str, mode_params):
        """
        Apply a channel mode change such as "+nt-s" with its parameters.

        Every letter is resolved against the registry and handed to its
        handler; the result lists what was applied and what was rejected.
        """
        result = ModeChangeResult()
        params = list(mode_params)
        adding = True
        chanop = self._can_change(source, channel)

        for char in mode_str:
            if char == '+':
                adding = True
                continue
            if char == '-':
                adding = False
                continue

            handler = self.modes.find_mode(char, ModeType.CHANNEL)
            if handler is None:
                result.rejected.append((adding, char, None, "unknown mode"))
                continue

            param = None
            if handler.needs_param(adding):
                if not params:
                    result.rejected.append((adding, char, None, "missing parameter"))
                    continue
                param = params.pop(0)

            if handler.oper_only and not source.is_privileged:
                result.rejected.append((adding, char, param, "permission denied"))
                continue
            if not handler.oper_only and not chanop:
                result.rejected.append((adding, char, param, "not a channel host"))
                continue

            if handler.on_mode_change(source, channel, channel, param, adding) is ModeAction.DENY:
                result.rejected.append((adding, char, param, "denied"))
                continue

            result.applied.append((adding, char, param))
            self.fire('post_mode', source, channel, char, param, adding)

        if result.applied:
            logger.debug(f"MODE {channel.name} {result.mode_string()} by {source.name}")
        return result

    # --- lifecycle ---------------------------------------------------------

    async def boot(self):
        """Run once every module is loaded"""
        self.fire('modules_ready')
        if self.config.get('persistence', 'auto_save', default=True):
            self._start_timer()

    def _start_timer(self):
        interval = self.config.get('persistence', 'save_interval', default=5)
        self.timer_interval = interval
        self.timer_task = asyncio.create_task(self._background_timer(interval))
        logger.info(f"Background timer started ({interval}s)")

    async def _background_timer(self, interval):
        while True:
            await asyncio.sleep(interval)
            self.fire('background_timer', int(time.time()))

    async def shutdown(self):
        if self.timer_task:
            self.timer_task.cancel()
            try:
                await self.timer_task
            except asyncio.CancelledError:
                pass
            self.timer_task = None
        for module in reversed(list(self.modules)):
            try:
                self.unload_module(module)
            except Exception as e:
                logger.error(f"Error unloading {module!r}: {e}")


class ServerManager:
    """Manages server lifecycle, signals, and graceful shutdown."""

    def __init__(self, config):
        self.config = config
        self.server = None
        self.shutdown_event = asyncio.Event()

    async def start(self):
        from permchannels import PermanentChannels

        self.server = ChannelServer(self.config)
        self.server.load_module(PermanentChannels)
        await self.server.boot()
        logger.info(f"{self.server.servername} ready with {len(self.server.channels)} channels")
        return True

    async def run(self):
        await self.shutdown_event.wait()

    async def shutdown(self):
        """Graceful shutdown."""
        logger.info("Initiating graceful shutdown...")
        if self.server:
            await self.server.shutdown()
        logger.info("Shutdown complete")

    def handle_signal(self, sig):
        """Handle Unix signals."""
        if sig == signal.SIGTERM or sig == signal.SIGINT:
            logger.info(f"Received signal {sig.name}, initiating shutdown...")
            self.shutdown_event.set()
        elif sig == signal.SIGHUP:
            logger.info("Received SIGHUP, reloading configuration...")
            self.reload_config()

    def reload_config(self):
        try:
            self.config.load()
            self.server.rehash()
            logger.info("Configuration reloaded successfully")
        except Exception as e:
            logger.error(f"Failed to reload configuration: {e}")


async def main(args):
    """Main entry point."""
    global logger

    logger = setup_logging(
        systemd_mode=args.systemd,
        log_file=args.log_file,
        log_level=args.log_level
    )

    logger.info("=" * 70)
    logger.info(f"pychand starting (PID: {os.getpid()})")
    logger.info(f"Mode: {'systemd' if args.systemd else 'standalone'}")
    logger.info("=" * 70)

    manager = ServerManager(ServerConfig(args.config_file))

    # Set up signal handlers (Unix only)
    if hasattr(signal, 'SIGTERM'):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: manager.handle_signal(s))
        if hasattr(signal, 'SIGHUP'):
            loop.add_signal_handler(signal.SIGHUP, lambda: manager.handle_signal(signal.SIGHUP))

    if not await manager.start():
        return 1

    try:
        await manager.run()
    finally:
        await manager.shutdown()

    return 0


def parse_args():
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='pychand - Python channel daemon',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                      Run in standalone mode
  %(prog)s --systemd            Run under systemd (journald logging)
  %(prog)s --log-level DEBUG    Enable debug logging
  %(prog)s --config /etc/pychand/config.json  Use custom config
        """
    )
    parser.add_argument(
        '--systemd',
        action='store_true',
        help='Run in systemd mode (log to stdout for journald)'
    )
    parser.add_argument(
        '--config', '-c',
        default='pychand_config.json',
        dest='config_file',
        help='Path to configuration file (default: pychand_config.json)'
    )
    parser.add_argument(
        '--log-file',
        default='pychand.log',
        help='Path to log file (default: pychand.log, ignored with --systemd)'
    )
    parser.add_argument(
        '--log-level',
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: INFO)'
    )
    parser.add_argument(
        '--version', '-v',
        action='version',
        version=f'{__version_label__} {__version__}'
    )
    return parser.parse_args()


def run():
    args = parse_args()
    try:
        sys.exit(asyncio.run(main(args)))
    except KeyboardInterrupt:
        print("\n\nServer stopped by user")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    run()
