"""
pychand Server Linking Module
Tracks the servers this daemon is linked to

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

import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class LinkedServer:
    """Represents a linked server in the network"""

    def __init__(self, name: str, hopcount: int, description: str,
                 uplink: Optional[str] = None):
        self.name = name
        self.hopcount = hopcount
        self.description = description
        self.uplink = uplink  # Server this one is introduced behind, None if direct


class ServerLinkManager:
    """Manages the table of linked servers"""

    def __init__(self, irc_server):
        self.irc_server = irc_server
        self.servers: Dict[str, LinkedServer] = {}  # servername -> LinkedServer

    def add_server(self, name: str, hopcount: int = 1, description: str = "",
                   uplink: Optional[str] = None) -> LinkedServer:
        """Record a server introduced to us (directly or behind another)"""
        server = LinkedServer(name, hopcount, description, uplink)
        self.servers[name] = server
        logger.info(f"Server {name} linked (hops: {hopcount})")
        return server

    def handle_server_split(self, servername: str):
        """Remove a server and every server introduced behind it"""
        server = self.servers.pop(servername, None)
        if not server:
            return
        logger.warning(f"Server {servername} disconnected (split)")
        for name, other in list(self.servers.items()):
            if other.uplink == servername:
                self.handle_server_split(name)

    def get_server_list(self) -> List[str]:
        """Names of every server on the network, this one included"""
        return [self.irc_server.servername] + list(self.servers)
