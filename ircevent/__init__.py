"""ircevent, an event-driven asyncio IRC client.

ircevent keeps a single connection to an IRC server, turns every line it
receives into an Event and hands it to the handler registered for its code. It
takes care of registration, keepalives, nickname collisions and CTCP queries
on its own, so that applications only handle the events they care about.
"""

# Copyright © Faidon Liambotis
# Copyright © Wikimedia Foundation, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY CODE, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from ._version import __version__
from .client import ClientError, IRCClient, NotConnectedError
from .dispatcher import Dispatcher
from .message import ERR, RPL, Event, FramingError, compose, parse
from .session import ConnectionState
from .main import run

__all__ = [
    "__version__",
    "ClientError",
    "ConnectionState",
    "Dispatcher",
    "ERR",
    "Event",
    "FramingError",
    "IRCClient",
    "NotConnectedError",
    "RPL",
    "compose",
    "parse",
    "run",
]
