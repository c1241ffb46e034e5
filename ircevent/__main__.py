"""Main entry point.

Typically invoked as "python3 -m ircevent" or "/usr/bin/ircevent".
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from . import run

run()
