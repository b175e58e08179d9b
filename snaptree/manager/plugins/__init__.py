# Copyright Red Hat
#
# snaptree/manager/plugins/__init__.py - Snapshot tree provider plugins
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Snapshot tree volume provider plugin interface.
"""
from ._plugin import *  # noqa: F401, F403
from ._plugin import __all__  # noqa: F401
