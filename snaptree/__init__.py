# Copyright Red Hat
#
# snaptree/__init__.py - Snapshot tree backup package initialisation
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Snaptree top-level package.
"""
from ._snaptree import *  # noqa: F401, F403
from ._snaptree import __all__  # noqa: F401

__version__ = "0.1.0"
