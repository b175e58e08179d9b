# Copyright Red Hat
#
# snaptree/manager/_loader.py - Snapshot tree provider lookup
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Volume provider lookup. The provider named ``name`` is implemented by a
``Plugin`` subclass in the module ``snaptree.manager.plugins.<name>``.
"""
from typing import List
import importlib
import inspect
import logging
import pkgutil

from snaptree import SnaptreeNotFoundError
from snaptree.manager.plugins import Plugin
import snaptree.manager.plugins as plugin_pkg

_log = logging.getLogger(__name__)

_log_debug = _log.debug


def provider_names() -> List[str]:
    """
    Return the names of the provider modules installed with snaptree.
    """
    return sorted(
        info.name
        for info in pkgutil.iter_modules(plugin_pkg.__path__)
        if not info.name.startswith("_")
    )


def find_plugin(name: str):
    """
    Import the provider module for ``name`` and return its plugin class.

    :param name: The provider name, for example ``"zfs"``.
    :returns: The ``Plugin`` subclass whose ``name`` attribute is ``name``.
    :raises SnaptreeNotFoundError: If no such provider is installed.
    """
    available = provider_names()
    if name not in available:
        raise SnaptreeNotFoundError(
            f"No volume provider named '{name}' (available: {', '.join(available)})"
        )

    fqname = f"{plugin_pkg.__name__}.{name}"
    _log_debug("Importing provider module %s", fqname)
    try:
        module = importlib.import_module(fqname)
    except ImportError as err:
        raise SnaptreeNotFoundError(
            f"Failed to import volume provider '{name}': {err}"
        ) from err

    for _, cls in inspect.getmembers(module, inspect.isclass):
        if issubclass(cls, Plugin) and cls is not Plugin and cls.name == name:
            return cls
    raise SnaptreeNotFoundError(f"Provider module {fqname} defines no '{name}' provider")
