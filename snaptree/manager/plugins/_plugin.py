# Copyright Red Hat
#
# snaptree/manager/plugins/_plugin.py - Snapshot tree provider plugins
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Volume provider plugin base class and helpers.
"""
from typing import List

from snaptree import Volume

#: Plugin configuration callout section
_PLUGIN_CFG_CALLOUT = "Callout"

#: Plugin configuration callout timeout
_PLUGIN_CFG_TIMEOUT = "Timeout"

#: Default timeout in seconds for provider callouts
DEFAULT_CALLOUT_TIMEOUT = 300


class PluginCallout:
    """
    Per-plugin callout settings.
    """

    def __init__(self, cfg):
        """
        Initialise a new ``PluginCallout`` instance.
        """
        self.timeout = DEFAULT_CALLOUT_TIMEOUT

        if cfg.has_section(_PLUGIN_CFG_CALLOUT):
            if cfg.has_option(_PLUGIN_CFG_CALLOUT, _PLUGIN_CFG_TIMEOUT):
                self.timeout = cfg.getint(_PLUGIN_CFG_CALLOUT, _PLUGIN_CFG_TIMEOUT)


class Plugin:
    """
    Abstract base class for volume provider plugins.

    A provider implements the volume management primitives consumed by the
    orchestrator: volume enumeration, snapshot creation, listing and
    destruction, and the mapping from a mounted volume to the read-only
    content of one of its snapshots.
    """

    name = "plugin"
    version = "0.1.0"

    def __init__(self, logger, plugin_cfg):
        self.logger = logger
        self.callout = PluginCallout(plugin_cfg)

    def _log_error(self, *args):
        """
        Log at error level.
        """
        self.logger.error(*args)

    def _log_warn(self, *args):
        """
        Log at warning level.
        """
        self.logger.warning(*args)

    def _log_info(self, *args):
        """
        Log at info level.
        """
        self.logger.info(*args)

    def _log_debug(self, *args):
        """
        Log at debug level.
        """
        self.logger.debug(*args)

    def info(self):
        """
        Return plugin name and version.
        """
        return {"name": self.name, "version": self.version}

    def list_volumes(self, names: List[str], recursive: bool = False) -> List[Volume]:
        """
        Return ``Volume`` objects for the volumes named in ``names``, in
        order, optionally followed by each volume's descendants.

        :param names: The volume names to look up.
        :param recursive: Include descendant volumes of each name.
        :returns: An ordered list of ``Volume`` objects.
        :raises: ``SnaptreeCalloutError`` if the listing fails, for example
                 because a named volume does not exist.
        """
        raise NotImplementedError

    def list_mounted_volumes(self) -> List[Volume]:
        """
        Return ``Volume`` objects for every currently mounted volume.
        """
        raise NotImplementedError

    def create_snapshot(self, volume_name: str, tag: str) -> str:
        """
        Create a snapshot of ``volume_name`` tagged with ``tag``.

        :returns: The identifier of the new snapshot.
        :raises: ``SnaptreeCalloutError`` if the snapshot cannot be created.
        """
        raise NotImplementedError

    def list_snapshots(self) -> List[str]:
        """
        Return the identifiers of all snapshots known to this provider.
        """
        raise NotImplementedError

    def destroy_snapshot(self, identifier: str):
        """
        Destroy the snapshot named ``identifier``.

        :raises: ``SnaptreeCalloutError`` if the snapshot cannot be destroyed.
        """
        raise NotImplementedError

    def snapshot_path(self, mount_point: str, tag: str) -> str:
        """
        Return the path at which the read-only content of the snapshot
        tagged ``tag`` of the volume mounted at ``mount_point`` is visible.
        """
        raise NotImplementedError


__all__ = [
    "DEFAULT_CALLOUT_TIMEOUT",
    "Plugin",
    "PluginCallout",
]
