# Copyright Red Hat
#
# snaptree/manager/_volumes.py - Snapshot tree volume enumeration
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Resolve the set of volumes a run operates on.
"""
from typing import Iterable, List, Optional
import logging

from snaptree import (
    SNAPTREE_SUBSYSTEM_VOLUMES,
    SnaptreeArgumentError,
    SnaptreeCalloutError,
    SnaptreeParseError,
    Volume,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning


def _log_debug_volumes(msg, *args, **kwargs):
    """A wrapper for volumes subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SNAPTREE_SUBSYSTEM_VOLUMES}, **kwargs)


def _unique(volumes: Iterable[Volume]) -> List[Volume]:
    """
    Drop repeated volume names, keeping the first occurrence of each.
    """
    seen = set()
    unique = []
    for volume in volumes:
        if volume.name in seen:
            _log_debug_volumes("Dropping duplicate volume %s", volume.name)
            continue
        seen.add(volume.name)
        unique.append(volume)
    return unique


def resolve_volumes(
    provider,
    names: Optional[List[str]] = None,
    recursive: bool = False,
    all_volumes: bool = False,
) -> List[Volume]:
    """
    Resolve the ordered list of volumes to process.

    :param provider: The volume provider plugin to query.
    :param names: Explicitly named volumes.
    :param recursive: Expand each named volume to include its descendants.
    :param all_volumes: Select every currently mounted volume.
    :returns: An ordered list of ``Volume`` objects without duplicates.
    :raises: ``SnaptreeArgumentError`` if no volumes were requested or if the
             provider rejects the query (for example a volume does not exist).
    """
    names = list(names or [])

    if not names and not all_volumes:
        raise SnaptreeArgumentError("No volumes specified and all volumes not requested")

    try:
        if all_volumes:
            if names:
                _log_warn("Ignoring named volumes with all volumes: %s", ", ".join(names))
            _log_debug_volumes("Listing all mounted volumes")
            volumes = provider.list_mounted_volumes()
        else:
            _log_debug_volumes(
                "Listing volumes %s (recursive=%s)", ", ".join(names), recursive
            )
            volumes = provider.list_volumes(names, recursive=recursive)
    except (SnaptreeCalloutError, SnaptreeParseError) as err:
        raise SnaptreeArgumentError(f"Failed to list volumes: {err}") from err

    volumes = _unique(volumes)
    if not volumes:
        raise SnaptreeArgumentError("No volumes matched the request")

    _log_info("Resolved %d volume(s): %s", len(volumes), ", ".join(v.name for v in volumes))
    return volumes
