# Copyright Red Hat
#
# snaptree/manager/_context.py - Snapshot tree run context
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Per-run identity shared by every phase of a snapshot tree run.
"""
from dataclasses import dataclass
from datetime import datetime
from os.path import join
from typing import Optional
import logging
import socket
import os

from snaptree import (
    DRY_RUN_PREFIX,
    SNAPTREE_RUNTIME_DIR,
    SNAPTREE_VALID_NAME_CHARS,
)

#: Default program identity used in namespaces.
DEFAULT_PROG = "snaptree"

#: Name of the working tree directory under the runtime directory.
TREE_DIR_NAME = "tree"

#: Suffix of per-run ledger files.
LEDGER_SUFFIX = ".ledger"

#: Timestamp format embedded in namespaces.
_NAMESPACE_TIME_FORMAT = "%Y%m%dT%H%M%S"


def _sanitize(value: str) -> str:
    """
    Replace characters that are not valid in a snapshot name with '_'.
    """
    return "".join(c if c in SNAPTREE_VALID_NAME_CHARS else "_" for c in value)


def make_namespace(
    prog: str = DEFAULT_PROG,
    host: Optional[str] = None,
    pid: Optional[int] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Build a run namespace from program identity, host name, process id and
    timestamp: ``<prog>-<host>-<pid>-<YYYYmmddTHHMMSS>``.

    Two runs on the same host at the same instant differ by process id, so
    namespaces of concurrent runs never collide.
    """
    host = host if host is not None else socket.gethostname().split(".")[0]
    pid = pid if pid is not None else os.getpid()
    now = now or datetime.now()
    parts = [prog, host or "localhost", str(pid), now.strftime(_NAMESPACE_TIME_FORMAT)]
    return "-".join(_sanitize(part) for part in parts)


class DryRunAdapter(logging.LoggerAdapter):
    """
    Logger adapter that prefixes every message with ``DRY_RUN_PREFIX`` when
    the run is a dry run. Keyword arguments (including ``extra``) are passed
    through unchanged.
    """

    def __init__(self, logger, dry_run: bool):
        super().__init__(logger, {})
        self.prefix = DRY_RUN_PREFIX if dry_run else ""

    def process(self, msg, kwargs):
        return f"{self.prefix}{msg}", kwargs


@dataclass(frozen=True)
class RunContext:
    """
    Immutable identity for one execution: the snapshot namespace, dry-run
    flag, working tree root and ledger path. Constructed once and passed to
    every component.
    """

    namespace: str
    dry_run: bool
    tree_root: str
    ledger_path: str

    @classmethod
    def create(
        cls,
        runtime_dir: str = SNAPTREE_RUNTIME_DIR,
        tree_root: Optional[str] = None,
        dry_run: bool = False,
        prog: str = DEFAULT_PROG,
        namespace: Optional[str] = None,
    ) -> "RunContext":
        """
        Create a new ``RunContext`` with a fresh namespace.

        :param runtime_dir: Directory holding ledgers and the default tree.
        :param tree_root: Working tree root, or ``None`` for the default
                          ``<runtime_dir>/tree``.
        :param dry_run: ``True`` if no real state may be changed.
        :param prog: Program identity embedded in the namespace.
        :param namespace: Use an explicit namespace instead of generating one.
        """
        namespace = namespace or make_namespace(prog=prog)
        tree_root = os.path.normpath(tree_root or join(runtime_dir, TREE_DIR_NAME))
        ledger_path = join(runtime_dir, f"{namespace}{LEDGER_SUFFIX}")
        return cls(
            namespace=namespace,
            dry_run=dry_run,
            tree_root=tree_root,
            ledger_path=ledger_path,
        )

    def adapt(self, logger) -> DryRunAdapter:
        """
        Return a logger adapter that marks messages from ``logger`` as
        dry-run actions when appropriate.
        """
        return DryRunAdapter(logger, self.dry_run)

    def tree_path(self, mount_point: str) -> str:
        """
        Return the destination under the working tree that mirrors
        ``mount_point``: ``/usr/home`` becomes ``<tree_root>/usr/home`` and
        ``/`` becomes the tree root itself.
        """
        # Normalising against "/" first keeps ".." components inside the tree.
        relative = os.path.normpath("/" + mount_point).lstrip("/")
        return os.path.normpath(join(self.tree_root, relative))
