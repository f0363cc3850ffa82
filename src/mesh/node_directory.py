"""
Node name directory

Maps numeric mesh node ids to the short names nodes announce about
themselves. Entries are learned opportunistically and live for as long as
the transport that owns the directory.
"""

import logging
from typing import Dict, Optional


class NodeDirectory:
    """Last-write-wins mapping of node id to short name"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._names: Dict[int, str] = {}
        self.logger = logger or logging.getLogger(__name__)

    def update(self, node_id: int, short_name: str) -> bool:
        """
        Record the short name for a node.

        Empty names are ignored so a node never loses a known name.

        Returns:
            True if the directory was updated
        """
        if not short_name:
            return False

        previous = self._names.get(node_id)
        self._names[node_id] = short_name

        if previous != short_name:
            self.logger.info(f"Discovered node: {short_name} (ID: {node_id:08x})")
        return True

    def lookup(self, node_id: int) -> Optional[str]:
        """Get the short name for a node, if known"""
        return self._names.get(node_id)

    def display_name(self, node_id: int) -> str:
        """Get the short name, or the zero-padded hex id for unknown nodes"""
        return self._names.get(node_id) or f"{node_id:08x}"

    def snapshot(self) -> Dict[int, str]:
        """Get a copy of all known names"""
        return dict(self._names)

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, node_id: int) -> bool:
        return node_id in self._names
