"""Workspace management utilities for the Zinc language client."""

import logging
import os
from typing import Dict, List

from pygls.uris import from_fs_path, to_fs_path


class WorkspaceManager:
    """Manages the workspace root and file/URI conversion."""

    def __init__(self, workspace_path: str):
        """Initialize the workspace manager.

        Args:
            workspace_path: Path to the workspace directory.
        """
        self.workspace_path = os.path.abspath(workspace_path)
        self.logger = logging.getLogger("zinclsp.workspace")

        if not os.path.isdir(self.workspace_path):
            raise ValueError(f"Workspace path is not a directory: {self.workspace_path}")

        self.logger.info(f"Initialized workspace manager for: {self.workspace_path}")

    @property
    def name(self) -> str:
        return os.path.basename(self.workspace_path)

    @property
    def root_uri(self) -> str:
        return self.path_to_uri(self.workspace_path)

    def workspace_folders(self) -> List[Dict[str, str]]:
        """Get the workspace folders announced to the server."""
        return [{"uri": self.root_uri, "name": self.name}]

    @staticmethod
    def path_to_uri(path: str) -> str:
        """Convert a file path to a file URI.

        Args:
            path: File path to convert.

        Returns:
            File URI.
        """
        uri = from_fs_path(os.path.abspath(path))
        if uri is None:
            raise ValueError(f"Cannot convert path to URI: {path}")
        return uri

    @staticmethod
    def uri_to_path(uri: str) -> str:
        """Convert a file URI to a file path.

        Non-file URIs are returned unchanged.
        """
        if not uri.startswith("file:"):
            return uri
        return to_fs_path(uri) or uri

    def to_uri(self, path_or_uri: str) -> str:
        """Accept either a path or a URI and return the URI."""
        if "://" in path_or_uri or path_or_uri.startswith("untitled:"):
            return path_or_uri
        return self.path_to_uri(os.path.join(self.workspace_path, path_or_uri))

