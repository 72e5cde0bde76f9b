"""Base language server description."""

import abc
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from zinclsp import __version__
from zinclsp.config import ClientSettings
from zinclsp.utils.workspace import WorkspaceManager


class LanguageServerSpec(abc.ABC):
    """Abstract description of a language server the client can drive.

    Subclasses name the language, the default executable and any
    initialization options; the lifecycle itself is language independent.
    """

    def __init__(self, settings: Optional[ClientSettings] = None):
        """Initialize the server description.

        Args:
            settings: Client settings. Defaults are used when omitted.
        """
        self.settings = settings or ClientSettings()
        self.logger = logging.getLogger(f"zinclsp.servers.{self.language}")

    @property
    @abc.abstractmethod
    def language(self) -> str:
        """Get the language id handled by this server.

        Returns:
            The language id.
        """

    @property
    @abc.abstractmethod
    def default_command(self) -> str:
        """Get the executable name used when no path is configured."""

    @property
    def file_extensions(self) -> Tuple[str, ...]:
        return ()

    @property
    def initialization_options(self) -> Dict[str, Any]:
        return dict(self.settings.initialization_options)

    def command(self) -> List[str]:
        """Get the full command line used to spawn the server.

        Returns:
            Executable followed by its arguments.
        """
        return [self.settings.resolved_command(self.default_command), *self.settings.server_args]

    def client_capabilities(self) -> Dict[str, Any]:
        """Get the capabilities this client declares in `initialize`.

        Returns:
            Client capabilities in LSP shape.
        """
        return {
            "textDocument": {
                "synchronization": {
                    "dynamicRegistration": False,
                    "didSave": False,
                    "willSave": False,
                },
                "completion": {
                    "completionItem": {
                        "snippetSupport": False,
                    }
                },
                "hover": {"contentFormat": ["plaintext", "markdown"]},
                "signatureHelp": {},
                "definition": {},
                "references": {},
                "documentSymbol": {},
                "formatting": {},
                "rename": {},
                "codeAction": {},
                "publishDiagnostics": {"relatedInformation": False},
            },
            "workspace": {
                "configuration": True,
                "workspaceFolders": True,
                "didChangeConfiguration": {},
            },
            "window": {
                "workDoneProgress": True,
                "showMessage": {},
            },
        }

    def build_initialize_params(self, workspace: Optional[WorkspaceManager]) -> Dict[str, Any]:
        """Create the params of the `initialize` request.

        Args:
            workspace: Workspace the server should analyze, if any.

        Returns:
            The initialize params.
        """
        params: Dict[str, Any] = {
            "processId": os.getpid(),
            "clientInfo": {"name": "zinclsp", "version": __version__},
            "rootPath": None,
            "rootUri": None,
            "capabilities": self.client_capabilities(),
            "initializationOptions": self.initialization_options,
            "trace": self.settings.trace,
        }
        if workspace is not None:
            params["rootPath"] = workspace.workspace_path
            params["rootUri"] = workspace.root_uri
            params["workspaceFolders"] = workspace.workspace_folders()
        return params

    def handles_file(self, file_path: str) -> bool:
        """Check whether the file belongs to this server's language."""
        return os.path.splitext(file_path)[1].lower() in self.file_extensions
