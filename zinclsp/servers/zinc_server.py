"""Zinc language server description."""

from typing import Tuple

from zinclsp.config import DEFAULT_SERVER_COMMAND
from zinclsp.servers.base import LanguageServerSpec


class ZincServerSpec(LanguageServerSpec):
    """Describes the `zinc_lsp` server shipped with the Zinc toolchain."""

    @property
    def language(self) -> str:
        return "zinc"

    @property
    def default_command(self) -> str:
        return DEFAULT_SERVER_COMMAND

    @property
    def file_extensions(self) -> Tuple[str, ...]:
        return (".zn",)
