"""Provider parser registry.

Parsers are selected by the `provider` tag stored with each log file.
"""
from __future__ import annotations

from tokenroll.parsers.platforms.base import ProviderParser
from tokenroll.parsers.platforms.claude_code import parser as claude_code_parser
from tokenroll.parsers.platforms.codex import parser as codex_parser

_PARSERS: dict[str, ProviderParser] = {
    claude_code_parser.PROVIDER: claude_code_parser.parser,
    codex_parser.PROVIDER: codex_parser.parser,
}


def get_parser(provider: str) -> ProviderParser | None:
    return _PARSERS.get((provider or "").strip())


def registered_providers() -> list[str]:
    return sorted(_PARSERS)
