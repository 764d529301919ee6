"""Language adapter registry.

The registry is closed: the default one holds exactly the built-in adapters.
Tests and embedders may build their own AdapterRegistry.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from functools import cache

from compilerhub.adapters.base import LanguageAdapter, StageContext, StageSpec
from compilerhub.adapters.brainfuck import BRAINFUCK_ADAPTER
from compilerhub.adapters.c_family import C_ADAPTER, CPP_ADAPTER
from compilerhub.adapters.golang import GO_ADAPTER
from compilerhub.adapters.java import JAVA_ADAPTER
from compilerhub.adapters.swift import SWIFT_ADAPTER
from compilerhub.exceptions import UnknownLanguageError

BUILTIN_ADAPTERS: tuple[LanguageAdapter, ...] = (
    JAVA_ADAPTER,
    CPP_ADAPTER,
    C_ADAPTER,
    SWIFT_ADAPTER,
    BRAINFUCK_ADAPTER,
    GO_ADAPTER,
)


class AdapterRegistry:
    """Adapters keyed by language name."""

    def __init__(self, adapters: Iterable[LanguageAdapter] = ()) -> None:
        self._adapters: dict[str, LanguageAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: LanguageAdapter) -> None:
        if adapter.language in self._adapters:
            raise ValueError(f"Adapter for {adapter.language!r} already registered")
        self._adapters[adapter.language] = adapter

    def get(self, language: str) -> LanguageAdapter:
        try:
            return self._adapters[language]
        except KeyError:
            raise UnknownLanguageError(
                f"Unsupported language: {language!r} (supported: {', '.join(self.languages())})",
                context={"language": language},
            ) from None

    def languages(self) -> list[str]:
        return list(self._adapters)

    def __contains__(self, language: object) -> bool:
        return language in self._adapters

    def __iter__(self) -> Iterator[LanguageAdapter]:
        return iter(self._adapters.values())

    def __len__(self) -> int:
        return len(self._adapters)


@cache
def default_registry() -> AdapterRegistry:
    """Registry of the built-in adapters (built once per process)."""
    return AdapterRegistry(BUILTIN_ADAPTERS)


__all__ = [
    "BUILTIN_ADAPTERS",
    "AdapterRegistry",
    "LanguageAdapter",
    "StageContext",
    "StageSpec",
    "default_registry",
]
