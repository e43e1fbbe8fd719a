# resolver.py
# Maps caller-supplied tool server names onto canonical registry entries.
# Pure and side-effect-free: a resolver is built from a registry value.

import re

from mcp_workflow.errors import NameNotFoundError
from mcp_workflow.registry import ToolServerRegistry

_SUFFIXES = ("-server", "-service", "-mcp")
_SEPARATORS = re.compile(r"[\s_\-]+")


def normalize_name(raw_name: str) -> str:
    """
    Fold a name for fuzzy comparison: lower-case, unify separators, then strip
    -server / -service / -mcp suffixes until none remain.

        "GitHub_MCP_Server" -> "github"
        "coingecko-mcp-service" -> "coingecko"
    """
    name = _SEPARATORS.sub("-", raw_name.strip().lower()).strip("-")
    stripped = True
    while stripped:
        stripped = False
        for suffix in _SUFFIXES:
            if name.endswith(suffix) and len(name) > len(suffix):
                name = name[: -len(suffix)]
                stripped = True
    return name


class NameResolver:
    """
    Resolution order: exact canonical name, alias table, normalized fuzzy match.

    A fuzzy key shared by more than one canonical entry is ambiguous and
    resolves to nothing rather than guessing.
    """

    def __init__(self, registry: ToolServerRegistry) -> None:
        self._registry = registry
        fuzzy: dict[str, set[str]] = {}
        for descriptor in registry:
            keys = {descriptor.canonical_name, *descriptor.aliases}
            for key in keys:
                fuzzy.setdefault(normalize_name(key), set()).add(descriptor.canonical_name)
        self._fuzzy = {key: frozenset(names) for key, names in fuzzy.items()}

    def resolve(self, raw_name: str) -> str:
        """Return the canonical name or raise NameNotFoundError."""
        if raw_name in self._registry:
            return raw_name

        canonical = self._registry.aliases.get(raw_name)
        if canonical is not None:
            return canonical

        matches = self._fuzzy.get(normalize_name(raw_name), frozenset())
        if len(matches) == 1:
            return next(iter(matches))
        raise NameNotFoundError(raw_name, tuple(sorted(matches)))

    def try_resolve(self, raw_name: str) -> str | None:
        try:
            return self.resolve(raw_name)
        except NameNotFoundError:
            return None
