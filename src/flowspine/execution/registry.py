"""Component Registry — tagged config envelope → Source / Sink / Runtime.

Manifesto:
A flow stores its components as plain JSON envelopes
(``{"kind": "memory", "records": [...]}``) so that any worker can rebuild
them. The registry maps ``role:kind`` to a factory and turns an envelope
into a live component. There is no dynamic class loading: a kind that is
not registered is a permanent configuration error, not an import attempt.

ARCHITECTURE
────────────
::

    ComponentRegistry
      ├── .register(role, kind, factory)  ─ store factory
      ├── .build(role, config)            ─ validate envelope + construct
      ├── .has(role, kind)                ─ existence check
      └── .list_components(role)          ─ all registered keys

    Convenience decorators (use the default registry unless given one):
      register_source(kind)   → registers as "source:{kind}"
      register_sink(kind)     → registers as "sink:{kind}"
      register_runtime(kind)  → registers as "runtime:{kind}"

    get_default_registry()     ─ module-level registry with built-in kinds
    reset_default_registry()   ─ rebuild it for testing

BEST PRACTICES
──────────────
- Pass an explicit ``ComponentRegistry`` to the executor in tests.
- Factories should raise ``ValueError``/``TypeError`` for bad params; the
  registry converts them into ``ReconstructionError``.

Tags:
    flowspine, execution, registry, tagged-variant, reconstruction
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from flowspine.core.errors import ReconstructionError, UnknownComponentKindError

ROLES = ("source", "sink", "runtime")


class ComponentConfig(BaseModel):
    """Tagged config envelope: a ``kind`` plus arbitrary factory params."""

    model_config = ConfigDict(extra="allow")

    kind: str = Field(min_length=1)

    @property
    def params(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class ComponentRegistry:
    """Injectable component registry.

    Example:
        >>> registry = ComponentRegistry()
        >>> registry.register("sink", "list", lambda **kw: ListSink(**kw))
        >>> sink = registry.build("sink", {"kind": "list"})
    """

    def __init__(self) -> None:
        self._factories: dict[str, Callable[..., Any]] = {}
        self._metadata: dict[str, dict[str, Any]] = {}

    def register(
        self,
        role: str,
        kind: str,
        factory: Callable[..., Any],
        description: str | None = None,
    ) -> None:
        """Register a factory called as ``factory(**params)``.

        Raises:
            ValueError: If ``role`` is not one of source / sink / runtime
        """
        if role not in ROLES:
            raise ValueError(f"Unknown component role '{role}' (expected one of {ROLES})")
        key = f"{role}:{kind}"
        self._factories[key] = factory
        self._metadata[key] = {"role": role, "kind": kind, "description": description}

    def has(self, role: str, kind: str) -> bool:
        return f"{role}:{kind}" in self._factories

    def unregister(self, role: str, kind: str) -> bool:
        key = f"{role}:{kind}"
        if key in self._factories:
            del self._factories[key]
            del self._metadata[key]
            return True
        return False

    def list_components(self, role: str | None = None) -> list[tuple[str, str]]:
        """List registered (role, kind) pairs."""
        result = []
        for key in self._factories:
            r, k = key.split(":", 1)
            if role is None or r == role:
                result.append((r, k))
        return sorted(result)

    def build(self, role: str, config: dict[str, Any] | ComponentConfig | None) -> Any:
        """Rebuild a component from its envelope.

        Raises:
            UnknownComponentKindError: No factory for the envelope's kind
            ReconstructionError: Malformed envelope or factory rejected params
        """
        if isinstance(config, ComponentConfig):
            envelope = config
        else:
            if not isinstance(config, dict):
                raise ReconstructionError(
                    f"{role} config must be a mapping with a 'kind', got {type(config).__name__}"
                ).with_context(component=role)
            try:
                envelope = ComponentConfig.model_validate(config)
            except ValidationError as e:
                raise ReconstructionError(
                    f"Invalid {role} config: {e.errors()[0]['msg']}", cause=e
                ).with_context(component=role)

        key = f"{role}:{envelope.kind}"
        factory = self._factories.get(key)
        if factory is None:
            available = [k for r, k in self.list_components(role)]
            raise UnknownComponentKindError(role, envelope.kind, available)

        try:
            return factory(**envelope.params)
        except (TypeError, ValueError, KeyError) as e:
            raise ReconstructionError(
                f"Cannot build {role} '{envelope.kind}': {e}", cause=e
            ).with_context(component=role, kind=envelope.kind)

    def clear(self) -> None:
        """Clear all factories (for testing)."""
        self._factories.clear()
        self._metadata.clear()


# === GLOBAL DEFAULT REGISTRY ===

_default_registry: ComponentRegistry | None = None


def get_default_registry() -> ComponentRegistry:
    """Get the global default registry, with built-in kinds registered."""
    global _default_registry
    if _default_registry is None:
        from .components import register_builtin_components

        registry = ComponentRegistry()
        register_builtin_components(registry)
        _default_registry = registry
    return _default_registry


def reset_default_registry() -> None:
    """Drop the global registry; the next access rebuilds it (for testing)."""
    global _default_registry
    _default_registry = None


def _register(role: str, kind: str, registry: ComponentRegistry | None, description: str | None):
    def decorator(factory: Callable[..., Any]) -> Callable[..., Any]:
        reg = registry or get_default_registry()
        reg.register(role, kind, factory, description=description or factory.__doc__)
        return factory

    return decorator


def register_source(kind: str, registry: ComponentRegistry | None = None, description: str | None = None):
    """Decorator to register a Source factory (usually the class itself)."""
    return _register("source", kind, registry, description)


def register_sink(kind: str, registry: ComponentRegistry | None = None, description: str | None = None):
    """Decorator to register a Sink factory."""
    return _register("sink", kind, registry, description)


def register_runtime(kind: str, registry: ComponentRegistry | None = None, description: str | None = None):
    """Decorator to register a Runtime factory."""
    return _register("runtime", kind, registry, description)


__all__ = [
    "ROLES",
    "ComponentConfig",
    "ComponentRegistry",
    "get_default_registry",
    "reset_default_registry",
    "register_source",
    "register_sink",
    "register_runtime",
]
