"""Function registries for inbound invocations.

Inbound Call and Notify envelopes name their target by module and function.
A registry maps those names to invocable handles and is consulted at call
time; a name it does not expose is rejected with UnknownFunctionError.

Two implementations:
- FunctionRegistry: explicit registrations, used on the host side
- ModuleRegistry: resolves importable modules on demand, used by the worker

Usage:
    registry = FunctionRegistry()

    @registry.expose("host")
    async def log(message: str) -> None:
        ...

    registry.register("host", "double", lambda x: x * 2)

    session = await BridgeSession.start(options, registry=registry)
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable, Iterable
from typing import Any, Protocol, runtime_checkable

from .errors import UnknownFunctionError

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


@runtime_checkable
class Registry(Protocol):
    """Anything that can resolve a module/function pair to a callable."""

    def resolve(self, module: str, function: str) -> Handler: ...


class FunctionRegistry:
    """Explicit mapping of (module, function) to handlers.

    Handlers may be plain functions (run on a worker thread) or coroutine
    functions (run on the event loop).
    """

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], Handler] = {}

    def register(self, module: str, function: str, handler: Handler) -> None:
        """Expose a handler as module.function.

        Raises:
            ValueError: If the name is taken, empty, or the handler is not callable
        """
        self._validate(module, function, handler)
        key = (module, function)
        if key in self._handlers:
            raise ValueError(f"Function '{module}.{function}' already registered")
        self._handlers[key] = handler
        logger.debug(f"Registered function: {module}.{function}")

    def register_or_replace(self, module: str, function: str, handler: Handler) -> bool:
        """Expose a handler, replacing any existing one.

        Returns:
            True if an existing handler was replaced
        """
        self._validate(module, function, handler)
        key = (module, function)
        replaced = key in self._handlers
        self._handlers[key] = handler
        action = "Replaced" if replaced else "Registered"
        logger.debug(f"{action} function: {module}.{function}")
        return replaced

    def register_object(self, module: str, obj: Any) -> list[str]:
        """Expose every public callable attribute of `obj` under `module`.

        Returns:
            Names of the registered functions
        """
        registered = []
        for name in dir(obj):
            if name.startswith("_"):
                continue
            attr = getattr(obj, name)
            if callable(attr) and not isinstance(attr, type):
                self.register_or_replace(module, name, attr)
                registered.append(name)
        return registered

    def unregister(self, module: str, function: str) -> bool:
        """Remove a handler.

        Returns:
            True if it was registered
        """
        return self._handlers.pop((module, function), None) is not None

    def expose(self, module: str, name: str | None = None) -> Callable[[Handler], Handler]:
        """Decorator form of register().

        Example:
            @registry.expose("host")
            def ping() -> str:
                return "pong"
        """

        def decorator(func: Handler) -> Handler:
            self.register(module, name or func.__name__, func)
            return func

        return decorator

    def resolve(self, module: str, function: str) -> Handler:
        """Look up a handler.

        Raises:
            UnknownFunctionError: If module.function is not exposed
        """
        try:
            return self._handlers[(module, function)]
        except KeyError:
            raise UnknownFunctionError(module, function) from None

    def names(self) -> list[str]:
        """Sorted "module.function" names of every handler."""
        return sorted(f"{module}.{function}" for module, function in self._handlers)

    def __contains__(self, item: object) -> bool:
        return item in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    @staticmethod
    def _validate(module: str, function: str, handler: Handler) -> None:
        if not module or not function:
            raise ValueError("Module and function names cannot be empty")
        if not callable(handler):
            raise ValueError(f"Handler for '{module}.{function}' must be callable")


class ModuleRegistry:
    """Resolves module.function by importing the module.

    Args:
        allow: Module name prefixes that may be imported. When empty every
            importable module is allowed.
        extra: Explicit registrations consulted before importing
    """

    def __init__(
        self,
        allow: Iterable[str] = (),
        extra: FunctionRegistry | None = None,
    ) -> None:
        self._allow = tuple(allow)
        self._extra = extra or FunctionRegistry()

    @property
    def extra(self) -> FunctionRegistry:
        """Explicit registrations that take precedence over imports."""
        return self._extra

    def is_allowed(self, module: str) -> bool:
        """Check whether `module` falls under the allow-list."""
        if not self._allow:
            return True
        return any(module == prefix or module.startswith(f"{prefix}.") for prefix in self._allow)

    def resolve(self, module: str, function: str) -> Handler:
        """Import `module` and return its callable attribute `function`.

        Raises:
            UnknownFunctionError: If the module is not allowed or importable,
                or the attribute is missing, private or not callable
        """
        if (module, function) in self._extra:
            return self._extra.resolve(module, function)

        if not module or not function or function.startswith("_"):
            raise UnknownFunctionError(module, function)
        if not self.is_allowed(module):
            raise UnknownFunctionError(module, function)

        try:
            target = importlib.import_module(module)
        except ImportError as e:
            logger.debug(f"Cannot import {module}: {e}")
            raise UnknownFunctionError(module, function) from e

        handler = getattr(target, function, None)
        if handler is None or not callable(handler):
            raise UnknownFunctionError(module, function)
        return handler
