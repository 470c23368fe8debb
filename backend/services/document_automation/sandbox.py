"""
Sandboxed Script Runtime
========================
Evaluation contexts for template snippets and the protected `c` helper.

Every snippet runs against a SandboxContext. Helper names are not stored as
plain values but as ProtectedBinding objects: a snippet may assign anything
to `c` or delete it, yet every read of `c` still yields a callable. After
each snippet the context is inspected again and corrupted overrides are
dropped.

A process-wide GLOBAL_SCOPE serves as the name fallback for the
non-sandboxed evaluation mode. `global_helper()` installs the helper there
for exactly one render and restores the previous state afterwards; renders
that use it are serialized on a lock.
"""

from __future__ import annotations
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional

from core.logger import get_logger

from .exceptions import TemplateEvaluationError
from .expressions import Environment, evaluate
from .text_utils import to_safe_string

log = get_logger(__name__)

HELPER_NAME = "c"


def c(value: Any = None, fallback: Any = "", *rest: Any) -> str:
    """
    Null-safe stringification with a fallback and optional tail segments.

        c(None, 'n/a')          -> 'n/a'
        c(None, 'n/a', ' tail') -> 'n/a tail'
        c(5)                    -> '5'
    """
    base = to_safe_string(fallback if value is None or value == "" else value)
    if not rest:
        return base
    return base + "".join(to_safe_string(item) for item in rest)


HELPER_FUNCTIONS: Dict[str, Callable[..., Any]] = {HELPER_NAME: c}


class ProtectedBinding:
    """
    A name that always resolves to a callable.

    set() records whatever the script assigns; validity is checked on read,
    so a non-callable override simply falls back to the default.
    """

    def __init__(self, default: Callable[..., Any], override: Any = None):
        self.default = default
        self.override = override

    def get(self) -> Callable[..., Any]:
        return self.override if callable(self.override) else self.default

    def set(self, value: Any) -> None:
        self.override = value

    def reset_if_invalid(self) -> bool:
        """Drop a non-callable override. Returns True when something was dropped."""
        if self.override is not None and not callable(self.override):
            self.override = None
            return True
        return False


class SandboxContext(Environment):
    """
    Evaluation scope for one snippet (or for one whole render).

    Names resolve through protected bindings first, then plain values, then
    the optional fallback scope.
    """

    def __init__(
        self,
        values: Optional[Dict[str, Any]] = None,
        fallback: Optional[Environment] = None,
    ):
        self.values = values if values is not None else {}
        self.bindings: Dict[str, ProtectedBinding] = {}
        self.fallback = fallback

    def has(self, name: str) -> bool:
        return name in self.bindings or name in self.values

    def lookup(self, name: str) -> Any:
        binding = self.bindings.get(name)
        if binding is not None:
            return binding.get()
        if name in self.values:
            return self.values[name]
        if self.fallback is not None:
            return self.fallback.lookup(name)
        raise TemplateEvaluationError(f"{name} is not defined", {"name": name})

    def assign(self, name: str, value: Any) -> None:
        binding = self.bindings.get(name)
        if binding is not None:
            binding.set(value)
        else:
            self.values[name] = value

    def delete(self, name: str) -> bool:
        binding = self.bindings.get(name)
        if binding is not None:
            binding.set(None)
            return True
        return self.values.pop(name, None) is not None

    @property
    def this(self) -> Any:
        return self.values


# =============================================================================
# HELPER INSTALLATION
# =============================================================================

def ensure_helper(
    context: SandboxContext,
    helpers: Optional[Dict[str, Callable[..., Any]]] = None,
) -> SandboxContext:
    """
    Install protected helper bindings on a context.

    Idempotent: an existing binding is kept and only loses its override when
    that override is not callable. A callable plain value already present
    under a helper name becomes the override.
    """
    for name, default in (helpers or HELPER_FUNCTIONS).items():
        binding = context.bindings.get(name)
        if binding is None:
            existing = context.values.pop(name, None)
            context.bindings[name] = ProtectedBinding(
                default, existing if callable(existing) else None
            )
        elif binding.reset_if_invalid():
            log.debug(f"Helper '{name}' override was not callable, using default")
    return context


def reinstate_helper(
    context: SandboxContext,
    helpers: Optional[Dict[str, Callable[..., Any]]] = None,
) -> SandboxContext:
    """Make sure every helper name on context resolves to a callable again."""
    ensure_helper(context, helpers)
    for name, default in (helpers or HELPER_FUNCTIONS).items():
        if not callable(context.lookup(name)):
            context.bindings[name] = ProtectedBinding(default)
    return context


# =============================================================================
# GLOBAL FALLBACK
# =============================================================================

GLOBAL_SCOPE = SandboxContext()
_global_lock = threading.RLock()


@contextmanager
def global_helper(
    enabled: bool = True,
    helpers: Optional[Dict[str, Callable[..., Any]]] = None,
) -> Iterator[SandboxContext]:
    """
    Expose the helpers on GLOBAL_SCOPE for the duration of one render.

    The previous state (including absence) is restored on exit, whether the
    render succeeded or raised. Concurrent renders wait on a process lock.
    """
    if not enabled:
        yield GLOBAL_SCOPE
        return

    helpers = helpers or HELPER_FUNCTIONS
    with _global_lock:
        previous_bindings = {name: GLOBAL_SCOPE.bindings.get(name) for name in helpers}
        previous_values = {
            name: GLOBAL_SCOPE.values[name] for name in helpers if name in GLOBAL_SCOPE.values
        }
        for name, default in helpers.items():
            GLOBAL_SCOPE.values.pop(name, None)
            GLOBAL_SCOPE.bindings[name] = ProtectedBinding(default, default)
        try:
            yield GLOBAL_SCOPE
        finally:
            for name, binding in previous_bindings.items():
                if binding is None:
                    GLOBAL_SCOPE.bindings.pop(name, None)
                else:
                    GLOBAL_SCOPE.bindings[name] = binding
                if name in previous_values:
                    GLOBAL_SCOPE.values[name] = previous_values[name]
                else:
                    GLOBAL_SCOPE.values.pop(name, None)


# =============================================================================
# SNIPPET RUNTIME
# =============================================================================

@dataclass
class SnippetResult:
    context: SandboxContext
    result: Any


class SandboxRuntime:
    """
    Runs template snippets.

    Sandboxed mode (default): the snippet only sees its own context.
    Non-sandboxed mode: names missing from the context fall through to
    GLOBAL_SCOPE, the equivalent of evaluating `with (data) { ... }`.
    """

    def __init__(
        self,
        no_sandbox: bool = False,
        helpers: Optional[Dict[str, Callable[..., Any]]] = None,
    ):
        self.no_sandbox = no_sandbox
        self.helpers = helpers or HELPER_FUNCTIONS

    def run(self, code: str, sandbox: SandboxContext) -> SnippetResult:
        context = ensure_helper(sandbox, self.helpers)
        context.fallback = GLOBAL_SCOPE if self.no_sandbox else None
        try:
            result = evaluate(code, context)
        finally:
            reinstate_helper(context, self.helpers)
        return SnippetResult(context=context, result=result)
