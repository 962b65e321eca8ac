"""Sandboxed text transforms for `@js:` locators.

Rule authors write a JS snippet that reads and reassigns `r`, e.g.
``r=r.replace('作者：','')``. The snippet runs inside a fresh QuickJS
context per call: no filesystem, network or host objects are exposed and
nothing survives between calls.
"""

from __future__ import annotations

import logging
from typing import Optional

import quickjs

from .errors import TransformError

logger = logging.getLogger(__name__)

# Helpers available to every snippet, as free functions.
_PRELUDE = """
function replace(s, from, to) { return String(s).replace(String(from), String(to)); }
function replaceAll(s, from, to) { return String(s).split(String(from)).join(String(to)); }
function trim(s) { return String(s).trim(); }
function split(s, sep) { return String(s).split(String(sep)); }
"""

_FUNC_NAME = "__transform"


class JsSandbox:
    """Runs `@js:` code as ``function(r) { <code>; return r; }``."""

    def __init__(self, memory_limit: int = 16 * 1024 * 1024, time_limit: float = 2.0) -> None:
        self._memory_limit = memory_limit
        self._time_limit = time_limit

    def _new_context(self) -> quickjs.Context:
        ctx = quickjs.Context()
        ctx.set_memory_limit(self._memory_limit)
        ctx.set_time_limit(self._time_limit)
        return ctx

    def run(self, code: Optional[str], text: str) -> str:
        """Apply `code` to `text`. Empty code returns the input unchanged."""
        if not code:
            return text

        source = _PRELUDE + f"function {_FUNC_NAME}(r) {{ {code}; return r; }}"
        ctx = self._new_context()
        try:
            ctx.eval(source)
            fn = ctx.get(_FUNC_NAME)
            result = fn(text)
        except quickjs.JSException as exc:
            raise TransformError(f"js transform failed: {exc}") from exc
        except Exception as exc:  # noqa: BLE001
            # quickjs raises plain errors for limits and unconvertible values
            raise TransformError(f"js transform failed: {type(exc).__name__}: {exc}") from exc

        if result is None:
            return ""
        if isinstance(result, bool):
            return "true" if result else "false"
        if isinstance(result, float) and result.is_integer():
            return str(int(result))
        if isinstance(result, quickjs.Object):
            return result.json()
        return str(result)

    __call__ = run
