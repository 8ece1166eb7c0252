"""Evaluation of kernel-supplied code.

The kernel opens a channel by sending source text that must evaluate to a
function. The function is called once with the new :class:`Channel` and its
return value, awaited if needed, is the result of the open request.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol


class CodeEvaluator(Protocol):
    """Turns kernel source text into an object, normally a callable."""

    def evaluate(self, source: str) -> Any:
        """Evaluate ``source`` and return the resulting object."""
        ...


class PythonEvaluator:
    """Evaluates a single Python expression.

    Usage:
        evaluator = PythonEvaluator({"Handler": Handler})
        construct = evaluator.evaluate("lambda channel: setattr(channel, 'handler', Handler())")

    Each evaluation gets a fresh copy of the namespace, so one channel's code
    cannot rebind names another channel sees.
    """

    __slots__ = ('_namespace',)

    def __init__(self, namespace: Mapping[str, Any] | None = None) -> None:
        self._namespace = dict(namespace or {})

    def evaluate(self, source: str) -> Any:
        """Evaluate an expression.

        Raises:
            SyntaxError: If the source is not a valid expression
            Exception: Whatever the expression itself raises
        """
        code = compile(source, "<kernel>", "eval")
        return eval(code, dict(self._namespace))  # noqa: S307
