# tracer.py
# Hierarchical trace spans.
#
# The engine opens one span per request, per turn, per completion call and
# per delegate call. Spans are context managers and close on every exit path:
# an exception fails the span, a normal exit succeeds it unless the body
# already closed it explicitly.

import logging
import time
from typing import Any

logger = logging.getLogger(__name__)


class Span:
    """A unit of traced work. The base class keeps nothing beyond itself."""

    def __init__(
        self,
        name: str,
        kind: str,
        inputs: dict[str, Any] | None = None,
        parent: "Span | None" = None,
    ) -> None:
        self.name = name
        self.kind = kind
        self.inputs = inputs or {}
        self.parent = parent
        self.status = "running"
        self.outputs: dict[str, Any] = {}
        self.error: str | None = None
        self._started = time.monotonic()
        self.duration: float | None = None

    @property
    def closed(self) -> bool:
        return self.status != "running"

    def child(self, name: str, kind: str, inputs: dict[str, Any] | None = None) -> "Span":
        return type(self)(name, kind, inputs, parent=self)

    def succeed(self, outputs: dict[str, Any] | None = None) -> None:
        if self.closed:
            return
        self.status = "succeeded"
        self.outputs = outputs or {}
        self._close()

    def fail(self, message: str, outputs: dict[str, Any] | None = None) -> None:
        if self.closed:
            return
        self.status = "failed"
        self.error = message
        self.outputs = outputs or {}
        self._close()

    def _close(self) -> None:
        self.duration = time.monotonic() - self._started
        logger.debug("span %s [%s] %s in %.3fs", self.name, self.kind, self.status, self.duration)

    def __enter__(self) -> "Span":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if not self.closed:
            if exc is not None:
                self.fail(str(exc) or exc_type.__name__)
            else:
                self.succeed()
        return False


class RecordingSpan(Span):
    """A span that remembers its children so the whole tree can be inspected."""

    def __init__(self, name, kind, inputs=None, parent=None) -> None:
        super().__init__(name, kind, inputs, parent)
        self.children: list[RecordingSpan] = []
        if isinstance(parent, RecordingSpan):
            parent.children.append(self)

    def walk(self):
        yield self
        for child in self.children:
            yield from child.walk()


class Tracer:
    """No-op tracer. Default for every engine component."""

    span_class: type[Span] = Span

    def start_span(self, name: str, kind: str, inputs: dict[str, Any] | None = None) -> Span:
        return self.span_class(name, kind, inputs)


NoopTracer = Tracer


class RecordingTracer(Tracer):
    """Keeps every root span (and through it, the full tree) in memory."""

    span_class = RecordingSpan

    def __init__(self) -> None:
        self.roots: list[RecordingSpan] = []

    def start_span(self, name: str, kind: str, inputs: dict[str, Any] | None = None) -> Span:
        span = RecordingSpan(name, kind, inputs)
        self.roots.append(span)
        return span

    def spans(self) -> list[RecordingSpan]:
        return [span for root in self.roots for span in root.walk()]

    def find(self, prefix: str) -> list[RecordingSpan]:
        """All spans whose name starts with `prefix`, in creation order per tree."""
        return [span for span in self.spans() if span.name.startswith(prefix)]
