"""Search result envelope shared by all result processors."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

import structlog

from .serializer import JsonSink
from .store import BaseSession, Node

_logger = structlog.get_logger(__name__)

DEFAULT_ITEMS = 25


class SearchResultProcessor(Protocol):
    def write_node(self, writer: JsonSink, session: BaseSession, node: Node) -> None: ...


def write_search_results(
    writer: JsonSink,
    session: BaseSession,
    nodes: Sequence[Node],
    processor: SearchResultProcessor,
    *,
    offset: int = 0,
    limit: int = DEFAULT_ITEMS,
) -> None:
    """Write ``{"items", "total", "results"}`` for one page of ``nodes``."""
    if offset < 0 or limit < 0:
        raise ValueError("offset and limit must be non-negative")
    page = nodes[offset : offset + limit]
    writer.object()
    writer.key("items")
    writer.value(limit)
    writer.key("total")
    writer.value(len(nodes))
    writer.key("results")
    writer.array()
    for node in page:
        processor.write_node(writer, session, node)
    writer.end_array()
    writer.end_object()
    _logger.debug("search.results_written", total=len(nodes), written=len(page), offset=offset)
