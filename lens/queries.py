# =============================================================================
# Embedding Lens - Query Book
# =============================================================================
# The ordered list of live text queries (newest first, capped), in-place
# score updates from batch re-scoring, and the ranked view with softmax
# probabilities that the rendering layer displays.
# =============================================================================

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from shared.schemas import QueryView
from shared.scoring import softmax_percent

logger = logging.getLogger(__name__)


@dataclass
class Query:
    """A tracked query and its scores against the current image."""

    text: str
    raw_score: float = 0.0
    scaled_score: float = 0.0


class QueryBook:
    """
    Newest-first list of at most ``max_queries`` queries, unique by text.

    Args:
        max_queries: Capacity; the oldest query is dropped on overflow.
    """

    def __init__(self, max_queries: int = 12):
        self._max_queries = max_queries
        self._queries: List[Query] = []

    def __len__(self) -> int:
        return len(self._queries)

    def __contains__(self, text: str) -> bool:
        return self.get(text) is not None

    def get(self, text: str) -> Optional[Query]:
        for query in self._queries:
            if query.text == text:
                return query
        return None

    def texts(self) -> List[str]:
        """Query texts in list order (newest first)."""
        return [query.text for query in self._queries]

    def upsert(self, text: str, raw_score: float, scaled_score: float) -> Query:
        """
        Record a freshly scored query.

        An existing query is updated in place and keeps its position; a new
        one goes to the front, and the oldest is dropped past capacity.
        """
        query = self.get(text)
        if query is not None:
            query.raw_score = raw_score
            query.scaled_score = scaled_score
            return query

        query = Query(text=text, raw_score=raw_score, scaled_score=scaled_score)
        self._queries.insert(0, query)
        for dropped in self._queries[self._max_queries:]:
            logger.info("Query limit (%d) reached; dropped %r", self._max_queries, dropped.text)
        del self._queries[self._max_queries:]
        return query

    def remove(self, text: str) -> bool:
        """Remove a query by text. Returns False if it was not tracked."""
        query = self.get(text)
        if query is None:
            return False
        self._queries.remove(query)
        return True

    def merge(self, results: Iterable) -> int:
        """
        Apply batch re-score results to queries that are still tracked.

        Results for queries removed since the batch was sent are dropped.

        Args:
            results: Objects with ``text``, ``raw_score`` and ``scaled_score``.

        Returns:
            Number of queries updated.
        """
        updated = 0
        for result in results:
            query = self.get(result.text)
            if query is None:
                logger.debug("Dropping stale score for removed query %r", result.text)
                continue
            query.raw_score = result.raw_score
            query.scaled_score = result.scaled_score
            updated += 1
        return updated

    def ranked(self) -> List[QueryView]:
        """
        Queries sorted by scaled score, highest first, with probabilities.

        Probabilities are only meaningful as a comparison, so they are set
        when at least two queries are tracked. The sort is stable, so ties
        keep newest-first order.
        """
        probabilities = softmax_percent([query.scaled_score for query in self._queries])
        compare = len(self._queries) > 1
        views = [
            QueryView(
                text=query.text,
                raw_score=query.raw_score,
                scaled_score=query.scaled_score,
                probability=probability if compare else None,
            )
            for query, probability in zip(self._queries, probabilities)
        ]
        return sorted(views, key=lambda view: view.scaled_score, reverse=True)
