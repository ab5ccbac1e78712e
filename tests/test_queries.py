import pytest

from lens.queries import QueryBook
from shared.messages import ScoredText


class TestQueryBook:
    def test_newest_first(self):
        book = QueryBook()
        book.upsert("a cat", 0.2, 20.0)
        book.upsert("a dog", 0.1, 10.0)
        assert book.texts() == ["a dog", "a cat"]

    def test_thirteenth_drops_oldest(self):
        book = QueryBook(max_queries=12)
        for i in range(13):
            book.upsert(f"q{i}", 0.0, 0.0)
        assert len(book) == 12
        assert "q0" not in book
        assert book.texts()[0] == "q12"

    def test_never_exceeds_cap(self):
        book = QueryBook(max_queries=12)
        for i in range(40):
            book.upsert(f"q{i % 20}", 0.0, 0.0)
            assert len(book) <= 12

    def test_resubmission_updates_in_place(self):
        book = QueryBook()
        book.upsert("a cat", 0.1, 10.0)
        book.upsert("a dog", 0.1, 10.0)
        book.upsert("a cat", 0.3, 30.0)
        assert book.texts() == ["a dog", "a cat"]
        assert book.get("a cat").scaled_score == 30.0

    def test_remove(self):
        book = QueryBook()
        book.upsert("a cat", 0.1, 10.0)
        assert book.remove("a cat")
        assert not book.remove("a cat")
        assert len(book) == 0

    def test_merge_skips_removed_queries(self):
        book = QueryBook()
        book.upsert("a cat", 0.0, 0.0)
        book.upsert("a dog", 0.0, 0.0)
        results = [
            ScoredText(text="a cat", raw_score=0.25, scaled_score=25.0),
            ScoredText(text="a dog", raw_score=0.15, scaled_score=15.0),
        ]
        book.remove("a dog")

        assert book.merge(results) == 1
        assert book.texts() == ["a cat"]
        assert book.get("a cat").raw_score == 0.25


class TestRanking:
    def test_sorted_with_probabilities(self):
        book = QueryBook()
        book.upsert("a dog", 0.20, 20.0)
        book.upsert("a cat", 0.21, 21.0)
        book.upsert("a car", 0.10, 10.0)

        ranked = book.ranked()
        assert [q.text for q in ranked] == ["a cat", "a dog", "a car"]
        assert sum(q.probability for q in ranked) == pytest.approx(100.0, abs=1e-3)
        assert ranked[0].probability > ranked[1].probability > ranked[2].probability

    def test_single_query_has_no_probability(self):
        book = QueryBook()
        book.upsert("a cat", 0.25, 25.0)
        (only,) = book.ranked()
        assert only.probability is None
        assert only.scaled_score == 25.0

    def test_ties_keep_newest_first(self):
        book = QueryBook()
        book.upsert("older", 0.2, 20.0)
        book.upsert("newer", 0.2, 20.0)
        assert [q.text for q in book.ranked()] == ["newer", "older"]

    def test_empty(self):
        assert QueryBook().ranked() == []
