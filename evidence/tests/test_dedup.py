"""
Tests for Deduplicator / Diversifier

Covers identity keys, relevance normalization, the dynamic threshold
applied to real hits, deterministic ordering, and MMR selection.
"""

import pytest
from unittest.mock import Mock


def doc(doc_id, score, title=None, snippet="Text", chunk=0, url=None, source_id="programme", content_type=None):
    from evidence.common.schemas import DocumentHit
    return DocumentHit(
        source_id=source_id, title=title or doc_id, snippet=snippet, url=url,
        score=score, document_id=doc_id, chunk_index=chunk, collection=source_id,
        content_type=content_type,
    )


def web(url, rank=1, title=None, snippet="Text", score=None):
    from evidence.common.schemas import WebHit
    return WebHit(source_id="web", title=title or url, snippet=snippet, url=url, rank=rank, score=score)


class TestIdentity:
    def test_url_normalization(self):
        from evidence.retriever.dedup import normalize_url
        assert normalize_url("http://www.Example.org/path/#top") == "https://example.org/path"
        assert normalize_url("https://example.org/path?x=1") == "https://example.org/path?x=1"

    def test_same_url_deduplicated_first_seen_wins(self):
        from evidence.retriever.dedup import dedupe
        results = dedupe([
            web("https://www.gruene.de/klima", title="Erster"),
            web("https://gruene.de/klima/", title="Zweiter"),
        ])
        assert [r.title for r in results] == ["Erster"]

    def test_chunks_sharing_a_url_collapse_to_first_seen(self):
        from evidence.retriever.dedup import dedupe
        results = dedupe([
            doc("wp", 0.6, chunk=0, url="https://example.org/wp.pdf"),
            doc("wp", 0.5, chunk=1, url="https://example.org/wp.pdf"),
            doc("wp", 0.4, chunk=1, url="https://example.org/wp.pdf"),
        ])
        assert len(results) == 1
        assert results[0].hit.chunk_index == 0

    def test_chunks_without_url_keyed_by_document_and_chunk(self):
        from evidence.retriever.dedup import dedupe
        results = dedupe([doc("wp", 0.6, chunk=0), doc("wp", 0.5, chunk=1), doc("wp", 0.4, chunk=1)])
        assert [r.hit.chunk_index for r in results] == [0, 1]
        assert results[0].document_key == results[1].document_key

    def test_document_and_web_hit_with_same_url_merge(self):
        from evidence.retriever.dedup import dedupe
        results = dedupe([
            doc("wp", 0.7, url="https://www.gruene.de/programm/"),
            web("http://gruene.de/programm", rank=1),
        ])
        assert len(results) == 1
        assert results[0].hit.source_type == "document"

    def test_title_fallback_identity(self):
        from evidence.common.schemas import PriorResearchHit
        from evidence.retriever.dedup import dedupe
        hits = [
            PriorResearchHit(source_id="prior_research", title="Verkehr", score=0.5),
            PriorResearchHit(source_id="prior_research", title="verkehr", score=0.4),
        ]
        assert len(dedupe(hits)) == 1


class TestRelevance:
    @pytest.mark.parametrize("rank,expected", [(1, 1.0), (3, 0.8), (10, 0.1), (30, 0.1)])
    def test_web_rank_fallback(self, rank, expected):
        from evidence.retriever.dedup import relevance_of
        assert relevance_of(web("https://a.de", rank=rank)) == pytest.approx(expected)

    def test_calibrated_web_score_used(self):
        from evidence.retriever.dedup import relevance_of
        assert relevance_of(web("https://a.de", rank=5, score=0.66)) == 0.66

    def test_uncalibrated_web_score_ignored(self):
        from evidence.retriever.dedup import relevance_of
        assert relevance_of(web("https://a.de", rank=2, score=7.5)) == pytest.approx(0.9)

    def test_document_scores_clamped(self):
        from evidence.retriever.dedup import relevance_of
        assert relevance_of(doc("a", 1.4)) == 1.0
        assert relevance_of(doc("a", None)) == 0.0


class TestOrdering:
    def test_relevance_descending_then_title(self):
        from evidence.retriever.dedup import dedupe, sort_key
        results = sorted(dedupe([
            doc("c", 0.5, title="Zebra"),
            doc("b", 0.5, title="alpha"),
            doc("a", 0.9, title="Mitte"),
        ]), key=sort_key)
        assert [r.title for r in results] == ["Mitte", "alpha", "Zebra"]

    def test_person_kind(self):
        from evidence.retriever.dedup import dedupe
        result = dedupe([doc("p", 0.5, content_type="Biography")])[0]
        assert result.kind == "person"


class TestDeduplicatorProcess:
    def test_rich_evidence(self):
        from evidence.retriever.dedup import Deduplicator
        hits = [doc(f"d{i}", 0.46 + i * 0.02, snippet=f"Abschnitt {i}") for i in range(20)]

        outcome = Deduplicator().process(hits, diversify=False)

        assert outcome.decision.quality_min == 0.40
        assert outcome.decision.max_results == 25
        assert len(outcome.results) == 20
        assert outcome.results[0].relevance == max(r.relevance for r in outcome.results)

    def test_sparse_evidence(self):
        from evidence.retriever.dedup import Deduplicator
        hits = [doc("a", 0.36), doc("b", 0.38), doc("c", 0.40)]

        outcome = Deduplicator().process(hits)

        assert (outcome.decision.quality_min, outcome.decision.max_results) == (0.35, 8)
        assert [r.hit.document_id for r in outcome.results] == ["c", "b", "a"]
        assert not outcome.diversified

    def test_below_threshold_dropped(self):
        from evidence.retriever.dedup import Deduplicator
        hits = [doc("a", 0.5), doc("b", 0.2), doc("b", 0.6)]

        outcome = Deduplicator().process(hits)

        assert outcome.duplicates_dropped == 1
        assert outcome.below_threshold == 1
        assert [r.hit.document_id for r in outcome.results] == ["a"]

    def test_everything_below_threshold_is_no_evidence(self):
        from evidence.retriever.dedup import Deduplicator
        outcome = Deduplicator().process([doc("a", 0.1), doc("b", 0.2)])
        assert outcome.no_evidence

    def test_no_hits_is_no_evidence(self):
        from evidence.retriever.dedup import Deduplicator
        outcome = Deduplicator().process([])
        assert outcome.no_evidence
        assert outcome.decision is None

    def test_cap_applied(self):
        from evidence.retriever.dedup import Deduplicator
        hits = [doc(f"d{i}", 0.36 + i * 0.001) for i in range(12)]
        outcome = Deduplicator().process(hits, diversify=False)
        assert len(outcome.results) == 8

    def test_deterministic_output(self):
        from evidence.retriever.dedup import Deduplicator
        hits = [doc(f"d{i}", 0.5, snippet=f"Thema {i % 3}") for i in range(10)]
        first = Deduplicator().process(hits).results
        second = Deduplicator().process(list(reversed(hits))).results
        assert [r.identity for r in first] == [r.identity for r in second]

    def test_reprocessing_output_is_idempotent(self):
        from evidence.retriever.dedup import Deduplicator
        hits = [doc(f"d{i}", 0.4 + i * 0.03, snippet=f"Thema {i % 3}") for i in range(8)]
        hits += [web("https://a.de/1", rank=1), web("https://www.a.de/1/", rank=2), doc("d2", 0.9)]

        outcome = Deduplicator().process(hits)
        again = Deduplicator().process([r.hit for r in outcome.results])

        assert again.duplicates_dropped == 0
        assert [r.identity for r in again.results] == [r.identity for r in outcome.results]

    def test_embedding_similarity_used_when_available(self):
        from evidence.common.embedding_service import EmbeddingService
        from evidence.retriever.dedup import Deduplicator

        embed_fn = Mock(side_effect=lambda texts: [[1.0, float(i)] for i in range(len(texts))])
        dedup = Deduplicator(embedding_service=EmbeddingService(embed_fn))
        hits = [doc(f"d{i}", 0.6 - i * 0.01) for i in range(5)]

        outcome = dedup.process(hits)

        assert outcome.diversified
        embed_fn.assert_called_once()
        assert len(outcome.results) == 5

    def test_failing_embeddings_fall_back_to_lexical(self, caplog):
        import logging
        from evidence.common.embedding_service import EmbeddingService
        from evidence.retriever.dedup import Deduplicator

        dedup = Deduplicator(embedding_service=EmbeddingService(Mock(side_effect=RuntimeError("down"))))
        hits = [doc(f"d{i}", 0.6 - i * 0.01) for i in range(5)]

        with caplog.at_level(logging.WARNING, logger="evidence.common.embedding_service"):
            outcome = dedup.process(hits)

        assert len(outcome.results) == 5
        assert "falling back to lexical" in caplog.text


class TestMMR:
    def test_pure_relevance_keeps_order(self):
        from evidence.retriever.dedup import dedupe, mmr_rerank, sort_key
        results = sorted(dedupe([doc(f"d{i}", 0.9 - i * 0.1) for i in range(4)]), key=sort_key)
        assert mmr_rerank(results, lambda_=1.0) == results

    def test_near_duplicate_pushed_down(self):
        from evidence.retriever.dedup import dedupe, mmr_rerank, sort_key
        results = sorted(dedupe([
            doc("a", 0.9, title="Wahlprogramm", snippet="Klimaneutral bis 2035 durch erneuerbare Energien"),
            doc("b", 0.85, title="Wahlprogramm", snippet="Klimaneutral bis 2035 durch erneuerbare Energien"),
            doc("c", 0.6, title="Verkehr", snippet="Ausbau der Bahn und des Nahverkehrs"),
        ]), key=sort_key)

        picked = mmr_rerank(results, lambda_=0.5)

        assert [r.hit.document_id for r in picked] == ["a", "c", "b"]

    def test_max_per_domain(self):
        from evidence.retriever.dedup import dedupe, mmr_rerank, sort_key
        results = sorted(dedupe([
            web("https://a.de/1", rank=1, snippet="eins"),
            web("https://a.de/2", rank=2, snippet="zwei"),
            web("https://a.de/3", rank=3, snippet="drei"),
            web("https://b.de/1", rank=4, snippet="vier"),
        ]), key=sort_key)

        picked = mmr_rerank(results, lambda_=1.0, max_per_domain=2)

        assert [r.url for r in picked] == ["https://a.de/1", "https://a.de/2", "https://b.de/1"]

    def test_limit(self):
        from evidence.retriever.dedup import dedupe, mmr_rerank
        results = dedupe([doc(f"d{i}", 0.5) for i in range(6)])
        assert len(mmr_rerank(results, limit=2)) == 2

    def test_invalid_lambda(self):
        from evidence.retriever.dedup import mmr_rerank
        with pytest.raises(ValueError):
            mmr_rerank([], lambda_=1.5)

    def test_jaccard_matrix(self):
        from evidence.retriever.dedup import jaccard_matrix
        matrix = jaccard_matrix(["Klima Schutz Gesetz", "Klima Schutz Gesetz", "Bahn"])
        assert matrix[0, 1] == 1.0
        assert matrix[0, 2] == 0.0
        assert matrix[2, 2] == 1.0
