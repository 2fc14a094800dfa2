"""
Retrieval: owner scoping, freshness-blended ranking and keyword fallback.
"""

import time
from unittest.mock import Mock

import pytest

from crm_assistant.core import assistant_dao, dao
from crm_assistant.core.db import get_db
from crm_assistant.vector.embeddings import IEmbeddingProvider
from crm_assistant.vector.retrieval import (
    RetrievalEngine,
    RetrievalResult,
    blended_score,
    build_retrieval_context,
    entity_details_from_record,
    freshness,
)

DAY = 86400


class FixedQueryProvider(IEmbeddingProvider):
    """Embeds every query to the same vector."""

    def __init__(self, vector, available=True):
        self.vector = vector
        self.available = available

    def embed_text(self, text):
        return list(self.vector)

    def get_dimension(self):
        return len(self.vector)

    def is_available(self):
        return self.available


def index(source_type, record, owner, vector, age_days=0.0):
    assistant_dao.upsert_embedding(source_type, record.id, owner, f"{source_type}: {record.id}", vector)
    with get_db() as conn:
        conn.execute(
            "UPDATE document_embeddings SET updated_at = ? WHERE source_type = ? AND source_id = ?",
            (time.time() - age_days * DAY, source_type, record.id)
        )
        conn.commit()


class TestScoring:

    def test_freshness_decays_linearly(self):
        now = 1_000_000.0
        assert freshness(now, now, 30 * DAY) == 1.0
        assert freshness(now - 15 * DAY, now, 30 * DAY) == pytest.approx(0.5)
        assert freshness(now - 90 * DAY, now, 30 * DAY) == 0.0

    def test_blended_score(self):
        assert blended_score(1.0, 0.0, 0.15) == pytest.approx(0.85)
        assert blended_score(0.5, 1.0, 0.15) == pytest.approx(0.575)


class TestSemanticSearch:

    def test_only_owner_documents_are_returned(self, user_id, other_user_id):
        mine = dao.create_company(user_id, "Acme Corp")
        theirs = dao.create_company(other_user_id, "Globex")
        index("COMPANY", mine, user_id, [1.0, 0.0])
        index("COMPANY", theirs, other_user_id, [1.0, 0.0])

        engine = RetrievalEngine(provider=FixedQueryProvider([1.0, 0.0]))
        results = engine.search("acme", user_id)

        assert [r.source_id for r in results] == [mine.id]

    def test_fresher_record_wins_at_equal_similarity(self, user_id):
        stale = dao.create_deal(user_id, "Old renewal")
        fresh = dao.create_deal(user_id, "New renewal")
        index("DEAL", stale, user_id, [1.0, 0.0], age_days=20)
        index("DEAL", fresh, user_id, [1.0, 0.0], age_days=1)

        engine = RetrievalEngine(provider=FixedQueryProvider([1.0, 0.0]))
        results = engine.search("renewal", user_id)

        assert [r.source_id for r in results] == [fresh.id, stale.id]
        assert results[0].similarity > results[1].similarity

    def test_similarity_outweighs_small_freshness_gap(self, user_id):
        close = dao.create_deal(user_id, "Close match")
        loose = dao.create_deal(user_id, "Loose match")
        index("DEAL", close, user_id, [1.0, 0.0], age_days=29)
        index("DEAL", loose, user_id, [0.6, 0.8], age_days=0)

        engine = RetrievalEngine(provider=FixedQueryProvider([1.0, 0.0]))
        results = engine.search("match", user_id)

        assert [r.source_id for r in results] == [close.id, loose.id]

    def test_results_below_minimum_are_dropped(self, user_id):
        related = dao.create_company(user_id, "Acme Corp")
        unrelated = dao.create_company(user_id, "Picnic Club")
        index("COMPANY", related, user_id, [1.0, 0.0])
        index("COMPANY", unrelated, user_id, [0.0, 1.0])

        engine = RetrievalEngine(provider=FixedQueryProvider([1.0, 0.0]))
        results = engine.search("acme", user_id)

        assert [r.source_id for r in results] == [related.id]
        assert all(r.similarity >= 0.3 for r in results)

    def test_deleted_records_are_skipped_and_slots_refilled(self, user_id):
        first = dao.create_task(user_id, "Call John")
        second = dao.create_task(user_id, "Email Jane")
        third = dao.create_task(user_id, "Send quote")
        index("TASK", first, user_id, [1.0, 0.0], age_days=0)
        index("TASK", second, user_id, [1.0, 0.0], age_days=1)
        index("TASK", third, user_id, [1.0, 0.0], age_days=2)
        dao.delete_task(user_id, first.id)

        engine = RetrievalEngine(provider=FixedQueryProvider([1.0, 0.0]))
        results = engine.search("follow up", user_id, top_k=2)

        assert [r.source_id for r in results] == [second.id, third.id]

    def test_dimension_mismatch_is_ignored(self, user_id):
        good = dao.create_company(user_id, "Acme Corp")
        odd = dao.create_company(user_id, "Acme Labs")
        index("COMPANY", good, user_id, [1.0, 0.0])
        index("COMPANY", odd, user_id, [1.0, 0.0, 0.0])

        engine = RetrievalEngine(provider=FixedQueryProvider([1.0, 0.0]))
        assert [r.source_id for r in engine.search("acme", user_id)] == [good.id]

    def test_source_type_filter(self, user_id):
        company = dao.create_company(user_id, "Acme Corp")
        deal = dao.create_deal(user_id, "Acme Renewal")
        index("COMPANY", company, user_id, [1.0, 0.0])
        index("DEAL", deal, user_id, [1.0, 0.0])

        engine = RetrievalEngine(provider=FixedQueryProvider([1.0, 0.0]))
        results = engine.search("acme", user_id, source_types=["deal"])

        assert [r.source_type for r in results] == ["DEAL"]

    def test_only_unknown_source_types_returns_nothing(self, user_id):
        company = dao.create_company(user_id, "Acme Corp")
        index("COMPANY", company, user_id, [1.0, 0.0])

        engine = RetrievalEngine(provider=FixedQueryProvider([1.0, 0.0]))
        assert engine.search("acme", user_id, source_types=["INVOICE"]) == []

    def test_result_carries_live_entity(self, user_id):
        deal = dao.create_deal(user_id, "Acme Renewal", amount_cents=150000, stage="PROPOSAL")
        index("DEAL", deal, user_id, [1.0, 0.0])

        engine = RetrievalEngine(provider=FixedQueryProvider([1.0, 0.0]))
        result = engine.search("acme", user_id)[0]

        assert result.id == f"deal-{deal.id}"
        assert result.entity.title == "Acme Renewal"
        assert result.entity.subtitle == "PROPOSAL - $1500"
        assert result.entity.url == f"/deals/{deal.id}"


class TestKeywordFallback:

    def test_no_provider_uses_keywords(self, user_id, other_user_id):
        company = dao.create_company(user_id, "Acme Corp")
        deal = dao.create_deal(user_id, "Acme Renewal", stage="NEGOTIATION")
        dao.create_company(other_user_id, "Acme Rival")
        metrics = Mock()

        engine = RetrievalEngine(provider=None, metrics=metrics)
        results = engine.search("acme deals", user_id)

        assert {r.source_id for r in results} == {company.id, deal.id}
        assert all(r.similarity == 0.7 for r in results)
        contents = {r.content_text for r in results}
        assert "Company: Acme Corp" in contents
        assert "Deal: Acme Renewal - NEGOTIATION" in contents
        metrics.track_search.assert_called_once()
        assert metrics.track_search.call_args[0][1] == "keyword"

    def test_unavailable_provider_uses_keywords(self, user_id):
        dao.create_contact(user_id, "John", "Smith", email="john@acme.example")
        engine = RetrievalEngine(provider=FixedQueryProvider([1.0, 0.0], available=False))

        results = engine.search("john", user_id)

        assert [r.content_text for r in results] == ["Contact: John Smith"]

    def test_failing_provider_uses_keywords(self, user_id):
        provider = Mock(spec=IEmbeddingProvider)
        provider.is_available.return_value = True
        provider.embed_text.side_effect = ConnectionError("model server unreachable")
        dao.create_note(user_id, "Acme wants a discount")

        results = RetrievalEngine(provider=provider).search("discount", user_id)

        assert [r.source_type for r in results] == ["NOTE"]

    def test_short_terms_are_ignored(self, user_id):
        dao.create_company(user_id, "Ab")
        assert RetrievalEngine(provider=None).search("ab an", user_id) == []

    def test_keyword_results_are_capped(self, user_id):
        for i in range(5):
            dao.create_task(user_id, f"Acme follow-up {i}")

        results = RetrievalEngine(provider=None).search("acme", user_id, top_k=3)
        assert len(results) == 3


class TestHelpers:

    def test_context_text_and_citations(self, user_id):
        company = dao.create_company(user_id, "Acme Corp")
        entity = entity_details_from_record(company)
        results = [
            RetrievalResult(id=f"company-{company.id}", source_type="COMPANY", source_id=company.id,
                            content_text="Company: Acme Corp", similarity=0.9, entity=entity),
            RetrievalResult(id="task-t1", source_type="TASK", source_id="t1",
                            content_text="Task: Call John", similarity=0.8, entity=None),
        ]

        context = build_retrieval_context(results)

        assert context.context_text == f"[COMPANY:{company.id}] Company: Acme Corp\n\n[TASK:t1] Task: Call John"
        assert context.citations == [entity]

    def test_empty_context(self):
        context = build_retrieval_context([])
        assert context.context_text == ""
        assert context.citations == []

    def test_note_links_to_related_record(self, user_id):
        company = dao.create_company(user_id, "Acme Corp")
        note = dao.create_note(user_id, "x" * 150, related_type="COMPANY", related_id=company.id)

        details = entity_details_from_record(note)

        assert details.url == f"/companies/{company.id}"
        assert details.title == "x" * 100 + "..."

    def test_unrelated_note_has_no_link(self, user_id):
        note = dao.create_note(user_id, "Loose thought")
        assert entity_details_from_record(note).url == "#"

    def test_contact_subtitle_prefers_company(self, user_id):
        company = dao.create_company(user_id, "Acme Corp")
        contact = dao.create_contact(user_id, "John", "Smith", title="CTO", company_id=company.id)

        details = RetrievalEngine(provider=None).get_entity_details("CONTACT", contact.id, user_id)

        assert details.title == "John Smith"
        assert details.subtitle == "Acme Corp"

    def test_entity_details_are_owner_scoped(self, user_id, other_user_id):
        company = dao.create_company(user_id, "Acme Corp")
        engine = RetrievalEngine(provider=None)
        assert engine.get_entity_details("COMPANY", company.id, other_user_id) is None

    def test_to_dict_is_camel_case(self, user_id):
        company = dao.create_company(user_id, "Acme Corp")
        result = RetrievalResult(id=f"company-{company.id}", source_type="COMPANY", source_id=company.id,
                                 content_text="Company: Acme Corp", similarity=0.123456,
                                 entity=entity_details_from_record(company))

        data = result.to_dict()

        assert data["sourceType"] == "COMPANY"
        assert data["contentText"] == "Company: Acme Corp"
        assert data["similarity"] == 0.1235
        assert data["entity"]["title"] == "Acme Corp"
