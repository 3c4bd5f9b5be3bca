"""
Tests for the Research Agent

Heuristic and model-proposed plans, concurrent step execution, source
collection with diversification, and the shared grounding safeguards.
"""

import asyncio
import json
import re

import pytest
from unittest.mock import MagicMock


PARTY_QUESTION = "Was steht im Wahlprogramm zum Klimaschutz?"


class FakeDocumentBackend:
    def __init__(self, rows=None):
        self.rows = rows or []
        self.calls = []

    async def search(self, query, collection, limit, weights, threshold, filters):
        self.calls.append({"query": query, "limit": limit})
        return {"results": list(self.rows), "collection": collection}


class FakeWebBackend:
    def __init__(self, results=None, delay=0.0):
        self.results = results or []
        self.delay = delay
        self.calls = []

    async def search(self, query, max_results, language, category):
        self.calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        return {"results": self.results[:max_results], "suggestions": ["Klimaschutz Leipzig"]}


class FakeLLM:
    """Plans with a canned JSON answer, drafts by quoting snippets."""

    is_available = True

    def __init__(self, plan=None, order=(1, 2), claims=None):
        self.plan = plan
        self.order = order
        self.claims = claims
        self.prompts = []
        self.systems = []

    def generate(self, prompt, max_tokens=1024, temperature=0.0):
        return self.plan

    def complete(self, system, messages, max_tokens=1024, temperature=0.2):
        prompt = messages[0]["content"]
        self.systems.append(system)
        self.prompts.append(prompt)
        if self.claims:
            return " ".join(f"{claim} [{ref_id}]." for claim, ref_id in zip(self.claims, self.order))
        snippets = dict(re.findall(r"^\[(\d+)\][^\n]*\n([^\n]+)", prompt, re.MULTILINE))
        return " ".join(f"{snippets[str(ref_id)]} [{ref_id}]." for ref_id in self.order)


DOC_ROWS = [
    {"id": f"wp-{i}", "text": text, "score": score, "title": f"Wahlprogramm Kapitel {i}"}
    for i, (text, score) in enumerate([
        ("Wir wollen Leipzig bis 2035 klimaneutral machen", 0.82),
        ("Jede neue Schule bekommt eine Solaranlage auf dem Dach", 0.74),
        ("Der Nahverkehr wird bis 2030 im Zehnminutentakt ausgebaut", 0.66),
        ("Stadtbäume werden bei Bauvorhaben grundsätzlich erhalten", 0.58),
        ("Ein kommunaler Klimafonds fördert Projekte in den Stadtteilen", 0.51),
    ])
]

WEB_RESULTS = [
    {"title": f"Meldung {i}", "url": f"https://a.de/artikel-{i}", "content": f"Bericht Nummer {i} zur Inflation"}
    for i in range(5)
] + [{"title": "Andere Quelle", "url": "https://b.de/inflation", "content": "Statistik zur Teuerung"}]


def make_agent(document_backend=None, web_backend=None, llm=None, **kwargs):
    from evidence.retriever.adapters import DocumentSearchAdapter, WebSearchAdapter
    from evidence.retriever.coordinator import RetrievalCoordinator
    from evidence.retriever.research import ResearchAgent

    adapters = {}
    if document_backend is not None:
        adapters["programme"] = DocumentSearchAdapter("programme", document_backend, collection="programme")
    if web_backend is not None:
        adapters["web"] = WebSearchAdapter("web", web_backend)
    return ResearchAgent(RetrievalCoordinator(adapters), llm_client=llm, **kwargs)


def ref_count(prompt):
    return len(re.findall(r"^\[\d+\]", prompt, re.MULTILINE))


class TestHeuristicPlan:
    def test_party_question_searches_documents(self):
        from evidence.common.schemas import SynthesisStrategy, Tool
        from evidence.retriever.research import plan_research

        plan = plan_research(PARTY_QUESTION)

        assert [(s.tool, s.priority) for s in plan.steps] == [(Tool.DOCUMENT_SEARCH, 2)]
        assert plan.strategy == SynthesisStrategy.POLICY

    def test_current_events_go_to_the_web_first(self):
        from evidence.common.schemas import Tool
        from evidence.retriever.research import plan_research

        plan = plan_research("Was gibt es heute Neues von der Partei?")

        assert [(s.tool, s.priority) for s in plan.steps] == [(Tool.WEB_SEARCH, 1)]

    def test_unclassified_question_uses_web(self):
        from evidence.common.schemas import SynthesisStrategy, Tool
        from evidence.retriever.research import plan_research

        plan = plan_research("Wie hoch ist die Inflation?")

        assert [(s.tool, s.priority) for s in plan.steps] == [(Tool.WEB_SEARCH, 3)]
        assert plan.strategy == SynthesisStrategy.FACTUAL

    def test_local_party_question_adds_web_step(self):
        from evidence.common.schemas import Tool
        from evidence.retriever.research import plan_research

        plan = plan_research("Was sagt das Programm zur Stadt?")

        assert [s.tool for s in plan.steps] == [Tool.DOCUMENT_SEARCH, Tool.WEB_SEARCH]
        assert all(s.query == "Was sagt das Programm zur Stadt?" for s in plan.steps)

    def test_thorough_plan_covers_every_tool(self):
        from evidence.common.schemas import Tool
        from evidence.retriever.research import plan_research

        plan = plan_research(PARTY_QUESTION, depth="thorough")

        assert [s.tool for s in plan.steps] == [Tool.DOCUMENT_SEARCH, Tool.WEB_SEARCH, Tool.PRIOR_RESEARCH]
        assert [s.priority for s in plan.steps] == sorted(s.priority for s in plan.steps)
        assert len(plan.steps) <= 5

    def test_person_question_is_biographical(self):
        from evidence.common.schemas import SynthesisStrategy
        from evidence.retriever.research import plan_research

        plan = plan_research("Wer ist die Abgeordnete aus dem Wahlkreis?")

        assert plan.strategy == SynthesisStrategy.BIOGRAPHICAL

    def test_unavailable_tool_replaced_by_available_one(self):
        from evidence.common.schemas import Tool
        from evidence.retriever.research import plan_research

        plan = plan_research(PARTY_QUESTION, available_tools=[Tool.WEB_SEARCH])

        assert [s.tool for s in plan.steps] == [Tool.WEB_SEARCH]
        assert plan.steps[0].rationale == "Only available source"

    def test_no_tools_gives_empty_plan(self):
        from evidence.retriever.research import plan_research
        assert plan_research(PARTY_QUESTION, available_tools=[]).steps == ()

    def test_unknown_depth_rejected(self):
        from evidence.common.config import ConfigurationError
        from evidence.retriever.research import plan_research
        with pytest.raises(ConfigurationError):
            plan_research(PARTY_QUESTION, depth="deep")


class TestModelPlan:
    @pytest.mark.asyncio
    async def test_valid_plan_used(self):
        from evidence.common.schemas import SynthesisStrategy, Tool

        llm = FakeLLM(plan=json.dumps({
            "steps": [
                {"tool": "document_search", "query": "Wahlprogramm Klimaschutz", "priority": 2},
                {"tool": "web_search", "query": "Klimaschutz Leipzig aktuell", "priority": 1},
            ],
            "strategy": "policy_overview",
        }))
        agent = make_agent(FakeDocumentBackend(), FakeWebBackend(), llm=llm, llm_planning=True)

        plan = await agent.plan(PARTY_QUESTION)

        assert [s.tool for s in plan.steps] == [Tool.WEB_SEARCH, Tool.DOCUMENT_SEARCH]
        assert plan.steps[0].query == "Klimaschutz Leipzig aktuell"
        assert plan.strategy == SynthesisStrategy.POLICY

    @pytest.mark.asyncio
    async def test_plan_capped_at_depth(self):
        steps = [{"tool": "web_search", "query": f"Suche {i}", "priority": 1 + i % 5} for i in range(5)]
        llm = FakeLLM(plan=json.dumps({"steps": steps}))
        agent = make_agent(web_backend=FakeWebBackend(), llm=llm, llm_planning=True)

        plan = await agent.plan("Wie hoch ist die Inflation?")

        assert len(plan.steps) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        "kein JSON",
        '{"steps": [{"tool": "telefon", "query": "x"}]}',
        '{"steps": [], "notes": "zusätzliches Feld"}',
    ])
    async def test_invalid_plan_falls_back_to_heuristic(self, raw):
        from evidence.common.schemas import Tool

        agent = make_agent(FakeDocumentBackend(), FakeWebBackend(), llm=FakeLLM(plan=raw), llm_planning=True)

        plan = await agent.plan(PARTY_QUESTION)

        assert [s.tool for s in plan.steps] == [Tool.DOCUMENT_SEARCH]

    @pytest.mark.asyncio
    async def test_steps_for_missing_sources_dropped(self, caplog):
        import logging
        from evidence.common.schemas import Tool

        llm = FakeLLM(plan=json.dumps({"steps": [{"tool": "prior_research", "query": "Klimaschutz"}]}))
        agent = make_agent(FakeDocumentBackend(), llm=llm, llm_planning=True)

        with caplog.at_level(logging.INFO, logger="evidence.retriever.research"):
            plan = await agent.plan(PARTY_QUESTION)

        assert [s.tool for s in plan.steps] == [Tool.DOCUMENT_SEARCH]
        assert "no usable steps" in caplog.text

    @pytest.mark.asyncio
    async def test_planning_error_falls_back(self):
        from evidence.common.schemas import Tool

        llm = MagicMock()
        llm.is_available = True
        llm.generate.side_effect = RuntimeError("quota exceeded")
        agent = make_agent(FakeDocumentBackend(), llm=llm, llm_planning=True)

        plan = await agent.plan(PARTY_QUESTION)

        assert [s.tool for s in plan.steps] == [Tool.DOCUMENT_SEARCH]

    @pytest.mark.asyncio
    async def test_model_planning_off_by_default(self):
        llm = MagicMock()
        llm.is_available = True
        agent = make_agent(FakeDocumentBackend(), llm=llm)

        await agent.plan(PARTY_QUESTION)

        llm.generate.assert_not_called()


class TestResearch:
    @pytest.mark.asyncio
    async def test_quick_party_research(self):
        documents = FakeDocumentBackend(rows=DOC_ROWS)
        web = FakeWebBackend(results=WEB_RESULTS)
        llm = FakeLLM(order=(1, 2, 3))

        response = await make_agent(documents, web, llm=llm).research(PARTY_QUESTION)

        assert len(documents.calls) == 1
        assert documents.calls[0]["limit"] == 20
        assert web.calls == []
        assert response.metadata["strategy"] == "policy_overview"
        assert response.metadata["plan"][0]["tool"] == "document_search"
        assert "Beschlüsse" in llm.systems[0]
        assert [c.id for c in response.citations] == [1, 2, 3]
        assert response.citations[0].snippet == "Wir wollen Leipzig bis 2035 klimaneutral machen"
        assert response.confidence_label == "high"
        assert [entry.split(":")[0] for entry in response.trace] == [
            "planning", "retrieving", "deduping", "referencing",
            "drafting", "renumbering", "validating", "done",
        ]

    @pytest.mark.asyncio
    async def test_thorough_research_runs_steps_concurrently(self):
        documents = FakeDocumentBackend(rows=DOC_ROWS)
        web = FakeWebBackend(results=WEB_RESULTS)

        response = await make_agent(documents, web).research(PARTY_QUESTION, depth="thorough")

        assert documents.calls[0]["limit"] == 30
        assert web.calls == [PARTY_QUESTION]
        assert {s.source_id for s in response.search_steps} == {"programme", "web"}
        assert "Klimaschutz Leipzig" in response.follow_up_questions

    @pytest.mark.asyncio
    async def test_max_sources_limits_references(self):
        llm = FakeLLM(order=(1, 2))

        response = await make_agent(FakeDocumentBackend(rows=DOC_ROWS), llm=llm).research(
            PARTY_QUESTION, max_sources=2,
        )

        assert ref_count(llm.prompts[0]) == 2
        assert len(response.citations) == 2

    @pytest.mark.asyncio
    async def test_one_domain_cannot_dominate(self):
        llm = FakeLLM(order=(1,))

        await make_agent(web_backend=FakeWebBackend(results=WEB_RESULTS), llm=llm).research(
            "Wie hoch ist die Inflation?",
        )

        prompt = llm.prompts[0]
        assert ref_count(prompt) == 3
        assert prompt.count("(a.de)") == 2
        assert "(b.de)" in prompt

    @pytest.mark.asyncio
    async def test_no_evidence(self):
        response = await make_agent(FakeDocumentBackend(), FakeWebBackend()).research(PARTY_QUESTION)

        assert response.text == "Zu dieser Anfrage konnten leider keine relevanten Informationen gefunden werden."
        assert response.citations == []
        assert "no_evidence" in response.trace

    @pytest.mark.asyncio
    async def test_ungrounded_draft_replaced_by_template(self, caplog):
        import logging

        llm = FakeLLM(
            order=(1, 2, 3),
            claims=["Der Mond besteht aus Käse", "Pinguine leben am Nordpol", "Die Erde ist eine Scheibe"],
        )
        with caplog.at_level(logging.WARNING, logger="evidence.retriever.research"):
            response = await make_agent(FakeDocumentBackend(rows=DOC_ROWS), llm=llm).research(PARTY_QUESTION)

        assert response.metadata["fallback"]
        assert "Käse" not in response.text
        assert response.text.startswith("Wir wollen Leipzig bis 2035 klimaneutral machen [1]")
        assert "using template synthesis" in caplog.text

    @pytest.mark.asyncio
    async def test_fabricated_reference_ids_replaced_by_template(self, caplog):
        import logging

        llm = FakeLLM(
            order=(7, 8, 9),
            claims=["Die Partei fordert ein Tempolimit", "Kohleausstieg bis 2030", "Neue Windräder in Sachsen"],
        )
        with caplog.at_level(logging.WARNING, logger="evidence.retriever.research"):
            response = await make_agent(FakeDocumentBackend(rows=DOC_ROWS[:3]), llm=llm).research(PARTY_QUESTION)

        assert response.metadata["fallback"]
        assert "Tempolimit" not in response.text
        assert response.text.startswith("Wir wollen Leipzig bis 2035 klimaneutral machen [1]")
        assert len(response.citations) == 2
        assert any(entry.startswith("fallback") for entry in response.trace)
        assert "3 ungrounded citation(s) removed" in caplog.text

    @pytest.mark.asyncio
    async def test_use_llm_false(self):
        llm = FakeLLM()

        response = await make_agent(FakeDocumentBackend(rows=DOC_ROWS), llm=llm).research(
            PARTY_QUESTION, use_llm=False,
        )

        assert llm.prompts == []
        assert response.citations

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"question": PARTY_QUESTION, "max_sources": 0},
        {"question": ""},
        {"question": PARTY_QUESTION, "depth": "deep"},
    ])
    async def test_configuration_errors(self, kwargs):
        from evidence.common.config import ConfigurationError

        documents = FakeDocumentBackend(rows=DOC_ROWS)
        with pytest.raises(ConfigurationError):
            await make_agent(documents).research(**kwargs)
        assert documents.calls == []

    def test_from_config(self):
        from evidence.common.config import EvidenceConfig
        from evidence.retriever.coordinator import RetrievalCoordinator
        from evidence.retriever.adapters import DocumentSearchAdapter
        from evidence.retriever.research import ResearchAgent

        config = EvidenceConfig()
        coordinator = RetrievalCoordinator({"programme": DocumentSearchAdapter("programme", FakeDocumentBackend())})
        agent = ResearchAgent.from_config(config, coordinator)

        assert agent.default_max_sources == config.retriever.max_sources
        assert agent.max_per_domain == config.retriever.max_per_domain
        assert not agent.llm_planning
