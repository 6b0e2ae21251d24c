"""Tests for the prompt context bundle and the knowledge slice."""

from unittest.mock import patch

from humanagent.crud import crud
from humanagent.models.enums import MemoryType
from humanagent.models.enums import NodeType
from humanagent.models.enums import ThoughtType
from humanagent.services.context_builder import build_agent_context
from humanagent.services.context_builder import render_context
from humanagent.services.knowledge import MAX_NODES_LOADED
from humanagent.services.knowledge import load_relevant_knowledge


def _node(db_session, owner, title, **fields):
    return crud.create_knowledge_node(db_session, owner_id=owner.id, title=title, **fields)


def _link(db_session, owner, a, b):
    crud.link_knowledge_nodes(db_session, owner_id=owner.id, source_id=a.id, target_id=b.id)


class TestBuildAgentContext:
    def test_collects_every_section(self, db_session, owner, sample_agent, make_task):
        sample_agent.current_goal = "Grow the newsletter audience"
        db_session.commit()
        crud.create_thought(db_session, agent=sample_agent, type=ThoughtType.OBSERVATION, content="Open rate dipped")
        crud.append_memory(
            db_session,
            agent_id=sample_agent.id,
            owner_id=owner.id,
            memory_type=MemoryType.RUN_SUMMARY,
            content="Sent the March issue",
        )
        make_task("Draft newsletter subject lines")
        _node(db_session, owner, "Newsletter playbook", description="How we write issues")

        context = build_agent_context(db_session, sample_agent)

        assert context.current_goal == "Grow the newsletter audience"
        assert context.thoughts == ["[observation] Open rate dipped"]
        assert context.memories == ["Sent the March issue"]
        assert [t.description for t in context.pending_tasks] == ["Draft newsletter subject lines"]
        assert [k.title for k in context.knowledge] == ["Newsletter playbook"]

        rendered = render_context(context)
        assert "## Current Goal" in rendered
        assert "- Sent the March issue" in rendered
        assert "### Newsletter playbook (concept)" in rendered

    def test_failing_section_is_left_empty(self, db_session, sample_agent, make_task):
        make_task("Review hiring pipeline")
        crud.create_thought(db_session, agent=sample_agent, type=ThoughtType.REFLECTION, content="Still on track")

        with patch(
            "humanagent.services.context_builder.crud.list_recent_memories",
            side_effect=RuntimeError("memory store offline"),
        ):
            context = build_agent_context(db_session, sample_agent)

        assert context.memories == []
        assert context.thoughts == ["[reflection] Still on track"]
        assert len(context.pending_tasks) == 1

    def test_empty_context_renders_nothing(self, db_session, sample_agent):
        context = build_agent_context(db_session, sample_agent)
        assert render_context(context) == ""


class TestKnowledgeSlice:
    def test_match_expands_one_hop_and_moc(self, db_session, owner):
        pricing = _node(db_session, owner, "Pricing strategy", content="Tiered plans")
        competitors = _node(db_session, owner, "Competitor list")
        far = _node(db_session, owner, "Office plants")
        moc = _node(db_session, owner, "Go-to-market map", node_type=NodeType.MOC)
        _link(db_session, owner, pricing, competitors)
        _link(db_session, owner, competitors, far)
        _link(db_session, owner, moc, competitors)

        items = load_relevant_knowledge(db_session, owner_id=owner.id, query="pricing")

        by_title = {i.title: i for i in items}
        assert by_title["Pricing strategy"].relevance == "text_match"
        assert by_title["Pricing strategy"].content == "Tiered plans"
        assert by_title["Competitor list"].relevance == "graph_traversal"
        assert by_title["Competitor list"].content is None
        assert by_title["Go-to-market map"].relevance == "moc"
        assert "Office plants" not in by_title

    def test_slice_is_capped(self, db_session, owner):
        for i in range(15):
            _node(db_session, owner, f"Roadmap item {i}", tags=["roadmap"])

        items = load_relevant_knowledge(db_session, owner_id=owner.id, query="roadmap", max_nodes=20)

        assert len(items) == MAX_NODES_LOADED
        assert sum(1 for i in items if i.content is not None) == 3

    def test_private_nodes_of_other_agents_hidden(self, db_session, owner, make_agent):
        mine, theirs = make_agent(), make_agent()
        _node(db_session, owner, "Budget notes", agent_id=theirs.id)
        _node(db_session, owner, "Budget overview", agent_id=mine.id)

        items = load_relevant_knowledge(db_session, owner_id=owner.id, query="budget", agent_id=mine.id)

        assert [i.title for i in items] == ["Budget overview"]

    def test_no_terms_no_matches(self, db_session, owner):
        _node(db_session, owner, "Anything")
        assert load_relevant_knowledge(db_session, owner_id=owner.id, query="the and") == []
