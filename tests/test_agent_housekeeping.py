"""Tests for token budgets, the thinking sub-record and memory retention."""

from humanagent.crud import crud
from humanagent.models.enums import AgentStatus
from humanagent.models.enums import MemoryType
from humanagent.models.enums import ThoughtType
from humanagent.models.models import AgentMemory
from humanagent.services.agent_thinking import cleanup_thoughts
from humanagent.services.agent_thinking import record_thought
from humanagent.services.agent_thinking import set_goal
from humanagent.services.agent_thinking import thinking_active
from humanagent.services.agent_thinking import toggle_thinking_pause
from humanagent.services.memory import compress_agent_memories
from humanagent.services.memory import compress_memories
from humanagent.services.quota import check_token_budget
from humanagent.services.quota import record_token_usage
from humanagent.services.quota import reset_monthly_usage


class TestTokenBudget:
    def test_zero_budget_is_unlimited(self, make_agent):
        status = check_token_budget(make_agent(tokens_used_this_month=10**9))
        assert not status.exhausted
        assert status.remaining is None

    def test_usage_increments_agent_and_owner(self, db_session, owner, make_agent):
        agent = make_agent(monthly_token_budget=1000)

        status = record_token_usage(db_session, agent, 250, model="gpt-4o-mini")
        record_token_usage(db_session, agent, 0)

        assert (status.used, status.remaining) == (250, 750)
        db_session.refresh(owner)
        assert owner.tokens_used_this_month == 250
        assert agent.status == AgentStatus.IDLE

    def test_reaching_budget_pauses_agent(self, db_session, make_agent):
        agent = make_agent(monthly_token_budget=100, tokens_used_this_month=90)

        status = record_token_usage(db_session, agent, 10)

        assert status.exhausted
        assert agent.status == AgentStatus.BUDGET_EXHAUSTED
        assert "100/100" in agent.last_error

    def test_monthly_reset(self, db_session, owner, make_agent):
        paused = make_agent(monthly_token_budget=100, tokens_used_this_month=100, status=AgentStatus.BUDGET_EXHAUSTED)
        busy = make_agent(tokens_used_this_month=40)
        owner.tokens_used_this_month = 140
        db_session.commit()

        assert reset_monthly_usage(db_session) == 1

        assert paused.status == AgentStatus.IDLE
        assert paused.tokens_used_this_month == 0
        assert busy.tokens_used_this_month == 0
        assert owner.tokens_used_this_month == 0


class TestThinking:
    def test_paused_agent_records_no_thoughts(self, db_session, sample_agent):
        assert toggle_thinking_pause(db_session, sample_agent) is True
        assert not thinking_active(sample_agent)

        assert record_thought(db_session, sample_agent, ThoughtType.OBSERVATION, "Inbox is empty") is None
        assert crud.list_recent_thoughts(db_session, sample_agent.id) == []

        assert toggle_thinking_pause(db_session, sample_agent) is False
        thought = record_thought(db_session, sample_agent, ThoughtType.OBSERVATION, "  Inbox is empty  ")
        assert thought.content == "Inbox is empty"
        assert sample_agent.last_thought == "Inbox is empty"
        assert sample_agent.last_thought_at is not None

    def test_set_goal(self, db_session, sample_agent):
        thought = set_goal(db_session, sample_agent, "  Ship the Q3 report ")

        assert sample_agent.current_goal == "Ship the Q3 report"
        assert thought.type == ThoughtType.GOAL_UPDATE
        assert thought.content == "New goal: Ship the Q3 report"

        cleared = set_goal(db_session, sample_agent, "")
        assert sample_agent.current_goal is None
        assert cleared.content == "Goal cleared"

    def test_cleanup_keeps_newest_per_agent(self, db_session, make_agent):
        first, second = make_agent(), make_agent()
        for agent in (first, second):
            for i in range(4):
                crud.create_thought(db_session, agent=agent, type=ThoughtType.REASONING, content=f"step {i}")

        assert cleanup_thoughts(db_session, keep=1) == 6

        for agent in (first, second):
            assert [t.content for t in crud.list_recent_thoughts(db_session, agent.id)] == ["step 3"]


class TestMemoryCompression:
    def _remember(self, db_session, agent, memory_type, content):
        return crud.append_memory(
            db_session, agent_id=agent.id, owner_id=agent.owner_id, memory_type=memory_type, content=content
        )

    def test_old_detailed_memories_are_folded(self, db_session, sample_agent):
        self._remember(db_session, sample_agent, MemoryType.CONVERSATION, "Talked to finance about Q2")
        summary = self._remember(db_session, sample_agent, MemoryType.RUN_SUMMARY, "Closed the Q2 books")
        self._remember(db_session, sample_agent, MemoryType.A2A, "Bob shared the revenue sheet")
        recent = [
            self._remember(db_session, sample_agent, MemoryType.TOOL_RESULT, "word_count: 812"),
            self._remember(db_session, sample_agent, MemoryType.CONVERSATION, "Drafted the investor note"),
        ]

        folded = compress_agent_memories(db_session, sample_agent.id, sample_agent.owner_id, keep=2)

        assert folded.memory_type == MemoryType.RUN_SUMMARY
        assert folded.source == "compression"
        assert folded.meta == {"folded": 2}
        assert folded.content.startswith("Summary of 2 earlier memories:")
        assert "Talked to finance about Q2" in folded.content
        assert "Bob shared the revenue sheet" in folded.content

        remaining = {m.id for m in db_session.query(AgentMemory).all()}
        assert remaining == {summary.id, folded.id} | {m.id for m in recent}

    def test_nothing_to_fold(self, db_session, sample_agent):
        self._remember(db_session, sample_agent, MemoryType.CONVERSATION, "Only memory")
        assert compress_agent_memories(db_session, sample_agent.id, sample_agent.owner_id, keep=5) is None

    def test_compress_all_agents(self, db_session, make_agent):
        busy, quiet = make_agent(), make_agent()
        for i in range(3):
            self._remember(db_session, busy, MemoryType.CONVERSATION, f"conversation {i}")
        self._remember(db_session, quiet, MemoryType.CONVERSATION, "hello")

        assert compress_memories(db_session, keep=1) == 1
