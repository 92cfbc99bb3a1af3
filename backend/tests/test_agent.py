# backend/tests/test_agent.py
import asyncio
import json
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from study_app.agent import server
from study_app.agent.configuration import ensure_configuration
from study_app.agent.dq_pass import (
    EXCEEDED_TEXT,
    INVALID_JSON_TEXT,
    INVALID_TOOL_CALLS_TEXT,
    MALFORMED_TEXT,
    NOT_EVALUATED_TEXT,
    DataQualityPass,
)
from study_app.agent.graph import AgentGraph, build_system_prompt
from study_app.agent.messages import AssistantMessage, ToolCall, ToolMessage, UserMessage, normalize_message
from study_app.agent.tools import DQ_TOOL_SPECS, MAIN_TOOL_SPECS
from study_app.models.agent_thread import AgentThread
from study_app.models.audit import ThreadDataQualityLog

MAIN_SQL = "SELECT year, value FROM main.population WHERE country = 'DE'"


class FakeGateway:
    """按顺序返回预设回复的LLM网关"""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def get_completion(self, system_prompt, messages, tools=None, model=None, **kwargs):
        self.calls.append({"system_prompt": system_prompt, "messages": list(messages), "tools": tools, "model": model})
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return reply


class RecordingDQPass:
    def __init__(self):
        self.calls = []

    async def run(self, messages, turn_start=0, configuration=None):
        self.calls.append({"messages": list(messages), "turn_start": turn_start, "configuration": configuration})
        return {}


def sql_call(sql, call_id="call-1"):
    return ToolCall(id=call_id, name="sql_query", args={"sql": sql})


def answered_turn(*sqls):
    """一个包含主助手SQL调用和最终回答的用户回合"""
    messages = [UserMessage(content="How did the population of Germany develop?")]
    for index, sql in enumerate(sqls):
        call = sql_call(sql, call_id=f"main-{index}")
        messages.append(AssistantMessage(tool_calls=[call]))
        messages.append(ToolMessage(content='{"ok": true}', tool_call_id=call.id, name="sql_query"))
    messages.append(AssistantMessage(content="It grew slightly."))
    return messages


@pytest.fixture()
def configuration():
    return ensure_configuration({"configurable": {"maxToolRounds": 2, "dqMaxSqlCalls": 2}}, thread_id="lg-1")


@pytest.fixture()
def fixed_schema():
    with patch("study_app.agent.dq_pass.get_schema_summary", return_value="- main.population (year:INTEGER)"), \
            patch("study_app.agent.graph.get_schema_summary", return_value="- main.population (year:INTEGER)"):
        yield


def _logs(db):
    db.expire_all()
    return db.query(ThreadDataQualityLog).all()


class TestDataQualityPass:
    """TIMELINESS影子检查：每个回合恰好一行审计记录"""

    def test_turn_without_sql_is_not_evaluated(self, db, session_factory, configuration, fixed_schema):
        gateway = FakeGateway([AssistantMessage(content="{}")])
        dq = DataQualityPass(gateway=gateway, session_factory=session_factory)

        indicators = asyncio.run(dq.run(answered_turn(), configuration=configuration))

        assert indicators == {"TIMELINESS": {"status": "NOT_EVALUATED", "text": NOT_EVALUATED_TEXT}}
        assert gateway.calls == []
        logs = _logs(db)
        assert len(logs) == 1
        assert logs[0].lang_graph_thread_id == "lg-1"
        assert logs[0].used_tables == []
        assert logs[0].main_sql is None
        assert logs[0].dq_sql is None

    def test_only_current_turn_sql_counts(self, db, session_factory, configuration, fixed_schema):
        history = answered_turn(MAIN_SQL)
        messages = history + answered_turn()
        dq = DataQualityPass(gateway=FakeGateway([AssistantMessage(content="{}")]), session_factory=session_factory)

        indicators = asyncio.run(dq.run(messages, turn_start=len(history), configuration=configuration))

        assert indicators["TIMELINESS"]["status"] == "NOT_EVALUATED"

    def test_valid_assessment_is_persisted(self, db, session_factory, configuration, fixed_schema):
        dq_sql = "SELECT max(year) FROM main.population"
        verdict = {"TIMELINESS": {"status": "OK", "text": "Data is current up to 2023."}}
        gateway = FakeGateway([
            AssistantMessage(tool_calls=[sql_call(dq_sql, call_id="dq-1")]),
            AssistantMessage(content=json.dumps(verdict)),
        ])
        executed = []

        def run_sql(sql):
            executed.append(sql)
            return '{"ok": true, "rows": [{"max": 2023}]}'

        dq = DataQualityPass(gateway=gateway, session_factory=session_factory, run_sql=run_sql)
        indicators = asyncio.run(dq.run(answered_turn(MAIN_SQL), configuration=configuration))

        assert indicators == verdict
        assert executed == [dq_sql]
        assert all(call["tools"] == DQ_TOOL_SPECS for call in gateway.calls)

        dq_input = json.loads(gateway.calls[0]["messages"][0].content)
        assert dq_input["main_sql_used"] == MAIN_SQL
        assert dq_input["used_tables"] == ["main.population"]
        assert dq_input["main_assistant_answer"] == "It grew slightly."

        tool_reply = gateway.calls[1]["messages"][-1]
        assert isinstance(tool_reply, ToolMessage)
        assert tool_reply.tool_call_id == "dq-1"

        logs = _logs(db)
        assert len(logs) == 1
        assert logs[0].indicators == verdict
        assert logs[0].used_tables == ["main.population"]
        assert logs[0].main_sql == MAIN_SQL
        assert logs[0].dq_sql == dq_sql

    def test_main_sql_is_the_last_query(self, db, session_factory, configuration, fixed_schema):
        other = "SELECT * FROM main.energy_share"
        dq = DataQualityPass(
            gateway=FakeGateway([AssistantMessage(content='{"TIMELINESS": {"status": "OK", "text": ""}}')]),
            session_factory=session_factory,
        )

        asyncio.run(dq.run(answered_turn(MAIN_SQL, other), configuration=configuration))

        log = _logs(db)[0]
        assert log.main_sql == other
        assert log.used_tables == ["main.energy_share", "main.population"]

    @pytest.mark.parametrize("reply, text", [
        (AssistantMessage(tool_calls=[ToolCall(name="sql_query", args=None)]), MALFORMED_TEXT),
        (AssistantMessage(tool_calls=[ToolCall(name="sql_query", args={"sql": "  "})]), MALFORMED_TEXT),
        (AssistantMessage(tool_calls=[sql_call("SELECT 1", "a"), sql_call("SELECT 2", "b")]), INVALID_TOOL_CALLS_TEXT),
        (AssistantMessage(tool_calls=[ToolCall(name="get_dataset_schema", args={})]), INVALID_TOOL_CALLS_TEXT),
        (AssistantMessage(content="Looks fine to me."), INVALID_JSON_TEXT),
        (AssistantMessage(content='["not", "an", "object"]'), INVALID_JSON_TEXT),
    ])
    def test_bad_model_output_is_unknown(self, db, session_factory, configuration, fixed_schema, reply, text):
        dq = DataQualityPass(gateway=FakeGateway([reply]), session_factory=session_factory, run_sql=lambda sql: "{}")

        indicators = asyncio.run(dq.run(answered_turn(MAIN_SQL), configuration=configuration))

        assert indicators == {"TIMELINESS": {"status": "UNKNOWN", "text": text}}
        assert len(_logs(db)) == 1

    def test_sql_budget_is_enforced(self, db, session_factory, configuration, fixed_schema):
        gateway = FakeGateway([AssistantMessage(tool_calls=[sql_call("SELECT max(year) FROM main.population")])])
        executed = []
        dq = DataQualityPass(gateway=gateway, session_factory=session_factory, run_sql=executed.append)

        indicators = asyncio.run(dq.run(answered_turn(MAIN_SQL), configuration=configuration))

        assert indicators["TIMELINESS"] == {"status": "UNKNOWN", "text": EXCEEDED_TEXT}
        assert len(executed) == configuration.dq_max_sql_calls
        log = _logs(db)[0]
        assert log.dq_sql == "SELECT max(year) FROM main.population"

    def test_sql_error_is_fed_back_to_model(self, db, session_factory, configuration, fixed_schema):
        gateway = FakeGateway([
            AssistantMessage(tool_calls=[sql_call("SELECT nope FROM main.population", "dq-1")]),
            AssistantMessage(content='{"TIMELINESS": {"status": "UNKNOWN", "text": "query failed"}}'),
        ])

        def failing_sql(sql):
            raise RuntimeError("no such column: nope")

        dq = DataQualityPass(gateway=gateway, session_factory=session_factory, run_sql=failing_sql)
        asyncio.run(dq.run(answered_turn(MAIN_SQL), configuration=configuration))

        feedback = gateway.calls[1]["messages"][-1]
        assert feedback.content == "ERROR executing sql_query: no such column: nope"
        assert len(_logs(db)) == 1

    def test_gateway_failure_still_writes_one_row(self, db, session_factory, configuration, fixed_schema):
        class BrokenGateway:
            async def get_completion(self, *args, **kwargs):
                raise RuntimeError("upstream timeout")

        dq = DataQualityPass(gateway=BrokenGateway(), session_factory=session_factory)
        indicators = asyncio.run(dq.run(answered_turn(MAIN_SQL), configuration=configuration))

        assert indicators["TIMELINESS"]["status"] == "UNKNOWN"
        assert "upstream timeout" in indicators["TIMELINESS"]["text"]
        assert len(_logs(db)) == 1


class TestAgentGraph:
    """主助手回合：模型 → 工具 → 模型 → 数据质量检查"""

    def test_plain_answer(self, configuration, fixed_schema):
        gateway = FakeGateway([AssistantMessage(content="Hello!")])
        dq = RecordingDQPass()
        graph = AgentGraph(gateway=gateway, dq_pass=dq)

        messages = asyncio.run(graph.run_turn(configuration, [UserMessage(content="Hi")]))

        assert [m.type for m in messages] == ["human", "ai"]
        assert gateway.calls[0]["tools"] == MAIN_TOOL_SPECS
        assert "- main.population" in gateway.calls[0]["system_prompt"]
        assert dq.calls[0]["turn_start"] == 0
        assert dq.calls[0]["configuration"].thread_id == "lg-1"

    def test_tool_round_trip_on_checkpointed_history(self, configuration, fixed_schema):
        gateway = FakeGateway([
            AssistantMessage(content="earlier answer"),
            AssistantMessage(tool_calls=[sql_call(MAIN_SQL)]),
            AssistantMessage(content="It grew slightly."),
        ])
        dq = RecordingDQPass()
        graph = AgentGraph(gateway=gateway, dq_pass=dq)

        asyncio.run(graph.run_turn(configuration, [UserMessage(content="earlier")]))
        with patch("study_app.agent.graph.run_tool", return_value='{"ok": true}') as run_tool:
            messages = asyncio.run(graph.run_turn(configuration, [UserMessage(content="Germany?")]))

        run_tool.assert_called_once_with("sql_query", {"sql": MAIN_SQL})
        assert [m.type for m in messages] == ["human", "ai", "human", "ai", "tool", "ai"]
        assert messages[4].tool_call_id == "call-1"
        assert messages[-1].content == "It grew slightly."
        assert dq.calls[1]["turn_start"] == 2
        # 模型在第二回合看到了第一回合的历史
        assert [m.content for m in gateway.calls[1]["messages"][:2]] == ["earlier", "earlier answer"]

    def test_threads_are_isolated(self, fixed_schema):
        graph = AgentGraph(gateway=FakeGateway([AssistantMessage(content="ok")]), dq_pass=RecordingDQPass())

        asyncio.run(graph.run_turn(ensure_configuration(thread_id="lg-a"), [UserMessage(content="a")]))

        assert len(asyncio.run(graph.get_messages("lg-a"))) == 2
        assert asyncio.run(graph.get_messages("lg-b")) == []

    def test_tool_rounds_are_capped(self, configuration, fixed_schema):
        gateway = FakeGateway([AssistantMessage(content="partial", tool_calls=[sql_call(MAIN_SQL)])])
        graph = AgentGraph(gateway=gateway, dq_pass=RecordingDQPass())

        with patch("study_app.agent.graph.run_tool", return_value="{}"):
            messages = asyncio.run(graph.run_turn(configuration, [UserMessage(content="loop forever")]))

        assert len(gateway.calls) == configuration.max_tool_rounds + 1
        assert gateway.calls[-1]["tools"] is None
        assert isinstance(messages[-1], AssistantMessage)
        assert messages[-1].tool_calls == []
        assert sum(1 for m in messages if isinstance(m, ToolMessage)) == configuration.max_tool_rounds

    def test_each_turn_writes_one_audit_row(self, db, session_factory, configuration, fixed_schema):
        verdict = {"TIMELINESS": {"status": "OK", "text": "current"}}
        gateway = FakeGateway([
            AssistantMessage(tool_calls=[sql_call(MAIN_SQL)]),
            AssistantMessage(content="It grew slightly."),
            AssistantMessage(content=json.dumps(verdict)),
            AssistantMessage(content="You're welcome."),
        ])
        dq = DataQualityPass(gateway=gateway, session_factory=session_factory)
        graph = AgentGraph(gateway=gateway, dq_pass=dq)

        with patch("study_app.agent.graph.run_tool", return_value='{"ok": true}'):
            asyncio.run(graph.run_turn(configuration, [UserMessage(content="Germany?")]))
            messages = asyncio.run(graph.run_turn(configuration, [UserMessage(content="thanks")]))

        assert messages[-1].content == "You're welcome."
        logs = sorted(_logs(db), key=lambda log: log.id)
        assert [log.indicators["TIMELINESS"]["status"] for log in logs] == ["OK", "NOT_EVALUATED"]
        assert logs[0].main_sql == MAIN_SQL

    def test_system_prompt_placeholders(self):
        prompt = build_system_prompt('Time: {system_time}\n{dataset_schema}\nReply as {"a": 1}', "SCHEMA")
        assert "{system_time}" not in prompt
        assert "SCHEMA" in prompt
        assert '{"a": 1}' in prompt


class TestConfiguration:

    def test_defaults_and_overrides(self):
        configuration = ensure_configuration(
            {"configurable": {"model": "gpt-test", "maxToolRounds": 3}},
            thread_id="lg-9",
        )
        assert configuration.thread_id == "lg-9"
        assert configuration.model == "gpt-test"
        assert configuration.max_tool_rounds == 3
        assert "{dataset_schema}" in configuration.system_prompt_template


class TestMessageNormalization:

    def test_openai_style_tool_call(self):
        message = normalize_message({
            "role": "assistant",
            "content": None,
            "tool_calls": [{"id": "c1", "function": {"name": "sql_query", "arguments": '{"sql": "SELECT 1"}'}}],
        })
        assert isinstance(message, AssistantMessage)
        assert message.tool_calls[0].args == {"sql": "SELECT 1"}

    def test_unparseable_arguments_become_none(self):
        message = normalize_message({"type": "ai", "tool_calls": [{"name": "sql_query", "args": "{oops"}]})
        assert message.tool_calls[0].args is None

    def test_unknown_kind_is_rejected(self):
        with pytest.raises(ValueError):
            normalize_message({"type": "system", "content": "x"})


class EchoGateway:
    async def get_completion(self, system_prompt, messages, tools=None, model=None, **kwargs):
        return AssistantMessage(content=f"echo:{messages[-1].content}")


@pytest.fixture()
def agent_client(session_factory, fixed_schema):
    graph = AgentGraph(gateway=EchoGateway(), dq_pass=RecordingDQPass())
    server.app.dependency_overrides[server.get_session_factory] = lambda: session_factory
    server.app.dependency_overrides[server.get_agent_graph] = lambda: graph
    with TestClient(server.app) as test_client:
        yield test_client
    server.app.dependency_overrides.clear()


class TestAgentServer:
    """Agent运行时的线程接口"""

    def test_health(self, agent_client):
        assert agent_client.get("/ok").json() == {"ok": True}

    def test_create_and_read_thread(self, agent_client):
        created = agent_client.post("/threads", json={"thread_id": "lg-new", "metadata": {"task": 1}}).json()

        assert created["thread_id"] == "lg-new"
        assert created["metadata"] == {"task": 1}
        state = agent_client.get("/threads/lg-new/state").json()
        assert state == {"thread_id": "lg-new", "values": {"messages": []}}

    def test_create_twice_returns_same_thread(self, agent_client, db):
        first = agent_client.post("/threads", json={"thread_id": "lg-dup"}).json()
        second = agent_client.post("/threads", json={"thread_id": "lg-dup"}).json()

        assert first["created_at"] == second["created_at"]
        assert db.query(AgentThread).count() == 1

    def test_create_without_body_generates_id(self, agent_client):
        created = agent_client.post("/threads").json()
        assert len(created["thread_id"]) == 36

    def test_unknown_thread_state(self, agent_client):
        assert agent_client.get("/threads/missing/state").status_code == 404

    def test_run_checkpoints_messages(self, agent_client, db):
        response = agent_client.post(
            "/threads/lg-run/runs/wait",
            json={"input": {"messages": [{"role": "user", "content": "hi"}]}},
        )

        assert response.status_code == 200
        messages = response.json()["values"]["messages"]
        assert [m["type"] for m in messages] == ["human", "ai"]
        assert messages[1]["content"] == "echo:hi"

        second = agent_client.post(
            "/threads/lg-run/runs/wait",
            json={"input": {"messages": [{"type": "human", "content": "again"}]}},
        ).json()
        assert len(second["values"]["messages"]) == 4

        state = agent_client.get("/threads/lg-run/state").json()
        assert [m["content"] for m in state["values"]["messages"]] == ["hi", "echo:hi", "again", "echo:again"]
        db.expire_all()
        assert db.get(AgentThread, "lg-run") is not None

    @pytest.mark.parametrize("payload", [
        {"input": {"messages": []}},
        {"input": {"messages": [{"type": "system", "content": "x"}]}},
    ])
    def test_invalid_run_input(self, agent_client, db, payload):
        assert agent_client.post("/threads/lg-bad/runs/wait", json=payload).status_code == 400
        assert db.get(AgentThread, "lg-bad") is None
