"""
API 端点测试
"""
import time

import pytest
from fastapi.testclient import TestClient

from agentforge.api import app


EXECUTIONS = "/api/v1/executions"
WORKFLOWS = "/api/v1/workflows"


def _wait_for_status(client, execution_id, statuses, timeout: float = 5.0):
    """轮询执行详情直到进入指定状态"""
    deadline = time.monotonic() + timeout
    while True:
        data = client.get(f"{EXECUTIONS}/{execution_id}").json()
        if data["status"] in statuses:
            return data
        if time.monotonic() > deadline:
            raise AssertionError(f"Execution stuck in {data['status']}")
        time.sleep(0.02)


@pytest.fixture
def client(monkeypatch):
    """使用模拟模型提供方的测试客户端"""
    monkeypatch.setenv("AGENTFORGE_PROVIDER", "mock")
    monkeypatch.setenv("AGENTFORGE_MODEL", "mock-model")
    monkeypatch.delenv("AGENTFORGE_STRICT", raising=False)
    monkeypatch.delenv("AGENTFORGE_TARGET_ENV", raising=False)
    monkeypatch.delenv("AGENTFORGE_PROFILES", raising=False)
    with TestClient(app) as client:
        yield client


class TestRootAPI:
    """根路径与健康检查测试类"""

    def test_root(self, client):
        """测试根路径"""
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["name"] == "AgentForge API"

    def test_health(self, client):
        """测试健康检查"""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert all(data["checks"].values())
        assert data["cache"]["entries"] == 0

    def test_request_id_header(self, client):
        """测试响应带请求ID"""
        response = client.get("/", headers={"X-Request-ID": "req-1"})

        assert response.headers["X-Request-ID"] == "req-1"


class TestWorkflowAPI:
    """工作流 API 测试类"""

    def test_list_templates(self, client):
        """测试列出内置模板"""
        response = client.get(f"{WORKFLOWS}/templates")

        assert response.status_code == 200
        ids = [t["id"] for t in response.json()]
        assert ids == ["simple-linear", "with-review", "full-pipeline"]
        assert all(t["node_count"] > 0 for t in response.json())

    def test_get_template(self, client):
        """测试获取模板定义"""
        response = client.get(f"{WORKFLOWS}/templates/with-review")

        assert response.status_code == 200
        assert response.json()["id"] == "with-review"

    def test_get_unknown_template(self, client):
        """测试获取不存在的模板"""
        response = client.get(f"{WORKFLOWS}/templates/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "not_found"

    def test_validate_valid_graph(self, client, decision_workflow):
        """测试校验合法的图"""
        response = client.post(f"{WORKFLOWS}/validate", json={"definition": decision_workflow})

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["errors"] == []
        assert data["node_count"] == 5

    def test_validate_invalid_graph(self, client):
        """测试校验缺少结束节点的图"""
        definition = {
            "nodes": [{"id": "start", "type": "start"}],
            "edges": []
        }

        response = client.post(f"{WORKFLOWS}/validate", json={"definition": definition})

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is False
        assert data["errors"]


class TestExecutionAPI:
    """执行 API 测试类"""

    def test_start_template_execution(self, client):
        """测试以模板启动执行并运行到完成"""
        response = client.post(f"{EXECUTIONS}/", json={
            "input": "Todo app", "template": "simple-linear", "target": "nextjs"
        })

        assert response.status_code == 202
        started = response.json()
        assert started["workflow_id"] == "simple-linear"
        assert started["target"] == "nextjs"

        data = _wait_for_status(client, started["execution_id"], {"completed", "error"})
        assert data["status"] == "completed"
        assert data["visited_nodes"] == ["start", "plan", "code", "end"]
        assert data["node_outputs"]["plan"] == "OK"

        listed = client.get(f"{EXECUTIONS}/", params={"status": "completed"}).json()
        assert started["execution_id"] in [e["execution_id"] for e in listed]

    def test_source_must_be_exclusive(self, client, linear_workflow):
        """测试模板与图定义必须二选一"""
        both = client.post(f"{EXECUTIONS}/", json={
            "input": "x", "template": "simple-linear", "definition": linear_workflow
        })
        neither = client.post(f"{EXECUTIONS}/", json={"input": "x"})

        assert both.status_code == 422
        assert neither.status_code == 422

    def test_start_invalid_graph(self, client):
        """测试启动非法的图"""
        definition = {
            "nodes": [{"id": "start", "type": "start"}, {"id": "end", "type": "end"}],
            "edges": [{"from": "start", "to": "nowhere"}]
        }

        response = client.post(f"{EXECUTIONS}/", json={"input": "x", "definition": definition})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] in ("invalid_graph", "parse_error")

    def test_start_unknown_template(self, client):
        """测试启动不存在的模板"""
        response = client.post(f"{EXECUTIONS}/", json={"input": "x", "template": "missing"})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "parse_error"

    def test_decision_flow(self, client):
        """测试人工决策流程"""
        started = client.post(f"{EXECUTIONS}/", json={"input": "Todo app", "template": "with-review"}).json()
        execution_id = started["execution_id"]

        waiting = _wait_for_status(client, execution_id, {"waiting-human", "error"})
        assert waiting["status"] == "waiting-human"
        assert waiting["pending_decision"]["node_id"] == "ask-review"
        assert [o["id"] for o in waiting["pending_decision"]["options"]] == ["yes", "no"]

        bad = client.post(f"{EXECUTIONS}/{execution_id}/decision", json={"option_id": "maybe"})
        assert bad.status_code == 400
        assert bad.json()["detail"]["error"] == "decision_error"

        ok = client.post(f"{EXECUTIONS}/{execution_id}/decision", json={"option_id": "no"})
        assert ok.status_code == 200
        assert ok.json()["success"] is True

        done = _wait_for_status(client, execution_id, {"completed", "error"})
        assert done["status"] == "completed"
        assert done["visited_nodes"][-2:] == ["ask-review", "end"]
        assert done["pending_decision"] is None

        stop = client.post(f"{EXECUTIONS}/{execution_id}/stop")
        assert stop.status_code == 409
        assert stop.json()["detail"]["error"] == "not_running"

    def test_stop_waiting_execution(self, client, decision_workflow):
        """测试停止等待决策的执行"""
        started = client.post(f"{EXECUTIONS}/", json={"input": "x", "definition": decision_workflow}).json()
        execution_id = started["execution_id"]
        _wait_for_status(client, execution_id, {"waiting-human"})

        response = client.post(f"{EXECUTIONS}/{execution_id}/stop")

        assert response.status_code == 200
        assert _wait_for_status(client, execution_id, {"idle"})["end_time"] is not None

    def test_unknown_execution(self, client):
        """测试访问不存在的执行"""
        for path in ("", "/artifacts", "/events", "/logs"):
            response = client.get(f"{EXECUTIONS}/missing{path}")
            assert response.status_code == 404
            assert response.json()["detail"]["error"] == "not_found"

    def test_artifacts_events_and_logs(self, client):
        """测试产物、事件与日志查询"""
        started = client.post(f"{EXECUTIONS}/", json={"input": "Todo app", "template": "simple-linear"}).json()
        execution_id = started["execution_id"]
        _wait_for_status(client, execution_id, {"completed"})

        artifacts = client.get(f"{EXECUTIONS}/{execution_id}/artifacts")
        assert artifacts.status_code == 200
        assert artifacts.json() == []

        events = client.get(f"{EXECUTIONS}/{execution_id}/events", params={"limit": 100}).json()
        topics = [e["topic"] for e in events]
        assert "workflow.started" in topics
        assert "workflow.completed" in topics
        assert all(e["payload"]["execution_id"] == execution_id for e in events)

        logs = client.get(f"{EXECUTIONS}/{execution_id}/logs").json()
        assert logs[-1]["message"] == "Workflow completed"
        assert any(entry["level"] == "warning" for entry in logs)

    def test_statistics_and_delete(self, client):
        """测试执行统计与删除已结束的执行"""
        started = client.post(f"{EXECUTIONS}/", json={"input": "Todo app", "template": "simple-linear"}).json()
        execution_id = started["execution_id"]

        data = _wait_for_status(client, execution_id, {"completed"})
        stats = data["statistics"]
        assert stats["total_nodes"] == 4
        assert stats["executed_nodes"] == 4
        assert stats["successful_nodes"] + stats["failed_nodes"] == 2
        assert stats["progress"] == 100.0
        assert sorted(data["node_results"]) == ["code", "plan"]

        deleted = client.delete(f"{EXECUTIONS}/{execution_id}")
        assert deleted.status_code == 200
        assert client.get(f"{EXECUTIONS}/{execution_id}").status_code == 404

    def test_delete_running_execution(self, client, decision_workflow):
        """测试不能删除运行中的执行"""
        started = client.post(f"{EXECUTIONS}/", json={"input": "x", "definition": decision_workflow}).json()
        execution_id = started["execution_id"]
        _wait_for_status(client, execution_id, {"waiting-human"})

        response = client.delete(f"{EXECUTIONS}/{execution_id}")

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "still_running"
        client.post(f"{EXECUTIONS}/{execution_id}/stop")
        _wait_for_status(client, execution_id, {"idle"})
