"""
单步流水线测试
"""
import pytest

from agentforge.exceptions import ValidationFailure
from agentforge.integrations.knowledge import StaticContextProvider
from agentforge.integrations.model_client import MockModelClient
from agentforge.models.artifacts import StepKind, StepRequest
from agentforge.pipeline.cache import ResponseCache
from agentforge.pipeline.corrector import EMPTY_RESULT_DIRECTIVE
from agentforge.pipeline.step_pipeline import AgentStepPipeline


PLAN = "1. Create App.tsx with the todo state\n2. Create components/Header.tsx"


class TestAgentStepPipeline:
    """单步流水线测试类"""

    @pytest.fixture
    def cache(self):
        return ResponseCache(ttl_seconds=60, max_entries=10)

    def _pipeline(self, settings, client, cache=None, store=None, **kwargs):
        return AgentStepPipeline(client, settings=settings, cache=cache, artifact_store=store, **kwargs)

    @pytest.mark.asyncio
    async def test_non_generation_step_is_cached(self, settings, cache):
        """测试非生成步骤命中缓存"""
        client = MockModelClient([PLAN])
        pipeline = self._pipeline(settings, client, cache)

        first = await pipeline.execute(StepKind.PLANNER, "Todo app")
        second = await pipeline.execute(StepKind.PLANNER, "Todo app")

        assert first.content == second.content == PLAN
        assert not first.from_cache
        assert second.from_cache
        assert len(client.calls) == 1
        assert client.calls[0]["model_id"] == "mock-model"
        assert client.calls[0]["temperature"] == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_previous_output_is_part_of_cache_key(self, settings, cache):
        """测试上一步输出不同时不命中缓存"""
        client = MockModelClient()
        pipeline = self._pipeline(settings, client, cache)

        await pipeline.execute(StepKind.REVIEWER, "Todo app", "code v1")
        await pipeline.execute(StepKind.REVIEWER, "Todo app", "code v2")

        assert len(client.calls) == 2

    @pytest.mark.asyncio
    async def test_generation_step_is_never_cached(self, settings, cache, artifact_store, good_coder_output):
        """测试代码生成步骤总是重新执行"""
        client = MockModelClient([good_coder_output, good_coder_output])
        pipeline = self._pipeline(settings, client, cache, artifact_store)

        await pipeline.execute(StepKind.CODER, "Todo app")
        second = await pipeline.execute(StepKind.CODER, "Todo app")

        assert len(client.calls) == 2
        assert not second.from_cache
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_generation_merges_artifacts(self, settings, artifact_store, good_coder_output):
        """测试合格的生成结果合并到产物存储"""
        client = MockModelClient([good_coder_output])
        pipeline = self._pipeline(settings, client, store=artifact_store)

        result = await pipeline.execute(StepKind.CODER, "Todo app")

        assert result.report.score == 100
        assert result.corrections == []
        assert result.warnings == []
        assert artifact_store.paths() == ["App.tsx", "components/Header.tsx"]

    @pytest.mark.asyncio
    async def test_invalid_output_is_corrected(self, settings, artifact_store,
                                               duplicate_default_output, good_coder_output):
        """测试不合格输出触发纠错并采用更好的结果"""
        client = MockModelClient([duplicate_default_output, good_coder_output])
        pipeline = self._pipeline(settings, client, store=artifact_store)

        result = await pipeline.execute(StepKind.CODER, "Todo app")

        assert len(result.corrections) == 1
        assert result.content == good_coder_output
        assert result.report.is_acceptable
        assert "components/Header.tsx" in artifact_store.paths()

    @pytest.mark.asyncio
    async def test_degraded_output_is_accepted_when_not_strict(self, settings, artifact_store,
                                                              duplicate_default_output):
        """测试非严格模式接受纠错后仍不合格的结果并上报警告"""
        client = MockModelClient([duplicate_default_output] * 3)
        pipeline = self._pipeline(settings, client, store=artifact_store)

        result = await pipeline.execute(StepKind.CODER, "Todo app")

        assert len(client.calls) == 3
        assert result.report.score == 50
        assert result.has_issues
        assert any(w.startswith("[critical] App.tsx contains 2 default exports") for w in result.warnings)
        assert artifact_store.paths() == ["App.tsx"]

    @pytest.mark.asyncio
    async def test_strict_mode_raises(self, settings, duplicate_default_output):
        """测试严格模式下纠错失败抛出异常"""
        client = MockModelClient([duplicate_default_output] * 3)
        pipeline = self._pipeline(settings, client, strict=True)

        with pytest.raises(ValidationFailure) as exc_info:
            await pipeline.execute(StepKind.CODER, "Todo app")

        assert exc_info.value.details["score"] == 50

    @pytest.mark.asyncio
    async def test_instructions_only_output_is_corrected(self, settings, artifact_store, good_coder_output):
        """测试只给修改说明的输出进入纠错并被完整代码替换"""
        client = MockModelClient(["You can change line 3 of App.tsx to use useReducer.", good_coder_output])
        pipeline = self._pipeline(settings, client, store=artifact_store)

        result = await pipeline.execute(StepKind.CODER, "Counter")

        first = result.corrections[0].preceding_report
        assert [i.rule for i in first.critical_issues] == ["empty-batch", "instructions-only"]
        assert result.report.score == 100
        assert artifact_store.paths() == ["App.tsx", "components/Header.tsx"]

    @pytest.mark.asyncio
    async def test_empty_parse_is_escalated(self, settings, good_coder_output):
        """测试有代码特征但未解析出产物时立即追问"""
        client = MockModelClient(["Use const counter = 1 in the component.", good_coder_output])
        pipeline = self._pipeline(settings, client)

        result = await pipeline.execute(StepKind.CODER, "Counter")

        assert len(client.calls) == 2
        assert client.calls[1]["messages"][-1]["content"] == EMPTY_RESULT_DIRECTIVE
        assert [a.path for a in result.artifacts] == ["App.tsx", "components/Header.tsx"]
        assert result.corrections == []

    @pytest.mark.asyncio
    async def test_empty_parse_twice_is_reported(self, settings):
        """测试追问后仍无产物时记录警告"""
        client = MockModelClient(["Use const counter = 1 in the component.", "Still nothing."])
        pipeline = self._pipeline(settings, client)

        result = await pipeline.execute(StepKind.CODER, "Counter")

        assert result.artifacts == []
        assert any("No code artifacts could be parsed from coder output" in w for w in result.warnings)
        assert result.report.critical_issues[0].rule == "empty-batch"

    @pytest.mark.asyncio
    async def test_planner_output_is_reshaped_for_coder(self, settings, good_coder_output):
        """测试规划输出转换为编码任务列表"""
        client = MockModelClient([PLAN, good_coder_output])
        callback = self._pipeline(settings, client).as_agent_callback()

        plan = await callback(StepKind.PLANNER, "Todo app", None)
        await callback(StepKind.CODER, "Todo app", plan.content)

        prompt = client.calls[1]["messages"][-1]["content"]
        assert "## Implementation tasks" in prompt
        assert "1. Create App.tsx with the todo state" in prompt
        assert prompt.endswith("## Request\nTodo app")

    @pytest.mark.asyncio
    async def test_existing_files_and_knowledge_in_prompt(self, settings, artifact_store, sample_artifacts):
        """测试已有产物与参考资料进入提示词"""
        artifact_store.merge(sample_artifacts)
        client = MockModelClient()
        pipeline = self._pipeline(
            settings, client, store=artifact_store,
            context_provider=StaticContextProvider({StepKind.REVIEWER: "Prefer functional components"})
        )

        await pipeline.execute(StepKind.REVIEWER, "Review App.tsx")

        prompt = client.calls[0]["messages"][-1]["content"]
        assert "## Reference material\nPrefer functional components" in prompt
        assert "## Existing project files" in prompt
        assert "### App.tsx" in prompt

    @pytest.mark.asyncio
    async def test_review_findings_become_warnings(self, settings):
        """测试评审发现项作为警告上报"""
        client = MockModelClient(["1. Missing key prop in TodoList\n2. Unused import in App.tsx", "NO ISSUES"])
        pipeline = self._pipeline(settings, client)

        findings = await pipeline.execute(StepKind.REVIEWER, "Review", "code v1")
        clean = await pipeline.execute(StepKind.REVIEWER, "Review", "code v2")

        assert findings.warnings == ["Missing key prop in TodoList", "Unused import in App.tsx"]
        assert findings.has_issues
        assert clean.warnings == []
        assert not clean.has_issues

    @pytest.mark.asyncio
    async def test_run_with_explicit_request(self, settings, sample_artifacts):
        """测试直接传入步骤请求中的已有产物"""
        client = MockModelClient(["NO ISSUES"])
        pipeline = self._pipeline(settings, client)

        result = await pipeline.run(StepRequest(
            step_kind=StepKind.SECURITY,
            input_text="Audit",
            previous_output="code v1",
            existing_artifacts=sample_artifacts,
            previous_step_kind=StepKind.CODER
        ))

        prompt = client.calls[0]["messages"][-1]["content"]
        assert "### components/Header.tsx" in prompt
        assert "code v1" in prompt
        assert result.warnings == []
