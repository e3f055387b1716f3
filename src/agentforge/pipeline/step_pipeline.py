"""
单步智能体流水线

缓存检查 → 组装提示词 → 模型调用 → 解析 → 校验 → 纠错 → 缓存 / 合并产物
"""
import logging
from typing import Awaitable, Callable, List, Optional

from ..config import RuntimeSettings
from ..exceptions import ParseEmptyResult, ValidationFailure
from ..integrations.artifact_store import ArtifactStore
from ..integrations.knowledge import ContextProvider
from ..integrations.model_client import ModelClient
from ..models.artifacts import ParsedArtifact, Severity, StepKind, StepRequest, StepResult
from .artifact_parser import ArtifactParser, CodeArtifactParser
from .cache import ResponseCache, context_digest, fingerprint
from .context import ContextPrioritizer
from .corrector import AutoCorrector, Candidate
from .prompts import build_messages, extract_tasks, reshape_previous_output
from .validator import ArtifactValidator


logger = logging.getLogger(__name__)


AgentCallback = Callable[[StepKind, str, Optional[str]], Awaitable[StepResult]]


class AgentStepPipeline:
    """
    单步执行契约

    缓存由流水线实例持有，生命周期与宿主会话一致；代码生成步骤永远重新执行。
    """

    def __init__(
        self,
        model_client: ModelClient,
        settings: Optional[RuntimeSettings] = None,
        cache: Optional[ResponseCache] = None,
        artifact_store: Optional[ArtifactStore] = None,
        parser: Optional[ArtifactParser] = None,
        validator: Optional[ArtifactValidator] = None,
        corrector: Optional[AutoCorrector] = None,
        prioritizer: Optional[ContextPrioritizer] = None,
        context_provider: Optional[ContextProvider] = None,
        strict: Optional[bool] = None
    ):
        self.settings = settings or RuntimeSettings()
        self.model_client = model_client
        self.cache = cache
        self.artifact_store = artifact_store
        self.target = self.settings.target_environment
        self.parser = parser or CodeArtifactParser(self.target)
        self.validator = validator or ArtifactValidator(self.target)
        self.corrector = corrector or AutoCorrector(
            model_client, self.parser, self.validator,
            max_attempts=self.settings.max_correction_attempts
        )
        self.prioritizer = prioritizer or ContextPrioritizer()
        self.context_provider = context_provider
        self.strict = self.settings.strict_validation if strict is None else strict

    def _existing_artifacts(self) -> List[ParsedArtifact]:
        return self.artifact_store.list() if self.artifact_store else []

    async def execute(
        self,
        step_kind: StepKind,
        input_text: str,
        previous_output: Optional[str] = None,
        previous_step_kind: Optional[StepKind] = None
    ) -> StepResult:
        """以当前产物存储内容构造步骤请求并执行"""
        request = StepRequest(
            step_kind=step_kind,
            input_text=input_text,
            previous_output=previous_output,
            existing_artifacts=self._existing_artifacts(),
            previous_step_kind=previous_step_kind
        )
        return await self.run(request)

    async def run(self, request: StepRequest) -> StepResult:
        """执行单个步骤"""
        step_kind = request.step_kind
        input_text = request.input_text
        existing = request.existing_artifacts
        key = fingerprint(step_kind, input_text, context_digest(existing, request.previous_output))

        # 1. 缓存（代码生成步骤不读缓存）
        if self.cache is not None and not step_kind.is_generation:
            entry = self.cache.get(key)
            if entry is not None:
                logger.info(f"Cache hit for {step_kind.value} step ({key[:12]})")
                return StepResult(
                    step_kind=step_kind,
                    content=entry.content,
                    artifacts=list(entry.artifacts),
                    warnings=self._review_findings(step_kind, entry.content),
                    from_cache=True
                )

        # 2. 组装提示词
        selection = self.prioritizer.select(existing, input_text, self.settings.max_context_chars)
        knowledge = None
        if self.context_provider is not None:
            knowledge = await self.context_provider.fetch(input_text, step_kind)
        messages = build_messages(
            step_kind,
            input_text,
            self.target,
            context_block=selection.render() if existing else "",
            previous_block=reshape_previous_output(
                request.previous_output, step_kind, request.previous_step_kind
            ),
            knowledge=knowledge
        )

        # 3. 模型调用
        profile = self.settings.profile_for(step_kind)
        api_key = self.settings.api_key_for(profile.provider)
        logger.info(f"Executing {step_kind.value} step with {profile.provider}/{profile.model}")
        response = await self.model_client.call(
            messages, profile.model, profile.temperature, profile.max_tokens,
            api_key, profile.provider
        )

        result = StepResult(step_kind=step_kind, content=response.content)

        # 4-6. 解析、校验、纠错（仅代码生成步骤）
        if step_kind.is_generation:
            await self._process_generation(result, messages, profile, api_key, existing)
        else:
            result.warnings = self._review_findings(step_kind, result.content)

        # 7. 缓存并合并产物
        if self.cache is not None and not step_kind.is_generation:
            self.cache.set(key, result.content, result.artifacts)
        if self.artifact_store is not None and result.artifacts:
            self.artifact_store.merge(result.artifacts)

        return result

    async def _process_generation(self, result: StepResult, messages, profile, api_key,
                                  existing: List[ParsedArtifact]):
        step_kind = result.step_kind
        artifacts = self.parser.parse(result.content)

        # 有代码特征却没有产物时立即追问一次
        if not artifacts and self.parser.looks_like_code(result.content):
            retry_content = await self.corrector.recover_empty(
                messages, result.content, profile, api_key
            )
            retry_artifacts = self.parser.parse(retry_content)
            if retry_artifacts:
                result.content, artifacts = retry_content, retry_artifacts
            else:
                error = ParseEmptyResult(step_kind.value, len(retry_content))
                logger.warning(error.message)
                result.warnings.append(error.message)

        report = self.validator.validate(artifacts, existing, result.content)
        if not report.is_acceptable:
            outcome = await self.corrector.correct(
                messages, Candidate(result.content, artifacts, report),
                profile, step_kind, existing, api_key
            )
            result.corrections = outcome.attempts
            result.content = outcome.best.content
            artifacts = outcome.best.artifacts
            report = outcome.best.report

            if not report.is_acceptable and self.strict:
                raise ValidationFailure(report.score, [i.message for i in report.critical_issues])
            if not report.is_acceptable:
                logger.warning(
                    f"Accepting {step_kind.value} output with score {report.score} and "
                    f"{report.critical_count} critical issue(s) after {len(outcome.attempts)} correction(s)"
                )

        result.artifacts = artifacts
        result.report = report
        result.warnings.extend(
            f"[{issue.severity.label}] {issue.message}"
            for issue in report.issues if issue.severity >= Severity.WARNING
        )

    @staticmethod
    def _review_findings(step_kind: StepKind, content: str) -> List[str]:
        """评审与安全审计步骤的发现项作为警告上报"""
        if step_kind not in (StepKind.REVIEWER, StepKind.SECURITY):
            return []
        if "no issues" in content.lower():
            return []
        return extract_tasks(content)

    def as_agent_callback(self) -> AgentCallback:
        """绑定为工作流执行器的智能体回调，记录上一步类型用于输出转换"""
        last_kind: Optional[StepKind] = None

        async def on_agent_execute(step_kind: StepKind, input_text: str,
                                   previous_output: Optional[str]) -> StepResult:
            nonlocal last_kind
            previous_kind = last_kind if previous_output else None
            result = await self.execute(step_kind, input_text, previous_output, previous_kind)
            last_kind = step_kind
            return result

        return on_agent_execute
