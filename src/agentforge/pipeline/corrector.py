"""
自动纠错
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Dict

from ..config import AgentProfile
from ..integrations.model_client import ModelClient
from ..models.artifacts import (
    CorrectionAttempt, DirectiveLevel, ParsedArtifact, StepKind, ValidationReport
)
from .artifact_parser import ArtifactParser
from .prompts import CORRECTION_GUIDANCE
from .validator import ArtifactValidator


logger = logging.getLogger(__name__)


EMPTY_RESULT_DIRECTIVE = (
    "Your previous answer did not contain any usable code files. Output the COMPLETE code now. "
    "Put every file in its own fenced code block and start each block with a path marker line "
    "such as `// filepath: App.tsx`. Do not explain, do not abbreviate, output only the files."
)

_LEVEL_HEADERS: Dict[DirectiveLevel, str] = {
    DirectiveLevel.FIRM: (
        "The previous answer failed validation (score {score}/100). Fix every problem listed below."
    ),
    DirectiveLevel.STRICT: (
        "The previous answer STILL fails validation (score {score}/100). Every item below is "
        "mandatory. Do not repeat the same mistakes."
    ),
    DirectiveLevel.FINAL: (
        "FINAL ATTEMPT. The answer fails validation (score {score}/100). Output ONLY the complete "
        "corrected files and resolve every item below."
    ),
}


@dataclass
class Candidate:
    """一次生成的结果"""
    content: str
    artifacts: List[ParsedArtifact]
    report: ValidationReport


@dataclass
class CorrectionOutcome:
    """纠错结果"""
    best: Candidate
    attempts: List[CorrectionAttempt] = field(default_factory=list)
    improved: bool = False


class AutoCorrector:
    """按递增强度的纠错指令重新请求生成，返回得分最高的结果"""

    def __init__(
        self,
        model_client: ModelClient,
        parser: ArtifactParser,
        validator: ArtifactValidator,
        max_attempts: int = 2,
        base_temperature: float = 0.4,
        temperature_step: float = 0.15
    ):
        self.model_client = model_client
        self.parser = parser
        self.validator = validator
        self.max_attempts = max_attempts
        self.base_temperature = base_temperature
        self.temperature_step = temperature_step

    def temperature_for(self, attempt: int, profile_temperature: float) -> float:
        """第 attempt 次尝试的温度，严格低于原始温度并逐次降低（下限为 0）"""
        start = min(profile_temperature, self.base_temperature)
        return round(max(0.0, start - self.temperature_step * attempt), 2)

    @staticmethod
    def level_for(attempt: int) -> DirectiveLevel:
        return DirectiveLevel(min(attempt, DirectiveLevel.FINAL.value))

    def build_directive(self, report: ValidationReport, step_kind: StepKind,
                        level: DirectiveLevel) -> str:
        """生成纠错指令：逐字列出全部严重问题，并明确列出缺失的文件路径"""
        lines = [_LEVEL_HEADERS[level].format(score=report.score)]

        critical = report.critical_issues
        if critical:
            lines.append("")
            lines.append("Critical issues that must be fixed:")
            for i, issue in enumerate(critical, 1):
                lines.append(f"{i}. {issue.message}")

        if report.missing_paths:
            lines.append("")
            lines.append("Missing files. Create each of these files in full:")
            for path in report.missing_paths:
                lines.append(f"- {path}")

        others = [i for i in report.issues if i not in critical]
        if others:
            lines.append("")
            lines.append("Other problems to fix:")
            for issue in others[:10]:
                lines.append(f"- {issue.message}")
            if len(others) > 10:
                lines.append(f"- ...and {len(others) - 10} more")

        lines.append("")
        lines.append(CORRECTION_GUIDANCE[step_kind])
        return "\n".join(lines)

    async def correct(
        self,
        messages: List[Dict[str, str]],
        original: Candidate,
        profile: AgentProfile,
        step_kind: StepKind,
        existing: Optional[List[ParsedArtifact]] = None,
        api_key: Optional[str] = None
    ) -> CorrectionOutcome:
        """
        执行纠错循环

        Args:
            messages: 原始请求消息
            original: 原始输出及其校验报告
            profile: 模型配置
            step_kind: 步骤类型
            existing: 存储中已有的产物（用于导入解析）

        Returns:
            CorrectionOutcome: best 永远不低于原始结果；没有尝试改进时即为原始结果
        """
        outcome = CorrectionOutcome(best=original)
        conversation = list(messages)
        previous = original

        for attempt_number in range(1, self.max_attempts + 1):
            level = self.level_for(attempt_number)
            temperature = self.temperature_for(attempt_number, profile.temperature)
            attempt = CorrectionAttempt(
                attempt_number=attempt_number,
                preceding_report=previous.report,
                directive_level=level,
                temperature=temperature
            )
            outcome.attempts.append(attempt)

            conversation = conversation + [
                {"role": "assistant", "content": previous.content},
                {"role": "user", "content": self.build_directive(previous.report, step_kind, level)},
            ]
            logger.info(
                f"Correction attempt {attempt_number}/{self.max_attempts} for {step_kind.value} "
                f"(score={previous.report.score}, critical={previous.report.critical_count}, "
                f"temperature={temperature})"
            )

            response = await self.model_client.call(
                conversation, profile.model, temperature, profile.max_tokens,
                api_key, profile.provider
            )
            artifacts = self.parser.parse(response.content)
            report = self.validator.validate(artifacts, existing, response.content)
            attempt.resulting_report = report
            candidate = Candidate(content=response.content, artifacts=artifacts, report=report)

            if report.improves_on(outcome.best.report):
                outcome.best = candidate
                outcome.improved = True

            if outcome.best.report.is_acceptable:
                logger.info(f"Correction attempt {attempt_number} produced an acceptable result")
                break
            if report.is_acceptable:
                # 可接受但分数低于当前最佳，继续用剩余次数
                logger.info(
                    f"Correction attempt {attempt_number} is acceptable but scores "
                    f"{report.score} below {outcome.best.report.score}; retrying"
                )
            previous = candidate

        if not outcome.improved:
            logger.warning(
                f"No correction attempt improved on the original {step_kind.value} output "
                f"(score={original.report.score})"
            )
        return outcome

    async def recover_empty(
        self,
        messages: List[Dict[str, str]],
        prior_output: str,
        profile: AgentProfile,
        api_key: Optional[str] = None
    ) -> str:
        """输出中有代码特征却解析不出产物时，立即追问一次完整代码"""
        temperature = self.temperature_for(1, profile.temperature)
        conversation = list(messages) + [
            {"role": "assistant", "content": prior_output},
            {"role": "user", "content": EMPTY_RESULT_DIRECTIVE},
        ]
        logger.info(f"Escalating empty parse result (temperature={temperature})")
        response = await self.model_client.call(
            conversation, profile.model, temperature, profile.max_tokens,
            api_key, profile.provider
        )
        return response.content
