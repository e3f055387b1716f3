"""
提示词组装

角色指令、目标环境约定、上一步输出的转换规则都按枚举穷举定义，
新增枚举值而未补全映射时在导入阶段即报错。
"""
import re
from typing import Dict, List, Optional

from ..models.artifacts import StepKind, TargetEnvironment


FILE_FORMAT_RULE = (
    "Output every file in its own fenced code block. The first line inside each block must be "
    "a path marker such as `// filepath: src/components/Header.tsx`. Always output complete files, "
    "never placeholders like `// ... rest of code`."
)

ROLE_INSTRUCTIONS: Dict[StepKind, str] = {
    StepKind.PLANNER: (
        "You are a senior software architect. Break the user's request into a concrete, numbered "
        "implementation plan: list every file to create with its path and responsibility, the shared "
        "state and data flow, and the order of implementation. Do not write the code itself."
    ),
    StepKind.CODER: (
        "You are an expert React and TypeScript engineer. Implement the request as a complete, "
        "working project. One component per file with a single default export, explicit imports for "
        "every file you reference, keys on every rendered list, and null checks before property "
        "access. " + FILE_FORMAT_RULE
    ),
    StepKind.REVIEWER: (
        "You are a meticulous code reviewer. Review the code for bugs, missing files, broken imports, "
        "accessibility and maintainability problems. Answer with a numbered list of concrete, "
        "actionable findings, most severe first. Reply with 'NO ISSUES' if the code is ready."
    ),
    StepKind.SECURITY: (
        "You are an application security auditor. Audit the code for embedded secrets, injection "
        "risks, unsafe HTML rendering, dynamic code evaluation and insecure data handling. List each "
        "finding with its severity (critical/high/medium/low), location and remediation."
    ),
    StepKind.EXECUTOR: (
        "You are a build and run assistant. Describe the exact commands to install dependencies and "
        "start the project, the expected result, and any environment variables that must be set."
    ),
}

ENVIRONMENT_CONVENTIONS: Dict[TargetEnvironment, str] = {
    TargetEnvironment.SANDPACK: (
        "Target environment: Sandpack browser bundler. The entry file is App.tsx at the project root "
        "and default-exports App. Global styles live in styles.css. Do not import next/* modules or "
        "Node.js APIs."
    ),
    TargetEnvironment.WEBCONTAINER: (
        "Target environment: WebContainer running Vite. Put sources under src/ with src/main.tsx and "
        "src/App.tsx, and include a package.json listing every dependency. Do not import next/* modules."
    ),
    TargetEnvironment.NEXTJS: (
        "Target environment: Next.js App Router. Routes are app/**/page.tsx and the root layout is "
        "app/layout.tsx. Any component that uses hooks, event handlers or browser APIs must start with "
        "\"use client\". Never declare context providers inside page files and never use react-router."
    ),
}

# 纠错指令中的步骤专属说明
CORRECTION_GUIDANCE: Dict[StepKind, str] = {
    StepKind.PLANNER: "Return the full plan again with every listed file accounted for.",
    StepKind.CODER: "Return every affected file in full, each in its own fenced block with a path marker.",
    StepKind.REVIEWER: "Return the complete review as a numbered list.",
    StepKind.SECURITY: "Return the complete audit with a severity for each finding.",
    StepKind.EXECUTOR: "Return the complete run instructions.",
}


def _require_exhaustive(mapping: Dict, enum_cls, name: str):
    missing = [member for member in enum_cls if member not in mapping]
    if missing:
        raise RuntimeError(f"{name} has no entry for: {', '.join(m.value for m in missing)}")


_require_exhaustive(ROLE_INSTRUCTIONS, StepKind, "ROLE_INSTRUCTIONS")
_require_exhaustive(ENVIRONMENT_CONVENTIONS, TargetEnvironment, "ENVIRONMENT_CONVENTIONS")
_require_exhaustive(CORRECTION_GUIDANCE, StepKind, "CORRECTION_GUIDANCE")


_TASK_LINE_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(?P<task>.+)$")


def extract_tasks(plan: str) -> List[str]:
    """从规划输出中提取列表项作为任务"""
    tasks = []
    for line in plan.splitlines():
        match = _TASK_LINE_RE.match(line)
        if match:
            task = match.group("task").strip()
            if task:
                tasks.append(task)
    return tasks


def reshape_previous_output(
    previous_output: Optional[str],
    current: StepKind,
    previous: Optional[StepKind] = None
) -> Optional[str]:
    """按步骤组合转换上一步输出"""
    if not previous_output or not previous_output.strip():
        return None
    output = previous_output.strip()

    if current == StepKind.SECURITY:
        return f"## Code to audit\n{output}"
    if previous == StepKind.PLANNER and current == StepKind.CODER:
        tasks = extract_tasks(output)
        if not tasks:
            return f"## Implementation plan\nImplement ALL points of this plan:\n{output}"
        task_list = "\n".join(f"{i}. {task}" for i, task in enumerate(tasks, 1))
        return (
            f"## Implementation tasks\nImplement ALL of the following tasks, none may be skipped:\n"
            f"{task_list}\n\n## Plan details\n{output}"
        )
    if previous == StepKind.CODER and current == StepKind.REVIEWER:
        return f"## Code to review\n{output}"
    if previous == StepKind.REVIEWER and current == StepKind.CODER:
        return (
            f"## Review feedback\nApply every item of this feedback and output the complete "
            f"updated files:\n{output}"
        )
    if previous == StepKind.CODER and current == StepKind.EXECUTOR:
        return f"## Code to run\n{output}"
    return f"## Previous step output\n{output}"


def build_messages(
    step_kind: StepKind,
    input_text: str,
    target: TargetEnvironment,
    context_block: str = "",
    previous_block: Optional[str] = None,
    knowledge: Optional[str] = None
) -> List[Dict[str, str]]:
    """组装发送给模型的消息列表"""
    system = ROLE_INSTRUCTIONS[step_kind]
    if step_kind.is_generation or step_kind == StepKind.EXECUTOR:
        system += "\n\n" + ENVIRONMENT_CONVENTIONS[target]

    sections = []
    if knowledge:
        sections.append(f"## Reference material\n{knowledge}")
    if context_block:
        sections.append(f"## Existing project files\n{context_block}")
    if previous_block:
        sections.append(previous_block)
    sections.append(f"## Request\n{input_text}")

    return [
        {"role": "system", "content": system},
        {"role": "user", "content": "\n\n".join(sections)},
    ]
