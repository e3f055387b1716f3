"""
Pytest 配置和公共 fixtures
"""
import pytest

from agentforge.config import RuntimeSettings
from agentforge.integrations.artifact_store import InMemoryArtifactStore
from agentforge.integrations.event_bus import EventBus
from agentforge.integrations.model_client import MockModelClient
from agentforge.models.artifacts import ParsedArtifact


# 配置 pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


GOOD_CODER_OUTPUT = """Here is the implementation.

```tsx
// filepath: App.tsx
import React from 'react';
import Header from './components/Header';

export default function App() {
  return (
    <div className="app">
      <Header title="Todo" />
    </div>
  );
}
```

And the header component:

```tsx
// filepath: components/Header.tsx
import React from 'react';

interface HeaderProps {
  title: string;
}

export default function Header({ title }: HeaderProps) {
  return <h1 className="header">{title}</h1>;
}
```
"""

DUPLICATE_DEFAULT_OUTPUT = """```tsx
// filepath: App.tsx
import React from 'react';

export default function App() {
  return <div className="app">One</div>;
}

export default function Other() {
  return <div className="other">Two</div>;
}
```
"""


@pytest.fixture
def settings() -> RuntimeSettings:
    """使用 mock provider 的运行时配置"""
    return RuntimeSettings(
        default_provider="mock",
        default_model="mock-model",
        retry_initial_delay=0.0,
        retry_max_delay=0.0,
        max_correction_attempts=2
    )


@pytest.fixture
def mock_client() -> MockModelClient:
    """默认返回 OK 的模拟模型客户端"""
    return MockModelClient()


@pytest.fixture
def event_bus() -> EventBus:
    """事件总线"""
    return EventBus()


@pytest.fixture
def artifact_store() -> InMemoryArtifactStore:
    """空的内存产物存储"""
    return InMemoryArtifactStore()


@pytest.fixture
def good_coder_output() -> str:
    """两个文件、可通过校验的生成输出"""
    return GOOD_CODER_OUTPUT


@pytest.fixture
def duplicate_default_output() -> str:
    """包含重复默认导出的生成输出"""
    return DUPLICATE_DEFAULT_OUTPUT


@pytest.fixture
def sample_artifacts() -> list:
    """示例产物"""
    return [
        ParsedArtifact(
            path="App.tsx",
            content="import Header from './components/Header';\n\nexport default function App() {\n"
                    "  return <Header title=\"Hi\" />;\n}\n",
            language="tsx"
        ),
        ParsedArtifact(
            path="components/Header.tsx",
            content="export default function Header({ title }: { title: string }) {\n"
                    "  return <h1>{title}</h1>;\n}\n",
            language="tsx"
        ),
    ]


@pytest.fixture
def linear_workflow() -> dict:
    """线性工作流：开始 → 规划 → 编码 → 结束"""
    return {
        "id": "linear",
        "name": "Linear",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "plan", "type": "agent", "data": {"label": "Planner", "step_kind": "planner"}},
            {"id": "code", "type": "agent", "data": {"label": "Coder", "step_kind": "coder"}},
            {"id": "end", "type": "end"}
        ],
        "edges": [
            {"from": "start", "to": "plan"},
            {"from": "plan", "to": "code"},
            {"from": "code", "to": "end"}
        ]
    }


@pytest.fixture
def decision_workflow() -> dict:
    """带人工决策的工作流：选 a 进入编码节点，选 b 直接结束"""
    return {
        "id": "decision",
        "name": "Decision",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "plan", "type": "agent", "data": {"step_kind": "planner"}},
            {
                "id": "decide",
                "type": "human-decision",
                "data": {
                    "question": "Generate code now?",
                    "options": [{"id": "a", "label": "Yes"}, {"id": "b", "label": "No"}]
                }
            },
            {"id": "code", "type": "agent", "data": {"step_kind": "coder"}},
            {"id": "end", "type": "end"}
        ],
        "edges": [
            {"from": "start", "to": "plan"},
            {"from": "plan", "to": "decide"},
            {"from": "decide", "to": "code", "condition": {"type": "option", "value": "a"}},
            {"from": "decide", "to": "end", "condition": {"type": "option", "value": "b"}},
            {"from": "code", "to": "end"}
        ]
    }
