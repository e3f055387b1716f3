"""
运行时配置

从环境变量（.env）读取服务级配置，从可选的 YAML 文件读取各步骤的智能体配置。
"""
import os
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Any, Optional, Union

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .models.artifacts import StepKind, TargetEnvironment


logger = logging.getLogger(__name__)


SUPPORTED_PROVIDERS = ("openai", "anthropic", "openrouter", "mock")


@dataclass(frozen=True)
class AgentProfile:
    """单个步骤类型的模型调用配置"""
    model: str
    provider: str = "openai"
    temperature: float = 0.7
    max_tokens: int = 4000

    def __post_init__(self):
        if self.provider not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(
                f"Unsupported provider: {self.provider}",
                {"supported": list(SUPPORTED_PROVIDERS)}
            )
        if not 0.0 <= self.temperature <= 2.0:
            raise ConfigurationError(f"Temperature out of range: {self.temperature}")
        if self.max_tokens <= 0:
            raise ConfigurationError(f"max_tokens must be positive: {self.max_tokens}")


# 各步骤默认温度与输出上限
_STEP_DEFAULTS = {
    StepKind.PLANNER: (0.7, 4000),
    StepKind.CODER: (0.4, 8000),
    StepKind.REVIEWER: (0.3, 4000),
    StepKind.SECURITY: (0.2, 4000),
    StepKind.EXECUTOR: (0.2, 2000),
}


def default_profiles(model: str, provider: str) -> Dict[StepKind, AgentProfile]:
    """为每个步骤类型生成默认配置"""
    return {
        kind: AgentProfile(model=model, provider=provider, temperature=temp, max_tokens=tokens)
        for kind, (temp, tokens) in _STEP_DEFAULTS.items()
    }


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"Environment variable {name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"Environment variable {name} must be a number, got {raw!r}")


@dataclass
class RuntimeSettings:
    """服务级配置"""
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    openrouter_api_key: Optional[str] = None
    default_provider: str = "openai"
    default_model: str = "gpt-4o"
    target_environment: TargetEnvironment = TargetEnvironment.SANDPACK
    cache_ttl_seconds: float = 600.0
    cache_max_entries: int = 100
    max_retained_executions: int = 100
    max_context_chars: int = 50000
    max_correction_attempts: int = 2
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 30.0
    strict_validation: bool = False
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    profiles: Dict[StepKind, AgentProfile] = field(default_factory=dict)

    def __post_init__(self):
        if not self.profiles:
            self.profiles = default_profiles(self.default_model, self.default_provider)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "RuntimeSettings":
        """从环境变量加载配置"""
        load_dotenv(env_file)

        try:
            target = TargetEnvironment(os.getenv("AGENTFORGE_TARGET_ENV", "sandpack"))
        except ValueError as e:
            raise ConfigurationError(f"Invalid AGENTFORGE_TARGET_ENV: {e}")

        settings = cls(
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY"),
            default_provider=os.getenv("AGENTFORGE_PROVIDER", "openai"),
            default_model=os.getenv("AGENTFORGE_MODEL", "gpt-4o"),
            target_environment=target,
            cache_ttl_seconds=_env_float("AGENTFORGE_CACHE_TTL", 600.0),
            cache_max_entries=_env_int("AGENTFORGE_CACHE_MAX_ENTRIES", 100),
            max_retained_executions=_env_int("AGENTFORGE_MAX_EXECUTIONS", 100),
            max_context_chars=_env_int("AGENTFORGE_MAX_CONTEXT_CHARS", 50000),
            max_correction_attempts=_env_int("AGENTFORGE_MAX_CORRECTIONS", 2),
            retry_max_attempts=_env_int("AGENTFORGE_RETRY_MAX", 3),
            retry_initial_delay=_env_float("AGENTFORGE_RETRY_DELAY", 1.0),
            retry_max_delay=_env_float("AGENTFORGE_RETRY_MAX_DELAY", 30.0),
            strict_validation=os.getenv("AGENTFORGE_STRICT", "false").lower() == "true",
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=_env_int("API_PORT", 8000),
        )

        profiles_file = os.getenv("AGENTFORGE_PROFILES")
        if profiles_file:
            settings.profiles = load_profiles(profiles_file, settings.profiles)

        return settings

    def api_key_for(self, provider: str) -> Optional[str]:
        """获取提供商对应的 API Key"""
        return {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "openrouter": self.openrouter_api_key,
        }.get(provider)

    def profile_for(self, step_kind: StepKind) -> AgentProfile:
        return self.profiles[step_kind]

    def with_provider(self, provider: Optional[str] = None, model: Optional[str] = None) -> "RuntimeSettings":
        """返回所有步骤改用指定 provider / 模型的配置副本（保留各步骤温度与输出上限）"""
        provider = provider or self.default_provider
        model = model or self.default_model
        profiles = {
            kind: replace(profile, provider=provider, model=model)
            for kind, profile in self.profiles.items()
        }
        return replace(self, default_provider=provider, default_model=model, profiles=profiles)


def load_profiles(
    source: Union[str, Path],
    base: Optional[Dict[StepKind, AgentProfile]] = None
) -> Dict[StepKind, AgentProfile]:
    """
    从 YAML 文件加载步骤配置

    文件格式::

        agents:
          coder:
            model: claude-sonnet-4-5
            provider: anthropic
            temperature: 0.3
    """
    path = Path(source)
    if not path.is_file():
        raise ConfigurationError(f"Agent profile file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse agent profile file: {e}")

    return parse_profiles(data.get("agents", {}), base)


def parse_profiles(
    data: Dict[str, Any],
    base: Optional[Dict[StepKind, AgentProfile]] = None
) -> Dict[StepKind, AgentProfile]:
    """合并字典形式的步骤配置"""
    profiles = dict(base or default_profiles("gpt-4o", "openai"))
    for name, overrides in data.items():
        try:
            kind = StepKind(name)
        except ValueError:
            raise ConfigurationError(f"Unknown step kind in agent profiles: {name}")
        if not isinstance(overrides, dict):
            raise ConfigurationError(f"Profile for {name} must be a mapping")
        unknown = set(overrides) - {"model", "provider", "temperature", "max_tokens"}
        if unknown:
            raise ConfigurationError(f"Unknown profile keys for {name}: {sorted(unknown)}")
        profiles[kind] = replace(profiles[kind], **overrides)
        logger.debug(f"Loaded profile override for {name}: {overrides}")
    return profiles
