from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Literal

BackendName = Literal["codex", "claude"]


@dataclass(slots=True)
class StoreConfig:
    root: str = ".checkflow"


@dataclass(slots=True)
class WorkflowConfig:
    stale_after_minutes: float = 30.0
    retry_cooldown_minutes: float = 5.0
    executor_user_id: str = "ai_executor"
    system_user_id: str = "system"

    @property
    def stale_after(self) -> timedelta:
        return timedelta(minutes=self.stale_after_minutes)

    @property
    def retry_cooldown(self) -> timedelta:
        return timedelta(minutes=self.retry_cooldown_minutes)


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0


@dataclass(slots=True)
class IdentityConfig:
    user_id: str = ""


@dataclass(slots=True)
class ContextConfig:
    documents: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CheckflowConfig:
    store: StoreConfig = field(default_factory=StoreConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    context: ContextConfig = field(default_factory=ContextConfig)

    @classmethod
    def default(cls) -> CheckflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> CheckflowConfig:
        return cls(
            store=StoreConfig(**data.get("store", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            backend=BackendConfig(**data.get("backend", {})),
            identity=IdentityConfig(**data.get("identity", {})),
            context=ContextConfig(**data.get("context", {})),
        )

    def to_dict(self) -> dict:
        return {
            "store": {
                "root": self.store.root,
            },
            "workflow": {
                "stale_after_minutes": self.workflow.stale_after_minutes,
                "retry_cooldown_minutes": self.workflow.retry_cooldown_minutes,
                "executor_user_id": self.workflow.executor_user_id,
                "system_user_id": self.workflow.system_user_id,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "identity": {
                "user_id": self.identity.user_id,
            },
            "context": {
                "documents": list(self.context.documents),
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: CheckflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["store", "workflow", "backend", "identity", "context"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> CheckflowConfig:
    if not path.exists():
        return CheckflowConfig.default()
    return CheckflowConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: CheckflowConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
