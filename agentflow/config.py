from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Gemini
    gemini_api_key: str = ""
    default_model: str = ""
    agent_base_model: str = "gemini-2.5-flash"
    # Virtual model names exposed to clients -> base model used for agent phases
    agent_models: dict[str, str] = {
        "agent-gemini-2.5-flash": "gemini-2.5-flash",
        "agent-gemini-2.5-pro": "gemini-2.5-pro",
        "agent-gemini-3-pro-preview": "gemini-3-pro-preview",
    }

    # System instruction
    default_system_instruction: str = ""
    system_instruction_file: str = "system_instruction.txt"

    # Agent workflow
    agent_max_cycles: int = 5
    agent_include_grounding_summary: bool = False  # keeps phase prompts bounded
    agent_grounding_summary_limit: int = 8
    agent_debug: bool = False
    agent_include_thoughts: bool = True
    agent_top_p: float = 0.2

    # App
    cors_origins: str = "*"
    host: str = "0.0.0.0"
    port: int = 15101
    log_dir: str = "logs"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def resolve_system_instruction(self) -> str:
        """Env value wins; otherwise read the instruction file when it exists."""
        if self.default_system_instruction:
            return self.default_system_instruction
        path = Path(self.system_instruction_file)
        if self.system_instruction_file and path.is_file():
            return path.read_text(encoding="utf-8")
        return ""


@dataclass(frozen=True)
class AgentConfig:
    """Explicit knobs handed to the session orchestrator at construction time."""

    max_cycles: int = 5
    include_grounding_summary: bool = False
    grounding_summary_limit: int = 8
    debug: bool = False
    include_thoughts: bool = True
    top_p: float = 0.2

    @classmethod
    def from_settings(cls, source: Settings, **overrides: Any) -> "AgentConfig":
        values: dict[str, Any] = {
            "max_cycles": source.agent_max_cycles,
            "include_grounding_summary": source.agent_include_grounding_summary,
            "grounding_summary_limit": source.agent_grounding_summary_limit,
            "debug": source.agent_debug,
            "include_thoughts": source.agent_include_thoughts,
            "top_p": source.agent_top_p,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(
            max_cycles=max(int(values["max_cycles"]), 1),
            include_grounding_summary=bool(values["include_grounding_summary"]),
            grounding_summary_limit=max(int(values["grounding_summary_limit"]), 1),
            debug=bool(values["debug"]),
            include_thoughts=bool(values["include_thoughts"]),
            top_p=float(values["top_p"]),
        )


settings = Settings()
