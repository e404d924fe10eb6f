from __future__ import annotations

from agentflow.config import settings


def get_available_models() -> list[dict[str, str]]:
    """Agent model names clients may request, with the base model behind each."""
    return [{"id": name, "base_model": base} for name, base in settings.agent_models.items()]


def resolve_base_model(model: str | None) -> str | None:
    """Map a requested agent model to its base model; None when unknown."""
    if not model:
        return None
    return settings.agent_models.get(model)


def get_default_model() -> str:
    return settings.default_model or next(iter(settings.agent_models), "")
