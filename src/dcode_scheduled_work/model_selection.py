from __future__ import annotations

from dataclasses import dataclass

from .models import AgentConfig
from .settings import RuntimeSettings

VALID_TIERS: frozenset[str] = frozenset({"frontier", "efficient", "economy"})


@dataclass(frozen=True)
class RuntimeModelSelection:
    """Maps model tier names to concrete model identifiers for agent-role routing.

    Each agent config declares a ``model_tier``; ``resolve`` translates it to
    the model name configured for that tier.
    """

    by_tier: dict[str, str]

    def __post_init__(self) -> None:
        missing = VALID_TIERS - set(self.by_tier)
        if missing:
            raise ValueError(
                f"RuntimeModelSelection missing required tiers: {', '.join(sorted(missing))}. "
                f"All of {sorted(VALID_TIERS)} must be configured."
            )
        for tier, model_name in self.by_tier.items():
            if not model_name or not model_name.strip():
                raise ValueError(f"RuntimeModelSelection tier '{tier}' has empty model name")

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "RuntimeModelSelection":
        return cls(
            by_tier={
                "frontier": settings.model_frontier,
                "efficient": settings.model_efficient,
                "economy": settings.model_economy,
            }
        )

    def resolve(self, role: str, model_tier: str) -> str:
        """Resolve a model tier to a concrete model name.

        Raises:
            ValueError: If model_tier is not a recognized tier.
        """
        if model_tier not in self.by_tier:
            available = ", ".join(sorted(self.by_tier))
            raise ValueError(f"Unknown model tier '{model_tier}' for role '{role}'. Valid tiers: {available}")
        return self.by_tier[model_tier]


def resolve_agent_models(
    configs: dict[str, AgentConfig],
    model_selection: RuntimeModelSelection,
) -> dict[str, str]:
    """Resolve every role's config to a concrete model name.

    Raises:
        ValueError: If any config references an unknown model tier.
    """
    return {role: model_selection.resolve(cfg.role, cfg.model_tier) for role, cfg in sorted(configs.items())}
