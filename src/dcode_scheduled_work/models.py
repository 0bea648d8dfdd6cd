from __future__ import annotations

import json
from enum import Enum
from pathlib import Path

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel


class Tier(str, Enum):
    TRIVIAL = "trivial"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    NONE = "none"


class EvictionReason(str, Enum):
    CONFLICT = "conflict"
    CI_FAILURE = "ci-failure"


class _PlanModel(BaseModel):
    """Strict base for hand-edited plan files (camelCase on disk)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid", frozen=True)


class _Record(BaseModel):
    """Lenient base for worker-produced records; unknown keys are dropped."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Work plan
# ---------------------------------------------------------------------------


class WorkUnit(_PlanModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    deps: tuple[str, ...] = ()
    acceptance: tuple[str, ...] = ()
    tier: Tier
    rfc_sections: tuple[str, ...] = ()
    priority: Priority = Priority.MEDIUM

    @field_validator("id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("unit id must be non-empty")
        if ":" in stripped:
            raise ValueError(f"unit id must not contain ':' (got {stripped!r})")
        return stripped

    @field_validator("deps")
    @classmethod
    def _dedupe_deps(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(dict.fromkeys(dep.strip() for dep in value if dep.strip()))


class RepoContext(_PlanModel):
    project_name: str
    build_cmds: dict[str, str] = Field(default_factory=dict)
    test_cmds: dict[str, str] = Field(default_factory=dict)


class WorkPlan(_PlanModel):
    source: str = ""
    generated_at: str = ""
    repo: RepoContext
    units: tuple[WorkUnit, ...]

    @property
    def unit_ids(self) -> list[str]:
        return [unit.id for unit in self.units]

    def unit(self, unit_id: str) -> WorkUnit:
        for unit in self.units:
            if unit.id == unit_id:
                return unit
        raise KeyError(f"Unknown work unit: {unit_id}")

    @property
    def verify_commands(self) -> list[str]:
        return [*self.repo.build_cmds.values(), *self.repo.test_cmds.values()]

    @classmethod
    def load(cls, path: Path) -> "WorkPlan":
        """Read and validate a ``work-plan.json`` file.

        Raises:
            FileNotFoundError: If the plan file does not exist.
            ValueError: If the file is not JSON or fails schema validation.
        """
        if not path.is_file():
            raise FileNotFoundError(f"work plan not found: {path}")
        text = path.read_text(encoding="utf-8")
        try:
            return cls.model_validate(json.loads(text))
        except json.JSONDecodeError as exc:
            raise ValueError(f"work plan at {path} is not valid JSON: {exc}") from exc
        except ValidationError as exc:
            raise ValueError(f"work plan at {path} failed validation: {exc}") from exc


class DepSummary(_PlanModel):
    """What a dependency's latest implement stage produced."""

    id: str
    what_was_done: str
    files_created: tuple[str, ...] = ()
    files_modified: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Stage records
# ---------------------------------------------------------------------------


class ResearchRecord(_Record):
    context_file_path: str
    findings: list[str] = Field(default_factory=list)
    references_read: list[str] = Field(default_factory=list)
    open_questions: list[str] = Field(default_factory=list)
    notes: str | None = None


class PlanRecord(_Record):
    plan_file_path: str
    implementation_steps: list[str] = Field(default_factory=list)
    files_to_create: list[str] = Field(default_factory=list)
    files_to_modify: list[str] = Field(default_factory=list)
    complexity: Tier


class ImplementRecord(_Record):
    summary: str
    files_created: list[str] | None = None
    files_modified: list[str] | None = None
    what_was_done: str
    next_steps: str | None = None
    believes_complete: bool


class TestRecord(_Record):
    __test__ = False

    build_passed: bool
    tests_passed: bool
    tests_pass_count: int = 0
    tests_fail_count: int = 0
    failing_summary: str | None = None
    test_output: str = ""

    @property
    def passed(self) -> bool:
        return self.build_passed and self.tests_passed


class ReviewIssue(_Record):
    severity: Severity
    description: str
    file: str | None = None
    suggestion: str | None = None
    reference: str | None = None

    def render(self) -> str:
        location = f" ({self.file})" if self.file else ""
        return f"[{self.severity.value}] {self.description}{location}"


class ReviewRecord(_Record):
    """Shared schema for the prd-review and code-review stages."""

    severity: Severity
    approved: bool
    feedback: str
    issues: list[ReviewIssue] | None = None

    @property
    def clean(self) -> bool:
        return self.approved or self.severity == Severity.NONE


class FixMade(_Record):
    issue: str
    fix: str
    file: str | None = None


class FalsePositive(_Record):
    issue: str
    reasoning: str


class ReviewFixRecord(_Record):
    summary: str
    fixes_made: list[FixMade] = Field(default_factory=list)
    false_positives: list[FalsePositive] = Field(default_factory=list)
    all_issues_resolved: bool
    build_passed: bool
    tests_passed: bool


class RemainingIssue(_Record):
    severity: Severity
    description: str
    file: str | None = None


class FinalReviewRecord(_Record):
    ready_to_move_on: bool
    reasoning: str
    approved: bool
    quality_score: float = 0.0
    remaining_issues: list[RemainingIssue] | None = None


# ---------------------------------------------------------------------------
# Landing, pass and completion records
# ---------------------------------------------------------------------------

_UNIT_ID_ALIASES = AliasChoices("unit_id", "unitId", "ticket_id", "ticketId")


class LandedUnit(_Record):
    unit_id: str = Field(validation_alias=_UNIT_ID_ALIASES)
    merge_commit: str | None = None
    summary: str = ""


class EvictedUnit(_Record):
    unit_id: str = Field(validation_alias=_UNIT_ID_ALIASES)
    # Reasons outside EvictionReason are kept verbatim.
    reason: EvictionReason | str = Field(union_mode="left_to_right")
    details: str

    @property
    def reason_text(self) -> str:
        return self.reason.value if isinstance(self.reason, EvictionReason) else self.reason


class SkippedUnit(_Record):
    unit_id: str = Field(validation_alias=_UNIT_ID_ALIASES)
    reason: str


class LandingRecord(_Record):
    landed: list[LandedUnit] = Field(
        default_factory=list, validation_alias=AliasChoices("landed", "ticketsLanded", "tickets_landed")
    )
    evicted: list[EvictedUnit] = Field(
        default_factory=list, validation_alias=AliasChoices("evicted", "ticketsEvicted", "tickets_evicted")
    )
    skipped: list[SkippedUnit] = Field(
        default_factory=list, validation_alias=AliasChoices("skipped", "ticketsSkipped", "tickets_skipped")
    )
    summary: str = ""
    next_actions: str | None = None

    def landed_ids(self) -> list[str]:
        return [entry.unit_id for entry in self.landed]

    def evicted_ids(self) -> list[str]:
        return [entry.unit_id for entry in self.evicted]

    def skipped_ids(self) -> list[str]:
        return [entry.unit_id for entry in self.skipped]


class PassRecord(_Record):
    total_iterations: int
    units_run: list[str] = Field(default_factory=list)
    units_complete: list[str] = Field(default_factory=list)
    summary: str = ""


class FailedUnit(_Record):
    unit_id: str
    last_stage: str
    reason: str


class CompletionReport(_Record):
    run_id: str = ""
    total_units: int
    units_landed: list[str] = Field(default_factory=list)
    units_failed: list[FailedUnit] = Field(default_factory=list)
    passes_used: int
    exhausted: bool = False
    summary: str
    next_steps: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.units_failed and len(self.units_landed) == self.total_units


# ---------------------------------------------------------------------------
# Agent configuration
# ---------------------------------------------------------------------------


class AgentConfig(BaseModel):
    """Runtime config for one agent role, loaded from ``agent_configs/<stage>/<role>.json``."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    stage: str
    role: str
    title: str
    model_tier: str
    temperature: float = 0.0
    max_context_tokens: int = Field(gt=0)
    context_policy: str
    allowed_context_sections: list[str] = Field(min_length=1)
