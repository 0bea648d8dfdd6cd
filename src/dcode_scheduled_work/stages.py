from __future__ import annotations

from enum import Enum

from pydantic import BaseModel

from .models import (
    CompletionReport,
    FinalReviewRecord,
    ImplementRecord,
    LandingRecord,
    PassRecord,
    PlanRecord,
    ResearchRecord,
    ReviewFixRecord,
    ReviewRecord,
    TestRecord,
    Tier,
)


class Stage(str, Enum):
    RESEARCH = "research"
    PLAN = "plan"
    IMPLEMENT = "implement"
    TEST = "test"
    PRD_REVIEW = "prd-review"
    CODE_REVIEW = "code-review"
    REVIEW_FIX = "review-fix"
    FINAL_REVIEW = "final-review"

    @property
    def output_kind(self) -> str:
        """Output-store table for this stage's records (also its pipeline node name)."""
        return self.value.replace("-", "_")

    @property
    def schema(self) -> type[BaseModel]:
        return STAGE_SCHEMAS[self]


PIPELINE_ORDER: tuple[Stage, ...] = tuple(Stage)

REVIEW_STAGES: frozenset[Stage] = frozenset({Stage.PRD_REVIEW, Stage.CODE_REVIEW})

TIER_STAGES: dict[Tier, tuple[Stage, ...]] = {
    Tier.TRIVIAL: (Stage.IMPLEMENT, Stage.TEST),
    Tier.SMALL: (Stage.IMPLEMENT, Stage.TEST, Stage.CODE_REVIEW),
    Tier.MEDIUM: (
        Stage.RESEARCH,
        Stage.PLAN,
        Stage.IMPLEMENT,
        Stage.TEST,
        Stage.PRD_REVIEW,
        Stage.CODE_REVIEW,
        Stage.REVIEW_FIX,
    ),
    Tier.LARGE: PIPELINE_ORDER,
}

STAGE_SCHEMAS: dict[Stage, type[BaseModel]] = {
    Stage.RESEARCH: ResearchRecord,
    Stage.PLAN: PlanRecord,
    Stage.IMPLEMENT: ImplementRecord,
    Stage.TEST: TestRecord,
    Stage.PRD_REVIEW: ReviewRecord,
    Stage.CODE_REVIEW: ReviewRecord,
    Stage.REVIEW_FIX: ReviewFixRecord,
    Stage.FINAL_REVIEW: FinalReviewRecord,
}

LANDING_KIND = "merge_queue"
PASS_KIND = "pass_tracker"
REPORT_KIND = "completion_report"

PASS_TRACKER_NODE = "pass-tracker"
COMPLETION_REPORT_NODE = "completion-report"

OUTPUT_SCHEMAS: dict[str, type[BaseModel]] = {
    **{stage.output_kind: schema for stage, schema in STAGE_SCHEMAS.items()},
    LANDING_KIND: LandingRecord,
    PASS_KIND: PassRecord,
    REPORT_KIND: CompletionReport,
}


def stages_for(tier: Tier | str) -> tuple[Stage, ...]:
    return TIER_STAGES[Tier(tier)]


def has_stage(tier: Tier | str, stage: Stage | str) -> bool:
    return Stage(stage) in TIER_STAGES[Tier(tier)]


def stage_node_id(unit_id: str, stage: Stage | str) -> str:
    return f"{unit_id}:{Stage(stage).value}"


def landing_node_id(layer_index: int) -> str:
    if layer_index < 0:
        raise ValueError(f"layer index must be non-negative (got {layer_index})")
    return f"merge-queue:layer-{layer_index}"
