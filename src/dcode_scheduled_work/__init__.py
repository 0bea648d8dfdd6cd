from importlib.metadata import version

from .errors import GraphError, PlanChangedError, StageFailure
from .graph import DagValidation, GraphIssue, build_layers, compute_layers, validate_dag
from .landing import LandingCoordinator, normalize_landing, order_candidates
from .models import (
    CompletionReport,
    DepSummary,
    EvictionReason,
    FinalReviewRecord,
    ImplementRecord,
    LandingRecord,
    PassRecord,
    PlanRecord,
    Priority,
    RepoContext,
    ResearchRecord,
    ReviewFixRecord,
    ReviewRecord,
    Severity,
    TestRecord,
    Tier,
    WorkPlan,
    WorkUnit,
)
from .orchestrator import ScheduledWorkOrchestrator
from .output_store import OutputStore
from .pipeline import QualityPipeline
from .projection import RunView, derive_run_view, tier_complete
from .settings import RuntimeSettings
from .stages import Stage, has_stage, landing_node_id, stage_node_id, stages_for
from .workers import LandingRequest, LandingWorker, StageRequest, StageWorker, WorkerInvoker


def get_version() -> str:
    try:
        return version("dcode-scheduled-work")
    except Exception:
        return "0.0.0"


__all__ = [
    "CompletionReport",
    "DagValidation",
    "DepSummary",
    "EvictionReason",
    "FinalReviewRecord",
    "GraphError",
    "GraphIssue",
    "ImplementRecord",
    "LandingCoordinator",
    "LandingRecord",
    "LandingRequest",
    "LandingWorker",
    "OutputStore",
    "PassRecord",
    "PlanChangedError",
    "PlanRecord",
    "Priority",
    "QualityPipeline",
    "RepoContext",
    "ResearchRecord",
    "ReviewFixRecord",
    "ReviewRecord",
    "RunView",
    "RuntimeSettings",
    "ScheduledWorkOrchestrator",
    "Severity",
    "Stage",
    "StageFailure",
    "StageRequest",
    "StageWorker",
    "TestRecord",
    "Tier",
    "WorkPlan",
    "WorkUnit",
    "WorkerInvoker",
    "build_layers",
    "compute_layers",
    "derive_run_view",
    "has_stage",
    "landing_node_id",
    "normalize_landing",
    "order_candidates",
    "stage_node_id",
    "stages_for",
    "tier_complete",
    "validate_dag",
]
