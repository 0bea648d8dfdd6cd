import pytest
from fakes import ScriptedLandingWorker, make_plan, make_unit

from dcode_scheduled_work.landing import NOT_REPORTED, LandingCoordinator, normalize_landing, order_candidates
from dcode_scheduled_work.models import LandingRecord
from dcode_scheduled_work.output_store import OutputStore
from dcode_scheduled_work.stages import landing_node_id
from dcode_scheduled_work.workers import WorkerInvoker
from dcode_scheduled_work.workspace import WorkspaceManager


@pytest.fixture
def build_coordinator(store: OutputStore, workspaces: WorkspaceManager):
    def build(plan, worker) -> LandingCoordinator:
        return LandingCoordinator(
            plan=plan,
            store=store,
            worker=worker,
            invoker=WorkerInvoker(retries=0, timeout_seconds=10),
            workspaces=workspaces,
        )

    return build


def test_candidates_are_ordered_by_priority_then_plan_order() -> None:
    units = [
        make_unit("low-1", priority="low"),
        make_unit("med-1"),
        make_unit("high-1", priority="high"),
        make_unit("med-2"),
        make_unit("high-2", priority="high"),
    ]
    assert [unit.id for unit in order_candidates(units)] == ["high-1", "high-2", "med-1", "med-2", "low-1"]


def test_normalize_makes_outcomes_disjoint_and_complete() -> None:
    raw = LandingRecord.model_validate(
        {
            "landed": [{"unit_id": "a"}],
            "evicted": [
                {"unit_id": "a", "reason": "conflict", "details": "dup"},
                {"unit_id": "b", "reason": "ci-failure", "details": "tests red"},
            ],
            "skipped": [{"unit_id": "b", "reason": "dup"}, {"unit_id": "intruder", "reason": "?"}],
            "summary": "worker summary",
        }
    )
    record = normalize_landing(raw, ["a", "b", "c"], node_id="merge-queue:layer-0")

    assert record.landed_ids() == ["a"]
    assert record.evicted_ids() == ["b"]
    assert record.skipped_ids() == ["c"]
    assert record.skipped[0].reason == NOT_REPORTED
    assert record.summary == "worker summary"


def test_legacy_ticket_field_names_are_accepted() -> None:
    raw = LandingRecord.model_validate(
        {
            "ticketsLanded": [{"ticketId": "a", "mergeCommit": "abc123"}],
            "ticketsEvicted": [{"ticketId": "b", "reason": "conflict", "details": "src/x.py"}],
            "ticketsSkipped": [],
            "summary": "",
        }
    )
    assert raw.landed[0].unit_id == "a"
    assert raw.landed[0].merge_commit == "abc123"
    assert raw.evicted_ids() == ["b"]


def test_land_layer_records_worker_outcome(build_coordinator, store: OutputStore) -> None:
    plan = make_plan(make_unit("a", priority="low"), make_unit("b", priority="high"))
    worker = ScriptedLandingWorker()
    record = build_coordinator(plan, worker).land_layer(0, list(plan.units), pass_number=1)

    assert worker.candidate_ids() == [["b", "a"]]
    assert sorted(record.landed_ids()) == ["a", "b"]
    request = worker.requests[0]
    assert request.post_land_checks == ("make build", "make test")
    assert request.candidates[0].branch == "unit/b"
    assert "make test" in request.prompt
    assert store.latest_entry("merge_queue", landing_node_id(0)).iteration == 1


def test_no_candidates_persists_empty_record_without_calling_worker(build_coordinator, store: OutputStore) -> None:
    worker = ScriptedLandingWorker()
    record = build_coordinator(make_plan(make_unit("a")), worker).land_layer(2, [], pass_number=1)

    assert worker.requests == []
    assert record.landed == [] and record.evicted == [] and record.skipped == []
    assert store.latest("merge_queue", landing_node_id(2)) == record


def test_worker_failure_skips_every_candidate(build_coordinator, store: OutputStore) -> None:
    plan = make_plan(make_unit("a"), make_unit("b"))
    worker = ScriptedLandingWorker(policy=lambda request: RuntimeError("git push rejected"))
    record = build_coordinator(plan, worker).land_layer(0, list(plan.units), pass_number=1)

    assert record.landed == [] and record.evicted == []
    assert sorted(record.skipped_ids()) == ["a", "b"]
    assert all("git push rejected" in entry.reason for entry in record.skipped)
    assert store.latest("merge_queue", landing_node_id(0)) == record


def test_landing_is_not_retried(build_coordinator) -> None:
    plan = make_plan(make_unit("a"))
    worker = ScriptedLandingWorker(policy=lambda request: RuntimeError("boom"))
    build_coordinator(plan, worker).land_layer(0, list(plan.units), pass_number=1)
    assert len(worker.requests) == 1


def test_already_landed_units_are_never_offered_again(build_coordinator) -> None:
    plan = make_plan(make_unit("a"), make_unit("b"))
    worker = ScriptedLandingWorker()
    coordinator = build_coordinator(plan, worker)
    coordinator.land_layer(0, [plan.unit("a")], pass_number=1)
    coordinator.land_layer(0, [plan.unit("a"), plan.unit("b")], pass_number=2)

    assert worker.candidate_ids() == [["a"], ["b"]]
