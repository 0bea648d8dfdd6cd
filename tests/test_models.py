import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from dcode_scheduled_work.canonical import fingerprint, to_canonical_json
from dcode_scheduled_work.models import (
    EvictedUnit,
    EvictionReason,
    LandingRecord,
    ReviewRecord,
    TestRecord,
    WorkPlan,
    WorkUnit,
)

_PLAN = {
    "source": "docs/rfc.md",
    "generatedAt": "2026-01-01T00:00:00Z",
    "repo": {"projectName": "demo", "buildCmds": {"build": "make"}, "testCmds": {}},
    "units": [
        {"id": "a", "name": "A", "tier": "trivial"},
        {"id": "b", "name": "B", "tier": "medium", "deps": ["a", "a"], "rfcSections": ["2.1"]},
    ],
}


def test_plan_loads_camel_case_json(tmp_path: Path) -> None:
    path = tmp_path / "work-plan.json"
    path.write_text(json.dumps(_PLAN), encoding="utf-8")

    plan = WorkPlan.load(path)

    assert plan.unit_ids == ["a", "b"]
    assert plan.unit("b").deps == ("a",)
    assert plan.unit("b").rfc_sections == ("2.1",)
    assert plan.unit("a").priority.value == "medium"
    assert plan.verify_commands == ["make"]
    with pytest.raises(KeyError):
        plan.unit("missing")


def test_plan_load_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        WorkPlan.load(tmp_path / "absent.json")
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        WorkPlan.load(broken)
    unknown_tier = tmp_path / "tier.json"
    unknown_tier.write_text(
        json.dumps({**_PLAN, "units": [{"id": "a", "name": "A", "tier": "huge"}]}), encoding="utf-8"
    )
    with pytest.raises(ValueError):
        WorkPlan.load(unknown_tier)


@pytest.mark.parametrize("unit_id", ["", "   ", "a:b"])
def test_unit_id_rules(unit_id: str) -> None:
    with pytest.raises(ValidationError):
        WorkUnit(id=unit_id, name="x", tier="trivial")


def test_fingerprint_ignores_key_order() -> None:
    reordered = {key: _PLAN[key] for key in reversed(list(_PLAN))}
    assert fingerprint(_PLAN) == fingerprint(reordered)
    assert fingerprint(WorkPlan.model_validate(_PLAN)) == fingerprint(WorkPlan.model_validate(reordered))
    assert to_canonical_json({"b": 1, "a": [True, None]}) == '{"a":[true,null],"b":1}'


def test_landing_record_accepts_legacy_keys() -> None:
    record = LandingRecord.model_validate(
        {
            "ticketsLanded": [{"ticketId": "a", "mergeCommit": "abc"}],
            "ticketsEvicted": [{"ticket_id": "b", "reason": "conflict", "details": "src/x.py"}],
            "ticketsSkipped": [],
        }
    )
    assert record.landed_ids() == ["a"]
    assert record.landed[0].merge_commit == "abc"
    assert record.evicted_ids() == ["b"]


def test_record_helpers() -> None:
    assert TestRecord(build_passed=True, tests_passed=True).passed
    assert not TestRecord(build_passed=False, tests_passed=True).passed
    assert ReviewRecord(severity="minor", approved=True, feedback="").clean
    assert not ReviewRecord(severity="major", approved=False, feedback="fix it").clean
    assert ReviewRecord(severity="none", approved=False, feedback="").clean


def test_eviction_reason_is_typed_when_known() -> None:
    known = EvictedUnit.model_validate({"unitId": "a", "reason": "ci-failure", "details": "lint failed"})
    assert known.reason is EvictionReason.CI_FAILURE
    assert known.reason_text == "ci-failure"

    other = EvictedUnit.model_validate({"unitId": "b", "reason": "branch deleted", "details": ""})
    assert other.reason == "branch deleted"
    assert other.reason_text == "branch deleted"
