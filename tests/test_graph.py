import pytest
from fakes import make_plan, make_unit

from dcode_scheduled_work.errors import GraphError
from dcode_scheduled_work.graph import (
    CYCLE_DETECTED,
    DUPLICATE_UNIT,
    UNKNOWN_DEPENDENCY,
    build_layers,
    compute_layers,
    layer_index_map,
    validate_dag,
)


def _ids(layers):
    return [[unit.id for unit in layer] for layer in layers]


def test_valid_dag_has_no_errors() -> None:
    units = [make_unit("a"), make_unit("b", deps=("a",)), make_unit("c", deps=("a", "b"))]
    result = validate_dag(units)
    assert result.valid
    assert result.errors == ()


def test_unknown_dependency_is_reported() -> None:
    result = validate_dag([make_unit("a", deps=("ghost",))])
    assert not result.valid
    assert [(issue.kind, issue.unit_id, issue.dep) for issue in result.errors] == [(UNKNOWN_DEPENDENCY, "a", "ghost")]


def test_cycle_is_reported_at_closing_edge() -> None:
    units = [make_unit("a", deps=("c",)), make_unit("b", deps=("a",)), make_unit("c", deps=("b",))]
    result = validate_dag(units)
    assert not result.valid
    cycles = [issue for issue in result.errors if issue.kind == CYCLE_DETECTED]
    assert len(cycles) == 1
    assert (cycles[0].unit_id, cycles[0].dep) == ("b", "a")


def test_self_dependency_is_a_cycle() -> None:
    result = validate_dag([make_unit("a", deps=("a",))])
    assert [(issue.kind, issue.unit_id, issue.dep) for issue in result.errors] == [(CYCLE_DETECTED, "a", "a")]


def test_duplicate_ids_are_reported() -> None:
    result = validate_dag([make_unit("a"), make_unit("a")])
    assert [issue.kind for issue in result.errors] == [DUPLICATE_UNIT]


def test_all_issues_are_collected() -> None:
    units = [make_unit("a", deps=("missing",)), make_unit("b", deps=("b",)), make_unit("b")]
    kinds = {issue.kind for issue in validate_dag(units).errors}
    assert kinds == {UNKNOWN_DEPENDENCY, CYCLE_DETECTED, DUPLICATE_UNIT}


def test_layers_use_longest_dependency_chain() -> None:
    units = [
        make_unit("a"),
        make_unit("b"),
        make_unit("c", deps=("a",)),
        make_unit("d", deps=("a", "c")),
        make_unit("e", deps=("b",)),
    ]
    assert _ids(compute_layers(units)) == [["a", "b"], ["c", "e"], ["d"]]


def test_every_dependency_sits_in_a_lower_layer() -> None:
    units = [
        make_unit("root"),
        make_unit("left", deps=("root",)),
        make_unit("right", deps=("root",)),
        make_unit("join", deps=("left", "right")),
        make_unit("tail", deps=("join", "root")),
    ]
    layers = compute_layers(units)
    index = layer_index_map(layers)
    for unit in units:
        for dep in unit.deps:
            assert index[dep] < index[unit.id]
    assert index == {"root": 0, "left": 1, "right": 1, "join": 2, "tail": 3}


def test_build_layers_rejects_invalid_plan() -> None:
    plan = make_plan(make_unit("a", deps=("b",)), make_unit("b", deps=("a",)))
    with pytest.raises(GraphError) as excinfo:
        build_layers(plan)
    assert excinfo.value.issues
    assert "cycle detected" in str(excinfo.value)


def test_build_layers_of_empty_plan_is_empty() -> None:
    assert build_layers(make_plan()) == []
