import pytest

from dcode_scheduled_work.agent_runtime import (
    extract_agent_text,
    extract_json_payload,
    get_agent_config_dir,
    load_agent_config,
    load_role_bindings,
)
from dcode_scheduled_work.model_selection import RuntimeModelSelection
from dcode_scheduled_work.prompts import LANDING_ROLE, ROLE_BY_STAGE, render_stage_prompt, system_prompt_for
from dcode_scheduled_work.models import LandingRecord
from dcode_scheduled_work.settings import RuntimeSettings
from dcode_scheduled_work.stages import Stage


def test_agent_configs_cover_every_role() -> None:
    paths = sorted(get_agent_config_dir().glob("*.json"))
    roles = {load_agent_config(path).role for path in paths}
    assert roles == {*ROLE_BY_STAGE.values(), LANDING_ROLE}
    for path in paths:
        cfg = load_agent_config(path)
        assert cfg.max_context_tokens > 0
        assert cfg.allowed_context_sections


def test_role_bindings_resolve_model_tiers() -> None:
    settings = RuntimeSettings(model_frontier="frontier-model", model_efficient="efficient-model", model_economy="cheap")
    bindings = load_role_bindings(settings=settings)
    assert bindings["implementer"].model_name == "frontier-model"
    assert bindings["tester"].model_name == "cheap"
    assert bindings[LANDING_ROLE].model_name == "efficient-model"


def test_model_selection_rejects_unknown_tier() -> None:
    selection = RuntimeModelSelection(by_tier={"frontier": "a", "efficient": "b", "economy": "c"})
    with pytest.raises(ValueError):
        selection.resolve("implementer", "galaxy-brain")
    with pytest.raises(ValueError):
        RuntimeModelSelection(by_tier={"frontier": "a"})


def test_extract_json_payload_variants() -> None:
    assert extract_json_payload('{"a": 1}') == {"a": 1}
    assert extract_json_payload('Done.\n```json\n{"b": 2}\n```') == {"b": 2}
    assert extract_json_payload('Result follows {"c": {"d": 3}} thanks') == {"c": {"d": 3}}
    with pytest.raises(RuntimeError):
        extract_json_payload("no json here")
    with pytest.raises(RuntimeError):
        extract_json_payload("   ")


def test_extract_agent_text_reads_last_message() -> None:
    response = {"messages": [{"content": "first"}, {"content": [{"text": "final"}, {"type": "tool"}]}]}
    assert extract_agent_text(response).startswith("final")


def test_system_prompt_lists_output_keys() -> None:
    prompt = system_prompt_for(LANDING_ROLE, "Merge queue operator", LandingRecord)
    assert "Merge queue operator" in prompt
    assert "landed" in prompt and "evicted" in prompt and "skipped" in prompt


def test_research_prompt_includes_sources() -> None:
    prompt = render_stage_prompt(
        Stage.RESEARCH,
        {
            "unit_id": "a",
            "unit_name": "Parser",
            "tier": "medium",
            "pass_number": 1,
            "max_passes": 3,
            "description": "Parse config files",
            "rfc_source": "docs/rfc.md",
            "rfc_sections": ["3.1", "3.2"],
            "context_file_path": "docs/research/a.md",
            "eviction_context": None,
        },
    )
    assert "docs/rfc.md" in prompt
    assert "- 3.1" in prompt
    assert "docs/research/a.md" in prompt
    assert "Eviction" not in prompt
