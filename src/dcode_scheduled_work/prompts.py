"""Prompt rendering for stage and landing agents.

Renderers only format the context the pipeline assembled; they never read the
output store themselves.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from pydantic import BaseModel

from .models import LandingRecord
from .stages import Stage

ROLE_BY_STAGE: dict[Stage, str] = {
    Stage.RESEARCH: "researcher",
    Stage.PLAN: "planner",
    Stage.IMPLEMENT: "implementer",
    Stage.TEST: "tester",
    Stage.PRD_REVIEW: "prd_reviewer",
    Stage.CODE_REVIEW: "code_reviewer",
    Stage.REVIEW_FIX: "review_fixer",
    Stage.FINAL_REVIEW: "final_reviewer",
}
LANDING_ROLE = "merge_queue"

_ROLE_INSTRUCTIONS: dict[str, str] = {
    "researcher": (
        "Gather the context needed to implement the unit. Read the referenced documents and the relevant "
        "code, then write your findings to the context file."
    ),
    "planner": (
        "Turn the research into a concrete implementation plan. Write it to the plan file and list the "
        "files to create and modify."
    ),
    "implementer": (
        "Implement the unit in the workspace, following the plan when there is one. Address every piece of "
        "feedback and every failing test you are given. Commit your work to the unit branch."
    ),
    "tester": (
        "Run the build and test commands in the workspace and report the results exactly. Do not change "
        "production code."
    ),
    "prd_reviewer": (
        "Check the implementation against the unit's description and acceptance criteria. Approve only if "
        "every criterion is met."
    ),
    "code_reviewer": (
        "Review the changed code for correctness, clarity and maintainability. Approve only if no "
        "critical or major issue remains."
    ),
    "review_fixer": (
        "Fix the issues raised by the reviewers, or explain why an issue is a false positive. Re-run the "
        "validation commands afterwards."
    ),
    "final_reviewer": (
        "Decide whether the unit is ready to be landed on the main branch. Your reasoning is handed to the "
        "implementer verbatim if you say it is not ready."
    ),
    LANDING_ROLE: (
        "Land tier-complete unit branches onto the main branch, one at a time, in the order given. Rebase "
        "each branch onto the current main, run the post-land checks, and fast-forward main when they pass. "
        "Evict a unit on a rebase conflict (reason 'conflict') or a failing check (reason 'ci-failure') and "
        "put the details in the eviction so the unit can fix it next pass."
    ),
}


def _output_contract(schema: type[BaseModel]) -> str:
    keys = ", ".join(schema.model_fields)
    return (
        "When you are done, reply with a single JSON object and nothing else. "
        f"It must match the {schema.__name__} schema with keys: {keys}.\n"
        f"JSON schema:\n{json.dumps(schema.model_json_schema(), indent=2, sort_keys=True)}"
    )


def system_prompt_for(role: str, title: str, schema: type[BaseModel]) -> str:
    instructions = _ROLE_INSTRUCTIONS.get(role, "")
    return f"You are the {title}.\n\n{instructions}\n\n{_output_contract(schema)}"


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def _section(title: str, body: str | None) -> str:
    if body is None or not str(body).strip():
        return ""
    return f"## {title}\n{str(body).strip()}\n"


def _bullets(items: Sequence[Any] | None) -> str | None:
    if not items:
        return None
    return "\n".join(f"- {item}" for item in items)


def _commands(commands: Mapping[str, str] | None) -> str | None:
    if not commands:
        return None
    return "\n".join(f"- {name}: `{command}`" for name, command in commands.items())


def _header(context: Mapping[str, Any]) -> str:
    return (
        f"# Unit {context['unit_id']}: {context['unit_name']}\n"
        f"Tier: {context['tier']} | Pass {context['pass_number']} of {context['max_passes']}\n"
    )


def _join(*parts: str) -> str:
    return "\n".join(part for part in parts if part)


# ---------------------------------------------------------------------------
# Stage renderers
# ---------------------------------------------------------------------------


def _render_research(context: Mapping[str, Any]) -> str:
    return _join(
        _header(context),
        _section("Description", context.get("description")),
        _section("Source document", context.get("rfc_source")),
        _section("Relevant sections", _bullets(context.get("rfc_sections"))),
        _section("Context file", f"Write your findings to `{context['context_file_path']}`."),
        _section("Eviction from the last landing attempt", context.get("eviction_context")),
    )


def _render_plan(context: Mapping[str, Any]) -> str:
    return _join(
        _header(context),
        _section("Description", context.get("description")),
        _section("Acceptance criteria", _bullets(context.get("acceptance"))),
        _section("Research findings", context.get("research_summary")),
        _section("Context file", context.get("context_file_path")),
        _section("Plan file", f"Write the plan to `{context['plan_file_path']}`."),
        _section("Eviction from the last landing attempt", context.get("eviction_context")),
    )


def _render_implement(context: Mapping[str, Any]) -> str:
    dep_lines = [
        f"{dep['id']}: {dep['what_was_done']} "
        f"(created: {', '.join(dep['files_created']) or 'none'}; modified: {', '.join(dep['files_modified']) or 'none'})"
        for dep in context.get("dep_summaries") or []
    ]
    return _join(
        _header(context),
        _section("Description", context.get("description")),
        _section("Acceptance criteria", _bullets(context.get("acceptance"))),
        _section("Plan file", context.get("plan_file_path")),
        _section("Context file", context.get("context_file_path")),
        _section("Implementation steps", _bullets(context.get("implementation_steps"))),
        _section("Previous implementation", context.get("previous_implementation")),
        _section("Failing tests", context.get("failing_tests")),
        _section("Review feedback", context.get("review_feedback")),
        _section("Dependencies already implemented", _bullets(dep_lines)),
        _section("Eviction from the last landing attempt", context.get("eviction_context")),
        _section("Build commands", _commands(context.get("build_cmds"))),
        _section("Test commands", _commands(context.get("test_cmds"))),
    )


def _render_test(context: Mapping[str, Any]) -> str:
    return _join(
        _header(context),
        _section("What was done", context.get("what_was_done")),
        _section("Files created", _bullets(context.get("files_created"))),
        _section("Files modified", _bullets(context.get("files_modified"))),
        _section("Build commands", _commands(context.get("build_cmds"))),
        _section("Test commands", _commands(context.get("test_cmds"))),
    )


def _render_review(context: Mapping[str, Any]) -> str:
    return _join(
        _header(context),
        _section("Description", context.get("description")),
        _section("Acceptance criteria", _bullets(context.get("acceptance"))),
        _section("What was done", context.get("what_was_done")),
        _section("Files created", _bullets(context.get("files_created"))),
        _section("Files modified", _bullets(context.get("files_modified"))),
        _section("Test results", context.get("test_results")),
    )


def _render_review_fix(context: Mapping[str, Any]) -> str:
    return _join(
        _header(context),
        _section(
            f"Requirements review ({context.get('prd_severity') or 'not run'})",
            _join(context.get("prd_feedback") or "", _bullets(context.get("prd_issues")) or ""),
        ),
        _section(
            f"Code review ({context.get('code_severity') or 'not run'})",
            _join(context.get("code_feedback") or "", _bullets(context.get("code_issues")) or ""),
        ),
        _section("Validation commands", _bullets(context.get("validation_commands"))),
    )


def _render_final_review(context: Mapping[str, Any]) -> str:
    return _join(
        _header(context),
        _section("Acceptance criteria", _bullets(context.get("acceptance"))),
        _section("Implementation summary", context.get("impl_summary")),
        _section("Implementer believes complete", str(context.get("believes_complete"))),
        _section(
            "Tests",
            f"build_passed={context.get('build_passed')} passed={context.get('tests_pass_count')} "
            f"failed={context.get('tests_fail_count')}",
        ),
        _section("Failing summary", context.get("failing_summary")),
        _section(
            "Reviews",
            f"requirements: severity={context.get('prd_severity')} approved={context.get('prd_approved')}\n"
            f"code: severity={context.get('code_severity')} approved={context.get('code_approved')}\n"
            f"review fix resolved all issues: {context.get('issues_resolved')}",
        ),
    )


_RENDERERS: dict[Stage, Callable[[Mapping[str, Any]], str]] = {
    Stage.RESEARCH: _render_research,
    Stage.PLAN: _render_plan,
    Stage.IMPLEMENT: _render_implement,
    Stage.TEST: _render_test,
    Stage.PRD_REVIEW: _render_review,
    Stage.CODE_REVIEW: _render_review,
    Stage.REVIEW_FIX: _render_review_fix,
    Stage.FINAL_REVIEW: _render_final_review,
}


def render_stage_prompt(stage: Stage, context: Mapping[str, Any]) -> str:
    return _RENDERERS[stage](context)


def render_landing_prompt(
    *,
    layer_index: int,
    main_branch: str,
    candidates: Sequence[Mapping[str, Any]],
    post_land_checks: Sequence[str],
) -> str:
    lines = [
        f"# Landing layer {layer_index} onto `{main_branch}`",
        "Land these units in order. Each entry gives the unit id, its branch and the files it touched.",
    ]
    for position, candidate in enumerate(candidates, start=1):
        lines.append(
            f"{position}. {candidate['unit_id']} ({candidate['priority']} priority, {candidate['tier']}) "
            f"branch `{candidate['branch']}` at {candidate['worktree_path']}\n"
            f"   created: {', '.join(candidate['files_created']) or 'none'}; "
            f"modified: {', '.join(candidate['files_modified']) or 'none'}"
        )
    lines.append("")
    lines.append(_section("Post-land checks", _bullets(post_land_checks)) or "No post-land checks configured.")
    lines.append(
        "Report every unit above exactly once in `landed`, `evicted` or `skipped`. "
        f"Reply with a {LandingRecord.__name__} JSON object."
    )
    return "\n".join(lines)
