import os
import subprocess
import sys
import textwrap
import threading
import time
from pathlib import Path

import pytest

from dcode_scheduled_work.errors import StageFailure
from dcode_scheduled_work.llm import normalize_structured_output
from dcode_scheduled_work.models import TestRecord
from dcode_scheduled_work.workers import WorkerInvoker


def test_invoker_validates_output() -> None:
    invoker = WorkerInvoker(retries=0, timeout_seconds=5)
    record = invoker.call(lambda _: {"build_passed": True, "tests_passed": True}, None, schema=TestRecord, node_id="a:test")
    assert isinstance(record, TestRecord)
    assert record.passed


def test_invoker_accepts_structured_output_envelope() -> None:
    invoker = WorkerInvoker(retries=0, timeout_seconds=5)
    envelope = {"parsed": {"build_passed": True, "tests_passed": False}, "parsing_error": None, "raw": None}
    record = invoker.call(lambda _: envelope, None, schema=TestRecord, node_id="a:test")
    assert record.tests_passed is False


def test_envelope_parsing_error_is_chained() -> None:
    cause = ValueError("expected a JSON object")
    envelope = {"parsed": None, "parsing_error": cause, "raw": "not json"}
    with pytest.raises(RuntimeError) as excinfo:
        normalize_structured_output(raw_output=envelope, schema=TestRecord)
    assert excinfo.value.__cause__ is cause

    with pytest.raises(RuntimeError) as excinfo:
        normalize_structured_output(raw_output={**envelope, "parsing_error": "bad json"}, schema=TestRecord)
    assert excinfo.value.__cause__ is None
    assert "bad json" in str(excinfo.value)


def test_invoker_retries_then_raises_stage_failure() -> None:
    calls: list[int] = []

    def broken(_):
        calls.append(1)
        raise ConnectionError("api down")

    invoker = WorkerInvoker(retries=2, timeout_seconds=5)
    with pytest.raises(StageFailure) as excinfo:
        invoker.call(broken, None, schema=TestRecord, node_id="a:test")
    assert len(calls) == 3
    assert excinfo.value.node_id == "a:test"
    assert "api down" in str(excinfo.value)


def test_invoker_treats_schema_mismatch_as_failure() -> None:
    invoker = WorkerInvoker(retries=0, timeout_seconds=5)
    with pytest.raises(StageFailure):
        invoker.call(lambda _: {"unexpected": True}, None, schema=TestRecord, node_id="a:test")


def test_invoker_times_out_slow_calls() -> None:
    invoker = WorkerInvoker(retries=0, timeout_seconds=0.1)

    def slow(_):
        time.sleep(1)
        return {"build_passed": True, "tests_passed": True}

    started = time.monotonic()
    with pytest.raises(StageFailure) as excinfo:
        invoker.call(slow, None, schema=TestRecord, node_id="a:test")
    assert time.monotonic() - started < 0.9
    assert "exceeded" in str(excinfo.value)


def test_invoker_rejects_bad_configuration() -> None:
    with pytest.raises(ValueError):
        WorkerInvoker(retries=-1, timeout_seconds=5)
    with pytest.raises(ValueError):
        WorkerInvoker(retries=0, timeout_seconds=0)


def test_retry_waits_for_the_timed_out_attempt_on_its_lane() -> None:
    in_flight = 0
    peak = 0
    calls: list[int] = []
    lock = threading.Lock()

    def slow_once(_):
        nonlocal in_flight, peak
        with lock:
            calls.append(1)
            in_flight += 1
            peak = max(peak, in_flight)
        try:
            if len(calls) == 1:
                time.sleep(0.3)
            return {"build_passed": True, "tests_passed": True}
        finally:
            with lock:
                in_flight -= 1

    invoker = WorkerInvoker(retries=1, timeout_seconds=0.2)
    record = invoker.call(slow_once, None, schema=TestRecord, node_id="a:test", lane="a")

    assert record.passed
    assert len(calls) == 2
    assert peak == 1


def test_busy_lane_fails_without_starting_another_call() -> None:
    calls: list[str] = []

    def hang(request):
        calls.append(request)
        time.sleep(1)
        return {"build_passed": True, "tests_passed": True}

    invoker = WorkerInvoker(retries=0, timeout_seconds=0.1)
    with pytest.raises(StageFailure):
        invoker.call(hang, "first", schema=TestRecord, node_id="a:test", lane="a")
    with pytest.raises(StageFailure) as excinfo:
        invoker.call(hang, "second", schema=TestRecord, node_id="a:code-review", lane="a")

    assert "still running" in str(excinfo.value)
    assert calls == ["first"]
    # Other lanes are unaffected.
    assert invoker.wait_for_lane("b")


def test_late_results_are_kept_for_the_caller() -> None:
    def slow(_):
        time.sleep(0.3)
        return {"build_passed": True, "tests_passed": False}

    invoker = WorkerInvoker(retries=0, timeout_seconds=0.1, collect_late=True)
    with pytest.raises(StageFailure):
        invoker.call(slow, "req", schema=TestRecord, node_id="merge-queue:layer-0", lane="mainline")
    assert invoker.late_results("mainline") == []

    time.sleep(0.4)
    assert invoker.wait_for_lane("mainline")
    [late] = invoker.late_results("mainline")
    assert late.node_id == "merge-queue:layer-0"
    assert late.request == "req"
    assert late.output == {"build_passed": True, "tests_passed": False}
    assert late.error is None
    assert invoker.late_results("mainline") == []


def test_hung_worker_does_not_block_interpreter_exit() -> None:
    script = textwrap.dedent(
        """
        import time

        from dcode_scheduled_work.errors import StageFailure
        from dcode_scheduled_work.models import TestRecord
        from dcode_scheduled_work.workers import WorkerInvoker

        invoker = WorkerInvoker(retries=0, timeout_seconds=0.5)
        try:
            invoker.call(lambda _: time.sleep(120), None, schema=TestRecord, node_id="hung:test")
        except StageFailure:
            print("timed out")
        """
    )
    src = Path(__file__).resolve().parents[1] / "src"
    env = {**os.environ, "PYTHONPATH": os.pathsep.join(filter(None, [str(src), os.environ.get("PYTHONPATH")]))}

    started = time.monotonic()
    result = subprocess.run([sys.executable, "-c", script], capture_output=True, text=True, env=env, timeout=100)

    assert result.returncode == 0, result.stderr
    assert "timed out" in result.stdout
    assert time.monotonic() - started < 30
