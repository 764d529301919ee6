"""Tests for the stage step-through view."""

import pytest

from compilerhub.exceptions import InvalidOptionError
from compilerhub.models import CompileResult, StageRecord
from compilerhub.stepper import EXPLANATIONS, StepAction, stage_summary, step_through
from tests.fakes import brainfuck_result

SOURCE = "+[-]."


@pytest.fixture(scope="module")
def result() -> CompileResult:
    return brainfuck_result(SOURCE)


class TestStepThrough:
    def test_next(self, result: CompileResult) -> None:
        view = step_through(result, 0, "next")
        assert view.current_step == 1
        assert view.total_steps == 4
        assert view.stage["name"] == "parse"
        assert view.explanation == EXPLANATIONS["parse"]

    def test_prev(self, result: CompileResult) -> None:
        assert step_through(result, 2, StepAction.PREV).stage["name"] == "parse"

    @pytest.mark.parametrize(
        ("current", "action", "to", "expected"),
        [
            (0, "prev", None, 0),
            (3, "next", None, 3),
            (0, "jump", 10, 3),
            (2, "jump", -4, 0),
            (2, "jump", None, 2),
            (-7, "next", None, 0),
        ],
    )
    def test_positions_are_clamped(
        self, result: CompileResult, current: int, action: str, to: int | None, expected: int
    ) -> None:
        assert step_through(result, current, action, to).current_step == expected

    def test_last_stage(self, result: CompileResult) -> None:
        view = step_through(result, 0, "jump", 3)
        assert view.stage["name"] == "execute"
        assert view.explanation.title == "Execution"

    def test_unknown_action(self, result: CompileResult) -> None:
        with pytest.raises(InvalidOptionError, match="Unknown step action 'sideways'"):
            step_through(result, 0, "sideways")

    def test_only_ran_stages_are_steps(self, result: CompileResult) -> None:
        records = (*result.records[:2], StageRecord.not_run("ir"), StageRecord.not_run("execute"))
        partial = result.model_copy(update={"records": records})
        view = step_through(partial, 0, "jump", 5)
        assert view.total_steps == 2
        assert view.stage["name"] == "parse"

    def test_no_stage_ran(self, result: CompileResult) -> None:
        nothing = result.model_copy(update={"records": (StageRecord.not_run("lex"),)})
        with pytest.raises(InvalidOptionError, match="no stages"):
            step_through(nothing)

    def test_unknown_stage_gets_generic_explanation(self, result: CompileResult) -> None:
        renamed = result.model_copy(
            update={"records": (result.records[0].model_copy(update={"stage_name": "vet"}),)}
        )
        view = step_through(renamed, 0, "jump", 0)
        assert view.explanation.title == "Compilation Stage"


class TestStageSummary:
    def test_fields(self, result: CompileResult) -> None:
        summary = stage_summary(result.records[2])
        assert summary["name"] == "ir"
        assert summary["status"] == "completed"
        assert summary["artifact_kind"] == "ir"
        # program function plus five instructions
        assert summary["units"] == 6
        assert summary["resource_exceeded"] == []
        assert summary["truncated"] is False
        assert summary["duration_ms"] >= 0

    def test_record_without_artifact(self) -> None:
        summary = stage_summary(StageRecord.not_run("link"))
        assert summary["artifact_kind"] is None
        assert summary["units"] == 0
        assert summary["status"] == "not_run"
