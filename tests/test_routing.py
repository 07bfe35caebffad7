from __future__ import annotations

import pytest

from carrier.exceptions import ValidationError
from carrier.models import Status, Task, TaskRoute
from carrier.routing import (
    RouteContext,
    evaluate_condition,
    is_complete_route,
    select_route,
    validate_routes,
)


def _ctx(status=Status.COMPLETE, output="", exit_code=0, approved=False, env=None):
    return RouteContext(status=status, output=output, exit_code=exit_code, approved=approved, env=env or {})


def _task(*routes):
    return Task(
        id="review",
        agent="reviewer",
        next_tasks=[TaskRoute(task_id=target, condition=condition) for target, condition in routes],
    )


class TestKeywords:
    @pytest.mark.parametrize(
        ("condition", "status", "expected"),
        [
            ("success", Status.COMPLETE, True),
            ("success", Status.FAILED, False),
            ("failure", Status.FAILED, True),
            ("failed", Status.FAILED, True),
            ("failure", Status.COMPLETE, False),
            ("always", Status.FAILED, True),
            ("", Status.FAILED, True),
            (None, Status.COMPLETE, True),
            ("never", Status.COMPLETE, False),
            ("SUCCESS", Status.COMPLETE, True),
        ],
    )
    def test_keyword(self, condition, status, expected):
        assert evaluate_condition(condition, _ctx(status=status)) is expected

    def test_approved(self):
        assert evaluate_condition("approved", _ctx(approved=True))
        assert not evaluate_condition("approved", _ctx())


class TestExpressions:
    def test_status_equality(self):
        assert evaluate_condition("${task.status} == 'complete'", _ctx())
        assert evaluate_condition("${task.status} != 'failed'", _ctx())

    def test_output_membership(self):
        ctx = _ctx(output="Review: LGTM, ship it")
        assert evaluate_condition("'LGTM' in ${task.output}", ctx)
        assert not evaluate_condition("'REJECT' in ${task.output}", ctx)
        assert evaluate_condition("'REJECT' not in ${task.output}", ctx)

    def test_numeric_exit_code(self):
        assert evaluate_condition("${task.exit_code} == 0", _ctx(exit_code=0))
        assert evaluate_condition("${task.exit_code} >= 2", _ctx(exit_code=3))
        assert not evaluate_condition("${task.exit_code} < 1", _ctx(exit_code=3))

    def test_env_reference(self):
        ctx = _ctx(env={"DEPLOY_ENV": "staging"})
        assert evaluate_condition("${env.DEPLOY_ENV} == 'staging'", ctx)
        assert evaluate_condition("${env.MISSING} == ''", ctx)

    def test_none_compares_as_empty(self):
        assert evaluate_condition("${task.exit_code} == ''", _ctx(exit_code=None))

    def test_operator_inside_quotes_ignored(self):
        assert evaluate_condition("${task.output} == 'a == b'", _ctx(output="a == b"))

    def test_bare_reference_truthiness(self):
        assert evaluate_condition("${task.approved}", _ctx(approved=True))
        assert not evaluate_condition("${env.FLAG}", _ctx(env={"FLAG": "false"}))

    def test_ordering_non_numeric_raises(self):
        with pytest.raises(ValueError):
            evaluate_condition("${task.status} > 'a'", _ctx())

    def test_unknown_condition_raises(self):
        with pytest.raises(ValueError):
            evaluate_condition("whenever", _ctx())

    def test_unknown_field_raises(self):
        with pytest.raises(ValueError):
            evaluate_condition("${task.nope} == 1", _ctx())


class TestSelectRoute:
    def test_first_matching_route_wins(self):
        task = _task(("fix", "failure"), ("deploy", "success"), ("complete", "always"))
        assert select_route(task, _ctx()).task_id == "deploy"
        assert select_route(task, _ctx(status=Status.FAILED)).task_id == "fix"

    def test_no_match_returns_none(self):
        assert select_route(_task(("deploy", "success")), _ctx(status=Status.FAILED)) is None

    def test_broken_condition_is_skipped(self, caplog):
        task = _task(("fix", "${task.status} > 'x'"), ("deploy", "success"))
        with caplog.at_level("WARNING", logger="carrier.routing"):
            route = select_route(task, _ctx())
        assert route.task_id == "deploy"
        assert "Skipping route review -> fix" in caplog.text

    def test_complete_route(self):
        assert is_complete_route(TaskRoute(task_id="complete"))
        assert not is_complete_route(TaskRoute(task_id="deploy"))


class TestValidateRoutes:
    def test_valid_graph(self):
        tasks = [
            Task(id="a", agent="x", next_tasks=[TaskRoute(task_id="b")]),
            Task(id="b", agent="y", next_tasks=[TaskRoute(task_id="complete")]),
        ]
        validate_routes(tasks)

    def test_unknown_target(self):
        tasks = [Task(id="a", agent="x", next_tasks=[TaskRoute(task_id="ghost")])]
        with pytest.raises(ValidationError) as exc_info:
            validate_routes(tasks)
        assert exc_info.value.value == "ghost"
