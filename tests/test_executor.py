"""Graph executor: ordering, validation, partial failure and branching."""

import time

import pytest

from conftest import make_graph
from services.execution import (
    ExecutionStatus,
    NodeStatus,
    NodeTypeNotFound,
    WorkflowValidationError,
    compute_execution_layers,
)


def node(node_id, type_id="echo", **config):
    return {"id": node_id, "type_id": type_id, "config": {"tag": node_id, **config}}


def edge(source, target, condition=None):
    data = {"source": source, "target": target}
    if condition:
        data["condition"] = condition
    return data


class TestValidation:

    def test_layers_follow_edges(self):
        graph = make_graph(
            [node("a"), node("b"), node("c"), node("d")],
            [edge("a", "b"), edge("a", "c"), edge("b", "d"), edge("c", "d")],
        )
        assert compute_execution_layers(graph) == [["a"], ["b", "c"], ["d"]]

    async def test_cycle_rejected_before_any_node_runs(self, executor, recorder):
        graph = make_graph(
            [node("a"), node("b"), node("c")],
            [edge("a", "b"), edge("b", "c"), edge("c", "b")],
        )
        with pytest.raises(WorkflowValidationError) as exc_info:
            await executor.execute(graph, {}, "owner-1")

        assert "cycle" in str(exc_info.value)
        assert recorder.calls == []

    def test_unknown_type_is_validation_error(self, executor):
        graph = make_graph([node("a", type_id="does-not-exist")])
        with pytest.raises(NodeTypeNotFound) as exc_info:
            executor.validate(graph)
        assert exc_info.value.type_id == "does-not-exist"

    def test_dangling_edge(self, executor):
        graph = make_graph([node("a")], [edge("a", "ghost")])
        with pytest.raises(WorkflowValidationError, match="unknown nodes"):
            executor.validate(graph)

    def test_duplicate_ids(self, executor):
        graph = make_graph([node("a"), node("a")])
        with pytest.raises(WorkflowValidationError, match="Duplicate"):
            executor.validate(graph)

    def test_empty_graph(self, executor):
        with pytest.raises(WorkflowValidationError):
            executor.validate(make_graph([]))

    def test_invalid_static_config(self, executor):
        graph = make_graph([{"id": "c", "type_id": "condition", "config": {"operator": "bogus"}}])
        with pytest.raises(WorkflowValidationError) as exc_info:
            executor.validate(graph)
        assert any(p.startswith("c.operator") for p in exc_info.value.problems)


class TestExecution:

    async def test_topological_order(self, executor, recorder):
        graph = make_graph(
            [node("d"), node("c"), node("b"), node("a")],
            [edge("a", "b"), edge("b", "c"), edge("c", "d")],
        )
        result = await executor.execute(graph, {"x": 1}, "owner-1")

        assert result.status == ExecutionStatus.SUCCEEDED
        assert recorder.calls == ["a", "b", "c", "d"]
        assert recorder.inputs["a"] == {"x": 1}

    async def test_failure_skips_dependents_but_not_independent_branch(self, executor):
        graph = make_graph(
            [node("a", type_id="fail"), node("b"), node("c")],
            [edge("a", "b")],
        )
        result = await executor.execute(graph, {}, "owner-1")

        assert result.status == ExecutionStatus.FAILED
        assert result.node_results["a"].status == NodeStatus.FAILED
        assert result.node_results["a"].error == "RuntimeError: boom"
        assert result.node_results["b"].status == NodeStatus.SKIPPED
        assert result.node_results["c"].status == NodeStatus.SUCCEEDED
        assert "boom" in result.error

    async def test_independent_nodes_run_concurrently(self, executor):
        graph = make_graph([
            {"id": "s1", "type_id": "sleep", "config": {"seconds": 0.1}},
            {"id": "s2", "type_id": "sleep", "config": {"seconds": 0.1}},
        ])
        start = time.monotonic()
        result = await executor.execute(graph, {}, "owner-1")
        elapsed = time.monotonic() - start

        assert result.status == ExecutionStatus.SUCCEEDED
        assert elapsed < 0.18

    async def test_fan_in_receives_outputs_keyed_by_source(self, executor, recorder):
        graph = make_graph(
            [node("a"), node("b"), node("join")],
            [edge("a", "join"), edge("b", "join")],
        )
        await executor.execute(graph, {"v": 1}, "owner-1")

        assert set(recorder.inputs["join"]) == {"a", "b"}
        assert recorder.inputs["join"]["a"] == {"tag": "a", "input": {"v": 1}}

    async def test_single_terminal_output_is_unwrapped(self, executor):
        graph = make_graph([node("a"), node("b")], [edge("a", "b")])
        result = await executor.execute(graph, {}, "owner-1")
        assert result.final_output["tag"] == "b"

    async def test_node_timeout_is_node_failure(self, registry):
        from services.execution import GraphExecutor

        executor = GraphExecutor(registry, node_timeout=0.05)
        graph = make_graph([{"id": "slow", "type_id": "sleep", "config": {"seconds": 1}}])
        result = await executor.execute(graph, {}, "owner-1")

        assert result.node_results["slow"].status == NodeStatus.FAILED
        assert "timed out" in result.node_results["slow"].error

    async def test_logs_cover_every_node(self, executor):
        graph = make_graph([node("a", type_id="fail"), node("b")], [edge("a", "b")])
        result = await executor.execute(graph, {}, "owner-1")

        levels = {(entry.node_id, entry.level) for entry in result.logs if entry.node_id}
        assert ("a", "error") in levels
        assert ("b", "warn") in levels


class TestBranching:

    async def test_condition_routes_true_branch_only(self, executor, recorder):
        graph = make_graph(
            [
                {"id": "check", "type_id": "condition",
                 "config": {"field": "amount", "operator": "gt", "value": 100}},
                node("big"),
                node("small"),
            ],
            [
                edge("check", "big", {"field": "result", "operator": "is_true"}),
                edge("check", "small", {"field": "result", "operator": "is_false"}),
            ],
        )
        result = await executor.execute(graph, {"amount": 250}, "owner-1")

        assert result.status == ExecutionStatus.SUCCEEDED
        assert result.node_results["big"].status == NodeStatus.SUCCEEDED
        assert result.node_results["small"].status == NodeStatus.SKIPPED
        assert "small" not in recorder.calls

    async def test_join_after_branch_still_runs(self, executor, recorder):
        graph = make_graph(
            [
                {"id": "check", "type_id": "condition",
                 "config": {"field": "ok", "operator": "eq", "value": True}},
                node("yes"),
                node("no"),
                node("join"),
            ],
            [
                edge("check", "yes", {"field": "result", "operator": "is_true"}),
                edge("check", "no", {"field": "result", "operator": "is_false"}),
                edge("yes", "join"),
                edge("no", "join"),
            ],
        )
        result = await executor.execute(graph, {"ok": True}, "owner-1")

        assert result.node_results["no"].status == NodeStatus.SKIPPED
        assert result.node_results["join"].status == NodeStatus.SUCCEEDED
        assert set(recorder.inputs["join"]) == {"yes"}


class TestTemplates:

    async def test_config_resolves_input_and_upstream_outputs(self, executor):
        graph = make_graph(
            [
                {"id": "fields", "type_id": "set-fields",
                 "config": {"fields": {"name": "{{input.user.name}}"}}},
                {"id": "copy", "type_id": "set-fields",
                 "config": {"fields": {"greeting": "hi {{fields.name}}", "count": "{{input.fields.n}}"},
                            "keepInput": False}},
            ],
            [edge("fields", "copy")],
        )
        result = await executor.execute(graph, {"user": {"name": "ada"}, "n": 3}, "owner-1")

        assert result.node_results["fields"].output["name"] == "ada"
        assert result.node_results["copy"].output == {"greeting": "hi ada", "count": 3}
