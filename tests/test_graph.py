"""Tests for the visualization graph builder."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from compilerhub.exceptions import StageNotFoundError
from compilerhub.graph import GraphBuilder, build_graph, node_id, stage_view
from compilerhub.models import (
    ArtifactKind,
    Relation,
    StageArtifact,
    StageRecord,
    StageStatus,
    Unit,
    utcnow,
)
from tests.fakes import brainfuck_records


def _record(name: str, artifact: StageArtifact | None, status: StageStatus = StageStatus.COMPLETED) -> StageRecord:
    now = utcnow()
    return StageRecord(stage_name=name, status=status, started_at=now, finished_at=now, artifact=artifact)


@st.composite
def stage_records(draw: st.DrawFn) -> list[StageRecord]:
    records = []
    for index in range(draw(st.integers(min_value=1, max_value=4))):
        name = f"stage{index}"
        labels = draw(st.lists(st.text(max_size=6), max_size=8))
        units = tuple(
            Unit(key=f"{name}/{position}", label=label, kind=draw(st.sampled_from(["token", "node"])))
            for position, label in enumerate(labels)
        )
        # Relations may point at keys from other stages; the builder drops those
        keys = [unit.key for unit in units] + ["elsewhere/0"]
        relations = tuple(
            Relation(source=draw(st.sampled_from(keys)), target=draw(st.sampled_from(keys)), kind="child")
            for _ in range(draw(st.integers(min_value=0, max_value=10)))
        )
        status = draw(st.sampled_from(list(StageStatus)))
        records.append(_record(name, StageArtifact(kind=ArtifactKind.AST, units=units, relations=relations), status))
    return records


class TestGraphBuilder:
    def test_brainfuck_program(self) -> None:
        records = brainfuck_records("+[-]>.")
        graph = build_graph(records)
        assert graph.stages == ("lex", "parse", "ir", "execute")
        expected_nodes = sum(len(r.artifact.units) for r in records if r.artifact is not None)
        assert len(graph.nodes) == expected_nodes
        assert {n.stage_name for n in graph.nodes} <= set(graph.stages)

    def test_not_run_stages_are_left_out(self) -> None:
        unit = Unit(key="a", label="a", kind="k")
        graph = build_graph(
            [
                _record("lex", StageArtifact(units=(unit,))),
                _record("parse", StageArtifact(units=(unit,)), StageStatus.NOT_RUN),
            ]
        )
        assert graph.stages == ("lex",)
        assert [n.stage_name for n in graph.nodes] == ["lex"]

    def test_failed_stage_without_artifact_is_listed(self) -> None:
        graph = build_graph([_record("typecheck", None, StageStatus.FAILED)])
        assert graph.stages == ("typecheck",)
        assert graph.nodes == ()

    def test_dangling_relations_are_dropped(self) -> None:
        artifact = StageArtifact(
            units=(Unit(key="a", label="a", kind="k"), Unit(key="b", label="b", kind="k")),
            relations=(
                Relation(source="a", target="b", kind="next"),
                Relation(source="a", target="missing", kind="next"),
            ),
        )
        graph = build_graph([_record("parse", artifact)])
        assert len(graph.edges) == 1
        assert graph.edges[0].kind == "next"

    def test_identical_units_in_different_stages_get_different_ids(self) -> None:
        assert node_id("lex", "tok/0", "x", "identifier") != node_id("parse", "tok/0", "x", "identifier")
        assert node_id("lex", "tok/0", "x", "identifier") == node_id("lex", "tok/0", "x", "identifier")

    def test_empty(self) -> None:
        graph = build_graph([])
        assert graph.nodes == ()
        assert graph.edges == ()
        assert graph.stages == ()

    @given(records=stage_records())
    def test_rebuild_is_identical(self, records: list[StageRecord]) -> None:
        assert GraphBuilder().build(records) == GraphBuilder().build(records)

    @given(records=stage_records())
    def test_ids_unique_and_edges_resolve(self, records: list[StageRecord]) -> None:
        graph = build_graph(records)
        ids = [n.id for n in graph.nodes]
        assert len(ids) == len(set(ids))
        known = set(ids)
        for edge in graph.edges:
            assert edge.from_node_id in known
            assert edge.to_node_id in known
        assert list(graph.stages) == [r.stage_name for r in records if r.ran]

    @given(records=stage_records())
    def test_signatures_describe_content(self, records: list[StageRecord]) -> None:
        graph = build_graph(records)
        assert len(graph.node_signature()) == len(graph.nodes)
        assert len(graph.edge_signature()) == len(graph.edges)


# ============================================================================
# Stage views
# ============================================================================


class TestStageView:
    def test_keeps_one_stage(self) -> None:
        graph = build_graph(brainfuck_records("+[-]."))
        view = stage_view(graph, "parse")
        assert view.stages == ("parse",)
        assert view.nodes
        assert {n.stage_name for n in view.nodes} == {"parse"}
        ids = {n.id for n in view.nodes}
        assert all(e.from_node_id in ids and e.to_node_id in ids for e in view.edges)
        assert len(view.edges) == sum(1 for e in graph.edges if e.from_node_id in ids)

    def test_all_and_none_keep_everything(self) -> None:
        graph = build_graph(brainfuck_records("+."))
        assert stage_view(graph, None) is graph
        assert stage_view(graph, "all") is graph

    def test_stage_that_never_ran(self) -> None:
        graph = build_graph([_record("lex", None), StageRecord.not_run("parse")])
        with pytest.raises(StageNotFoundError, match="Stage parse did not run"):
            stage_view(graph, "parse")
