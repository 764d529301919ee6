"""Visualization graph builder.

Projects a job's StageRecords onto the language-neutral schema: one node per
unit of every stage that ran, one edge per relation. Node ids are content
addressed, so rebuilding from the same records gives the same graph.
stage_view() cuts a stored graph down to the nodes and edges of one stage.
"""

from __future__ import annotations

from collections.abc import Iterable

from compilerhub.exceptions import StageNotFoundError
from compilerhub.hash_utils import content_id
from compilerhub.models import GraphEdge, GraphNode, StageRecord, VisualizationGraph


def node_id(stage_name: str, key: str, label: str, kind: str) -> str:
    return content_id(stage_name, key, label, kind)


class GraphBuilder:
    """Stateless; a single instance can be shared by all jobs."""

    def build(self, records: Iterable[StageRecord]) -> VisualizationGraph:
        nodes: list[GraphNode] = []
        edges: list[GraphEdge] = []
        stages: list[str] = []
        for record in records:
            if not record.ran:
                continue
            stages.append(record.stage_name)
            artifact = record.artifact
            if artifact is None:
                continue
            ids: dict[str, str] = {}
            for unit in artifact.units:
                ids[unit.key] = node_id(record.stage_name, unit.key, unit.label, unit.kind)
                nodes.append(
                    GraphNode(id=ids[unit.key], stage_name=record.stage_name, label=unit.label, kind=unit.kind)
                )
            for relation in artifact.relations:
                source, target = ids.get(relation.source), ids.get(relation.target)
                if source is None or target is None:
                    continue
                edges.append(GraphEdge(from_node_id=source, to_node_id=target, kind=relation.kind))
        return VisualizationGraph(nodes=tuple(nodes), edges=tuple(edges), stages=tuple(stages))


def build_graph(records: Iterable[StageRecord]) -> VisualizationGraph:
    return GraphBuilder().build(records)


ALL_STAGES = "all"


def stage_view(graph: VisualizationGraph, stage: str | None) -> VisualizationGraph:
    """The part of a graph produced by one stage (``None`` or ``all`` keeps everything).

    Raises:
        StageNotFoundError: the stage did not run for this job.
    """
    if stage is None or stage == ALL_STAGES:
        return graph
    if stage not in graph.stages:
        raise StageNotFoundError(
            f"Stage {stage} did not run (ran: {', '.join(graph.stages) or 'none'})",
            context={"stage": stage, "stages": list(graph.stages)},
        )
    nodes = tuple(n for n in graph.nodes if n.stage_name == stage)
    ids = {n.id for n in nodes}
    edges = tuple(e for e in graph.edges if e.from_node_id in ids and e.to_node_id in ids)
    return VisualizationGraph(nodes=nodes, edges=edges, stages=(stage,))
