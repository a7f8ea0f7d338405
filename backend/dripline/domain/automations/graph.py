"""Normalized view over the loosely typed automation builder document."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from dripline.domain.automations.schedule import TriggerSchedule, parse_schedule
from dripline.domain.automations.statuses import TRIGGER_SCHEDULED_TIME, EdgePort, NodeType


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _mapping(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def schedule_key(automation_id: str, node_id: str) -> str:
    return f"{automation_id}:{node_id}"


@dataclass(frozen=True)
class Node:
    id: str
    type: str
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def config_kind(self) -> str:
        return _text(self.config.get("kind"))

    @property
    def trigger_kind(self) -> str | None:
        if self.type != NodeType.trigger.value or self.config_kind != "trigger":
            return None
        return _text(self.config.get("triggerKind")) or None


@dataclass(frozen=True)
class Automation:
    id: str
    name: str
    nodes: tuple[Node, ...]
    outgoing: dict[tuple[str, str], tuple[str, ...]]

    def node(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def next_node_id(self, node_id: str, port: str = EdgePort.out.value) -> str | None:
        targets = self.outgoing.get((node_id, port), ())
        return targets[0] if targets else None

    def trigger_nodes(self, trigger_kind: str) -> list[Node]:
        return [node for node in self.nodes if node.trigger_kind == trigger_kind]


@dataclass(frozen=True)
class ScheduledTrigger:
    automation_id: str
    node_id: str
    schedule: TriggerSchedule

    @property
    def key(self) -> str:
        return schedule_key(self.automation_id, self.node_id)


def _parse_nodes(raw_nodes: Any) -> tuple[Node, ...]:
    nodes: dict[str, Node] = {}
    for raw in raw_nodes if isinstance(raw_nodes, list) else []:
        if not isinstance(raw, dict):
            continue
        node_id = _text(raw.get("id"))
        if not node_id:
            continue
        nodes[node_id] = Node(id=node_id, type=_text(raw.get("type")), config=_mapping(raw.get("config")))
    return tuple(nodes.values())


def _parse_edges(raw_edges: Any) -> dict[tuple[str, str], tuple[str, ...]]:
    outgoing: dict[tuple[str, str], tuple[str, ...]] = {}
    for raw in raw_edges if isinstance(raw_edges, list) else []:
        if not isinstance(raw, dict):
            continue
        source = _text(raw.get("from"))
        target = _text(raw.get("to"))
        if not source or not target:
            continue
        port = _text(raw.get("fromPort")) or EdgePort.out.value
        key = (source, port)
        outgoing[key] = (*outgoing.get(key, ()), target)
    return outgoing


def parse_automations(raw_automations: Any) -> list[Automation]:
    """Parse the ``automations`` list, dropping entries without an id."""
    automations: list[Automation] = []
    for raw in raw_automations if isinstance(raw_automations, list) else []:
        if not isinstance(raw, dict):
            continue
        automation_id = _text(raw.get("id"))
        if not automation_id:
            continue
        automations.append(
            Automation(
                id=automation_id,
                name=_text(raw.get("name")),
                nodes=_parse_nodes(raw.get("nodes")),
                outgoing=_parse_edges(raw.get("edges")),
            )
        )
    return automations


def scheduled_triggers(automations: Iterable[Automation]) -> list[ScheduledTrigger]:
    triggers: list[ScheduledTrigger] = []
    for automation in automations:
        for node in automation.trigger_nodes(TRIGGER_SCHEDULED_TIME):
            triggers.append(
                ScheduledTrigger(
                    automation_id=automation.id,
                    node_id=node.id,
                    schedule=parse_schedule(node.config),
                )
            )
    return triggers
