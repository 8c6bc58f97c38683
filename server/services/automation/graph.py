"""Read-only node graph index and structural validation."""

from typing import Dict, Iterator, List, Optional

from constants import NODE_TRIGGER
from core.logging import get_logger
from models.nodes import AutomationNode, BranchNode, FilterNode
from .conditions import validate_conditions
from .exceptions import GraphError, ValidationError

logger = get_logger(__name__)


class NodeGraph:
    """Nodes of one automation indexed by id.

    Nodes reference each other by id only; the graph is never mutated while
    runs walk it.
    """

    def __init__(self, root_node_id: str, nodes: Dict[str, AutomationNode]):
        self.root_node_id = root_node_id
        self._nodes = dict(nodes)

    @classmethod
    def from_automation(cls, automation) -> "NodeGraph":
        return cls(automation.root_node_id, automation.nodes)

    def get(self, node_id: Optional[str]) -> Optional[AutomationNode]:
        if not node_id:
            return None
        return self._nodes.get(node_id)

    @property
    def root(self) -> Optional[AutomationNode]:
        return self._nodes.get(self.root_node_id)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[AutomationNode]:
        return iter(self._nodes.values())

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self) -> None:
        """Check the graph can be walked safely.

        Raises:
            GraphError: missing or non-trigger root, dangling reference, cycle
            ValidationError: malformed condition tree or duplicate branch path ids
        """
        root = self.root
        if root is None:
            raise GraphError("root node does not exist", node_id=self.root_node_id)
        if root.type != NODE_TRIGGER:
            raise GraphError(f"root node must be a trigger, got {root.type}", node_id=root.id)

        for node in self._nodes.values():
            for ref in node.successors():
                if ref not in self._nodes:
                    raise GraphError(f"references unknown node {ref}", node_id=node.id)
            if node.type == NODE_TRIGGER and node.id != self.root_node_id:
                raise GraphError("only the root node may be a trigger", node_id=node.id)
            self._validate_config(node)

        cycle = self.find_cycle()
        if cycle:
            raise GraphError(f"cycle detected: {' -> '.join(cycle)}", node_id=cycle[0])

        unreachable = set(self._nodes) - self.reachable()
        if unreachable:
            logger.warning("Automation has unreachable nodes", node_ids=sorted(unreachable))

    def _validate_config(self, node: AutomationNode) -> None:
        problems: List[str] = []
        if isinstance(node, BranchNode):
            path_ids = [p.id for p in node.config.paths]
            if len(path_ids) != len(set(path_ids)):
                problems.append("branch path ids must be unique")
            for i, path in enumerate(node.config.paths):
                problems.extend(validate_conditions(path.conditions, f"paths.{i}.conditions"))
        elif isinstance(node, FilterNode):
            problems.extend(validate_conditions(node.config.conditions))

        if problems:
            raise ValidationError(f"node {node.id}: " + "; ".join(problems))

    def reachable(self) -> set:
        """Ids reachable from the root."""
        seen = set()
        stack = [self.root_node_id]
        while stack:
            node_id = stack.pop()
            if node_id in seen or node_id not in self._nodes:
                continue
            seen.add(node_id)
            stack.extend(self._nodes[node_id].successors())
        return seen

    def find_cycle(self) -> Optional[List[str]]:
        """Return the node ids of one cycle, or None if the graph is acyclic."""
        WHITE, GREY, BLACK = 0, 1, 2
        color = {node_id: WHITE for node_id in self._nodes}

        for start in self._nodes:
            if color[start] != WHITE:
                continue
            # Iterative DFS; each frame is (node_id, iterator over successors)
            path = [start]
            stack = [(start, iter(self._nodes[start].successors()))]
            color[start] = GREY
            while stack:
                node_id, successors = stack[-1]
                advanced = False
                for ref in successors:
                    if ref not in color:
                        continue
                    if color[ref] == GREY:
                        return path[path.index(ref):] + [ref]
                    if color[ref] == WHITE:
                        color[ref] = GREY
                        path.append(ref)
                        stack.append((ref, iter(self._nodes[ref].successors())))
                        advanced = True
                        break
                if not advanced:
                    color[node_id] = BLACK
                    path.pop()
                    stack.pop()
        return None
