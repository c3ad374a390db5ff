"""Category hierarchy: flat node records, the parent -> children index,
the move resolver and the drag/hover tracker used by the admin console.

Nothing in here talks to the network or the database. The Flask app reuses
TreeIndex to validate submitted batches; the console client uses all of it.
"""
from collections import defaultdict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

ROOT = None  # parent key of the root sibling group


# --- Errors ---
class CategoryTreeError(Exception):
    """Base class for category hierarchy errors."""


class ValidationRejection(CategoryTreeError):
    """A move the console refuses before any network call (cycle-inducing)."""


class PersistenceFailure(CategoryTreeError):
    """The bulk reorder submission failed (network or server side)."""


class ReferenceMismatch(PersistenceFailure):
    """A submitted id (or parent id) does not exist on the server."""

    def __init__(self, message, document_id=None):
        super().__init__(message)
        self.document_id = document_id


# --- Records ---
@dataclass(frozen=True)
class CategoryNode:
    document_id: str
    name: str
    sort_order: int = 0
    parent_id: Optional[str] = None
    slug: str = ''
    description: str = ''
    published: bool = False

    @classmethod
    def from_api(cls, data):
        """Build a node from one item of the admin categories listing."""
        try:
            sort_order = int(data.get('sortOrder') or 0)
        except (TypeError, ValueError):
            sort_order = 0
        parent = data.get('parentDocumentId')
        if parent is None and isinstance(data.get('parent'), dict):
            parent = data['parent'].get('documentId')
        return cls(
            document_id=data['documentId'],
            name=data.get('name') or '',
            sort_order=sort_order,
            parent_id=parent or None,
            slug=data.get('slug') or '',
            description=data.get('description') or '',
            published=bool(data.get('published')),
        )

    def to_reorder_item(self):
        return {
            'documentId': self.document_id,
            'parentDocumentId': self.parent_id,
            'sortOrder': self.sort_order,
        }


def _sibling_key(node):
    return (node.sort_order, node.name)


# --- Index ---
class TreeIndex:
    """Parent -> children grouping over a flat set of nodes.

    Children are ordered by (sort_order, name). The name tiebreak only matters
    for stale data with duplicate or gapped orders.
    """

    def __init__(self, nodes: Iterable[CategoryNode] = ()):
        self._nodes: Dict[str, CategoryNode] = {}
        self._children: Dict[Optional[str], List[CategoryNode]] = defaultdict(list)
        for node in nodes:
            self._nodes[node.document_id] = node
            self._children[node.parent_id].append(node)
        for siblings in self._children.values():
            siblings.sort(key=_sibling_key)

    def __len__(self):
        return len(self._nodes)

    def __contains__(self, node_id):
        return node_id in self._nodes

    def get(self, node_id) -> Optional[CategoryNode]:
        return self._nodes.get(node_id)

    def nodes(self) -> List[CategoryNode]:
        return list(self._nodes.values())

    def children(self, parent_id=ROOT) -> List[CategoryNode]:
        return list(self._children.get(parent_id, ()))

    def roots(self) -> List[CategoryNode]:
        return self.children(ROOT)

    def parent_keys(self):
        return list(self._children.keys())

    def descendants(self, node_id) -> set:
        """Ids of every node reachable from node_id through child links.

        Terminates on cyclic input; on a cycle node_id itself shows up in the
        result.
        """
        found = set()
        stack = [node_id]
        while stack:
            current = stack.pop()
            for child in self._children.get(current, ()):
                if child.document_id not in found:
                    found.add(child.document_id)
                    stack.append(child.document_id)
        return found

    def has_cycle(self) -> bool:
        """Single depth-first pass over child links, colouring nodes as it goes."""
        visiting, done = 1, 2
        colour = {}
        for start in self._nodes:
            if start in colour:
                continue
            colour[start] = visiting
            stack = [(start, iter(self._children.get(start, ())))]
            while stack:
                node_id, children = stack[-1]
                child = next(children, None)
                if child is None:
                    colour[node_id] = done
                    stack.pop()
                    continue
                state = colour.get(child.document_id)
                if state == visiting:
                    return True
                if state is None:
                    colour[child.document_id] = visiting
                    stack.append((child.document_id, iter(self._children.get(child.document_id, ()))))
        return False

    def sibling_orders_are_dense(self) -> bool:
        for siblings in self._children.values():
            if sorted(n.sort_order for n in siblings) != list(range(len(siblings))):
                return False
        return True

    def walk(self) -> Iterator[Tuple[CategoryNode, int]]:
        """Yield (node, depth) depth-first in display order, starting at the roots.

        Nodes caught in a cycle never hang off a root, so they are not yielded.
        """
        seen = set()
        stack = [(node, 0) for node in reversed(self.roots())]
        while stack:
            node, depth = stack.pop()
            if node.document_id in seen:
                continue
            seen.add(node.document_id)
            yield node, depth
            for child in reversed(self._children.get(node.document_id, ())):
                stack.append((child, depth + 1))

    def drop_zones(self) -> Iterator[Tuple[str, Optional[str], int]]:
        """Yield the drop zones a tree view offers, as (mode, target_id, depth).

        Every visible node gets an insert-before zone, the node itself as the
        make-child zone, and an insert-after zone below its subtree. One
        append-to-root zone closes the list.
        """
        open_nodes: List[Tuple[CategoryNode, int]] = []
        for node, depth in self.walk():
            while open_nodes and open_nodes[-1][1] >= depth:
                closed, closed_depth = open_nodes.pop()
                yield MoveMode.AFTER.value, closed.document_id, closed_depth
            yield MoveMode.BEFORE.value, node.document_id, depth
            yield MoveMode.CHILD.value, node.document_id, depth
            open_nodes.append((node, depth))
        while open_nodes:
            closed, closed_depth = open_nodes.pop()
            yield MoveMode.AFTER.value, closed.document_id, closed_depth
        yield MoveMode.ROOT_END.value, None, 0


# --- Moves ---
class MoveMode(str, Enum):
    BEFORE = 'before'
    AFTER = 'after'
    CHILD = 'child'
    ROOT_END = 'root-end'


@dataclass(frozen=True)
class MoveInstruction:
    dragged_id: str
    mode: MoveMode
    target_id: Optional[str] = None

    def __post_init__(self):
        # Accept the raw strings the drop zones carry
        object.__setattr__(self, 'mode', MoveMode(self.mode))


def _renormalize(working, parent_id, ordered_ids=None):
    """Rewrite sort_order of one sibling group to 0..k-1.

    Without ordered_ids the group keeps its current (sort_order, name) order.
    """
    siblings = sorted(
        (n for n in working.values() if n.parent_id == parent_id),
        key=_sibling_key,
    )
    if ordered_ids is not None:
        position = {node_id: i for i, node_id in enumerate(ordered_ids)}
        siblings.sort(key=lambda n: position.get(n.document_id, len(position)))
    for index, node in enumerate(siblings):
        if node.sort_order != index:
            working[node.document_id] = replace(node, sort_order=index)


def _ordered_sibling_ids(working, parent_id, exclude):
    siblings = sorted(
        (n for n in working.values() if n.parent_id == parent_id and n.document_id != exclude),
        key=_sibling_key,
    )
    return [n.document_id for n in siblings]


def resolve_move(nodes: Iterable[CategoryNode], instruction: MoveInstruction):
    """Compute the forest that results from dropping a node.

    Returns a new tuple of nodes in the input order, or None when the drop is a
    no-op (self drop, unknown node, missing target). Raises ValidationRejection
    when the node would end up inside its own subtree. The input is never
    modified.
    """
    nodes = tuple(nodes)
    dragged_id = instruction.dragged_id
    mode = instruction.mode
    target_id = instruction.target_id

    if mode is not MoveMode.ROOT_END and not target_id:
        return None
    if target_id == dragged_id:
        return None

    working = {n.document_id: n for n in nodes}
    dragged = working.get(dragged_id)
    if dragged is None:
        return None

    if mode is MoveMode.ROOT_END:
        new_parent = ROOT
    else:
        target = working.get(target_id)
        if target is None:
            return None
        new_parent = target.document_id if mode is MoveMode.CHILD else target.parent_id
        # before/after a node inside the dragged subtree would also re-parent it there
        if new_parent is not None and (
            new_parent == dragged_id or new_parent in TreeIndex(nodes).descendants(dragged_id)
        ):
            raise ValidationRejection('Cannot move a category into its own descendant.')

    old_parent = dragged.parent_id
    working[dragged_id] = replace(dragged, parent_id=new_parent)

    _renormalize(working, old_parent)

    siblings = _ordered_sibling_ids(working, new_parent, exclude=dragged_id)
    if mode in (MoveMode.BEFORE, MoveMode.AFTER):
        target_index = siblings.index(target_id)
        insert_at = target_index if mode is MoveMode.BEFORE else target_index + 1
        siblings.insert(insert_at, dragged_id)
    else:
        siblings.append(dragged_id)
    _renormalize(working, new_parent, siblings)

    return tuple(working[n.document_id] for n in nodes)


# --- Client state ---
class CategoryStore:
    """The last fetched forest plus its index.

    Replaced wholesale on fetch and rollback, and with the resolver's output on
    a move. Never edited node by node.
    """

    def __init__(self, nodes: Iterable[CategoryNode] = ()):
        self._nodes: Tuple[CategoryNode, ...] = ()
        self._index = TreeIndex()
        self.replace(nodes)

    @property
    def nodes(self) -> Tuple[CategoryNode, ...]:
        return self._nodes

    @property
    def index(self) -> TreeIndex:
        return self._index

    def replace(self, nodes):
        self._nodes = tuple(nodes)
        self._index = TreeIndex(self._nodes)

    def get(self, node_id):
        return self._index.get(node_id)

    def __len__(self):
        return len(self._nodes)


@dataclass
class HoverStateTracker:
    """Which drop zone the pointer dragging a node is over.

    Ephemeral and client-only. It never touches the store; drop() only hands
    back the instruction for the reconciliation controller.
    """
    dragged_id: Optional[str] = None
    hint: Optional[Tuple[MoveMode, Optional[str]]] = field(default=None)

    @property
    def is_dragging(self):
        return self.dragged_id is not None

    def start(self, dragged_id):
        self.dragged_id = dragged_id
        self.hint = None

    def hover(self, mode, target_id=None) -> bool:
        """Record the hovered zone. Returns True only when the hint changed."""
        if not self.is_dragging:
            return False
        mode = MoveMode(mode)
        if mode is MoveMode.ROOT_END:
            target_id = None
        elif target_id is None or target_id == self.dragged_id:
            return False
        candidate = (mode, target_id)
        if self.hint == candidate:
            return False
        self.hint = candidate
        return True

    def leave(self) -> bool:
        if self.hint is None:
            return False
        self.hint = None
        return True

    def drop(self) -> Optional[MoveInstruction]:
        """Consume the current hint. No hint means the drag is simply dropped."""
        instruction = None
        if self.is_dragging and self.hint is not None:
            mode, target_id = self.hint
            instruction = MoveInstruction(self.dragged_id, mode, target_id)
        self.cancel()
        return instruction

    def cancel(self):
        self.dragged_id = None
        self.hint = None
