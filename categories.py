import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from models import CategoryNode
from schemas import CategoriesDocument, CategoryRecord

logger = logging.getLogger(__name__)

CATEGORIES_FILE_NAME = "cat.json"


@dataclass(frozen=True)
class DirectorySnapshot:
    order: tuple[str, ...]
    nodes: tuple[CategoryNode, ...]


class CategoryDirectory:
    """Category hierarchy stored as a flat id -> node table.

    Parent/child relations are id references, so nodes never point at each
    other directly. Master categories are kept in display order.
    """

    def __init__(self, nodes: Iterable[CategoryNode] = (), order: Iterable[str] = ()) -> None:
        self._nodes: dict[str, CategoryNode] = {}
        self._order: list[str] = []
        for node in nodes:
            self._nodes[node.id] = node
        for node_id in order:
            self._append_master(node_id)
        for node in self._nodes.values():
            if node.is_master:
                self._append_master(node.id)
        self._check_acyclic()

    def _append_master(self, node_id: str) -> None:
        node = self._nodes.get(node_id)
        if node is not None and node.is_master and node_id not in self._order:
            self._order.append(node_id)

    def _check_acyclic(self) -> None:
        for node_id in self._nodes:
            self.ancestors(node_id)

    def __contains__(self, category_id: str) -> bool:
        return category_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, category_id: str) -> Optional[CategoryNode]:
        return self._nodes.get(category_id)

    def ids(self) -> set[str]:
        return set(self._nodes)

    def masters_in_order(self) -> list[CategoryNode]:
        return [self._nodes[node_id] for node_id in self._order]

    def children_of(self, category_id: str) -> list[CategoryNode]:
        node = self._nodes.get(category_id)
        if node is None:
            return []
        return [self._nodes[cid] for cid in node.child_ids if cid in self._nodes]

    def master_of(self, category_id: str) -> Optional[CategoryNode]:
        chain = self.ancestors(category_id)
        if chain:
            return self._nodes.get(chain[-1])
        return self._nodes.get(category_id)

    def ancestors(self, category_id: str) -> list[str]:
        """Parent ids of ``category_id``, nearest first.

        Raises ``ValueError`` if the parent chain loops.
        """
        chain: list[str] = []
        seen = {category_id}
        node = self._nodes.get(category_id)
        while node is not None and node.parent_id is not None:
            if node.parent_id in seen:
                raise ValueError(f"Category cycle through {node.parent_id!r}")
            seen.add(node.parent_id)
            chain.append(node.parent_id)
            node = self._nodes.get(node.parent_id)
        return chain

    def full_label(self, category_id: str) -> str:
        node = self._nodes.get(category_id)
        if node is None:
            return ""
        parts = [node.label]
        for parent_id in self.ancestors(category_id):
            parent = self._nodes.get(parent_id)
            parts.append(parent.label if parent else parent_id)
        return "/".join(reversed(parts))

    def capture(self) -> DirectorySnapshot:
        return DirectorySnapshot(
            order=tuple(self._order), nodes=tuple(self._nodes.values())
        )

    def restore(self, snapshot: DirectorySnapshot) -> None:
        self._nodes = {node.id: node for node in snapshot.nodes}
        self._order = list(snapshot.order)

    @classmethod
    def from_document(cls, document: CategoriesDocument) -> "CategoryDirectory":
        parents: dict[str, str] = {}
        for master_id in document.order:
            record = document.items.get(master_id)
            if record is None:
                logger.warning(f"category_unknown_master: id={master_id}")
                continue
            for sub_id in record.sub_categories:
                parents[sub_id] = master_id
        for item_id, record in document.items.items():
            if record.master_category and item_id not in parents:
                parents[item_id] = record.master_category

        children: dict[str, list[str]] = {}
        for item_id, record in document.items.items():
            if item_id in parents:
                continue
            children[item_id] = list(record.sub_categories)
        for sub_id, master_id in parents.items():
            siblings = children.setdefault(master_id, [])
            if sub_id not in siblings:
                siblings.append(sub_id)

        nodes = [
            CategoryNode(
                id=item_id,
                label=record.label,
                parent_id=parents.get(item_id),
                child_ids=tuple(children.get(item_id, ())),
                color=None if item_id in parents else record.color,
            )
            for item_id, record in document.items.items()
        ]
        return cls(nodes, document.order)

    @classmethod
    def load_json(cls, content: Optional[str]) -> "CategoryDirectory":
        if not content or not content.strip():
            return cls()
        return cls.from_document(CategoriesDocument.model_validate_json(content))

    def to_document(self) -> CategoriesDocument:
        items: dict[str, CategoryRecord] = {}
        for master in self.masters_in_order():
            items[master.id] = CategoryRecord(
                label=master.label,
                color=master.color,
                sub_categories=list(master.child_ids),
            )
            for child in self.children_of(master.id):
                items[child.id] = CategoryRecord(
                    label=child.label, master_category=master.id
                )
        return CategoriesDocument(order=list(self._order), items=items)

    def dump_json(self) -> str:
        return self.to_document().model_dump_json(by_alias=True, exclude_none=True)
