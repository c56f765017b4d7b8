"""
nav/models.py -- Domain dataclasses for the navigation tree.

Pure data containers with zero logic. Tree rules (parent must exist, no
cycles, subtree delete) live in nav/store.py.
"""

from dataclasses import dataclass, field
from typing import Optional

ROOT_ID = 0


@dataclass
class NavItem:
    """One entry in the navigation tree.

    parent_id == ROOT_ID (0) marks a top-level entry.
    id is None before the record is written to the database.
    """

    name: str
    description: str = ""
    parent_id: int = ROOT_ID
    id: Optional[int] = None
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""
    children: list["NavItem"] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "parentId": self.parent_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "children": [c.to_dict() for c in self.children],
        }
