"""
nav/store.py -- SQLAlchemy-backed persistence layer for the navigation tree.

Uses SQLAlchemy Core (not ORM) so the dataclasses in nav/models.py remain the
authoritative domain representation.

Pattern: Repository + Data Mapper. NavStore is the repository, _row_to_nav is
the mapper. Route handlers never touch SQL directly.

Tree rules enforced here:
  - A parent_id other than ROOT_ID must reference an existing entry.
  - An entry cannot be moved under itself or any of its descendants.
  - Deleting an entry deletes its whole subtree.

Usage:
    store = NavStore()
    root = store.create_nav(NavItem(name="Settings"))
    store.create_nav(NavItem(name="Users", parent_id=root))
    tree = store.get_tree()
    store.close()
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table

from core.db import make_engine
from core.config import get_settings
from nav.models import ROOT_ID, NavItem

metadata = MetaData()

_navs = Table(
    "navs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(64), nullable=False),
    Column("description", String(255), nullable=False, server_default=""),
    Column("parent_id", Integer, nullable=False, server_default="0", index=True),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


class NavError(ValueError):
    """Raised when a write would break the tree rules."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class NavStore:
    def __init__(self, db_url: Optional[str] = None) -> None:
        self.engine = make_engine(db_url or get_settings().database_url)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_nav(self, nav_id: int) -> Optional[NavItem]:
        with self.engine.connect() as conn:
            row = conn.execute(_navs.select().where(_navs.c.id == nav_id)).fetchone()
        return _row_to_nav(row) if row is not None else None

    def list_navs(self) -> list[NavItem]:
        """Return every entry, flat, ordered by id."""
        with self.engine.connect() as conn:
            rows = conn.execute(_navs.select().order_by(_navs.c.id)).fetchall()
        return [_row_to_nav(r) for r in rows]

    def get_tree(self) -> list[NavItem]:
        """Return the top-level entries with children populated recursively.

        Entries whose parent no longer exists are surfaced at the top level
        rather than silently dropped.
        """
        items = self.list_navs()
        by_id = {item.id: item for item in items}
        roots: list[NavItem] = []
        for item in items:
            parent = by_id.get(item.parent_id)
            if item.parent_id == ROOT_ID or parent is None:
                roots.append(item)
            else:
                parent.children.append(item)
        return roots

    def _descendant_ids(self, nav_id: int) -> set[int]:
        children: dict[int, list[int]] = {}
        for item in self.list_navs():
            children.setdefault(item.parent_id, []).append(item.id)
        found: set[int] = set()
        stack = [nav_id]
        while stack:
            current = stack.pop()
            for child in children.get(current, []):
                if child not in found:
                    found.add(child)
                    stack.append(child)
        return found

    def _check_parent(self, parent_id: int) -> None:
        if parent_id != ROOT_ID and self.get_nav(parent_id) is None:
            raise NavError(f"Parent entry {parent_id} does not exist.")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_nav(self, item: NavItem) -> int:
        """Insert an entry and return its ID. Raises NavError for an unknown parent."""
        self._check_parent(item.parent_id)
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _navs.insert().values(
                    name=item.name,
                    description=item.description,
                    parent_id=item.parent_id,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_nav(self, nav_id: int, name: str, description: str, parent_id: int) -> bool:
        """Replace name, description and parent of an entry.

        Returns False if nav_id does not exist. Raises NavError when the new
        parent is unknown or lies inside the entry's own subtree.
        """
        if self.get_nav(nav_id) is None:
            return False
        self._check_parent(parent_id)
        if parent_id == nav_id or parent_id in self._descendant_ids(nav_id):
            raise NavError("An entry cannot be moved under itself.")
        with self.engine.connect() as conn:
            conn.execute(
                _navs.update()
                .where(_navs.c.id == nav_id)
                .values(name=name, description=description, parent_id=parent_id, updated_at=_now_iso())
            )
            conn.commit()
        return True

    def delete_nav(self, nav_id: int) -> int:
        """Delete an entry and its subtree. Returns the number of rows removed (0 if not found)."""
        if self.get_nav(nav_id) is None:
            return 0
        ids = self._descendant_ids(nav_id) | {nav_id}
        with self.engine.connect() as conn:
            result = conn.execute(_navs.delete().where(_navs.c.id.in_(ids)))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _row_to_nav(row) -> NavItem:
    m = row._mapping
    return NavItem(
        id=m["id"],
        name=m["name"],
        description=m["description"] or "",
        parent_id=m["parent_id"],
        created_at=m["created_at"],
        updated_at=m["updated_at"],
    )
