# Overview: Service-layer operations for the account hierarchy; scope resolution and tree maintenance.

"""
Hierarchy Directory

WHY: Every ledger transition and every rollup starts by asking "which nodes
may this principal see or act upon?". This module answers that question in
one place, parameterized by role, instead of per-role code paths.

TREE SHAPE (fixed depth):
    super-admin -> admin -> distributor -> customer
                         \\-> customer (served directly by the admin)

SCOPE RULES:
- super-admin: every node
- admin: itself + all descendants
- distributor: itself + its customers
- customer: itself only

Parent assignments are validated for role ordering and, defensively, for
cycles, even though role ordering alone makes cycles impossible.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ..extensions import db
from ..models import HierarchyNode
from .concurrency import lock_for_update, run_with_retry
from .errors import NotFound, ScopeViolation, ValidationError


ROLE_ADMIN = "admin"
ROLE_DISTRIBUTOR = "distributor"
ROLE_CUSTOMER = "customer"
VALID_ROLES = (ROLE_ADMIN, ROLE_DISTRIBUTOR, ROLE_CUSTOMER)

# Lower rank = higher in the tree
TIER_RANK = {ROLE_ADMIN: 0, ROLE_DISTRIBUTOR: 1, ROLE_CUSTOMER: 2}

# super-admin, admin, distributor, customer
MAX_TREE_DEPTH = 4


@dataclass(frozen=True)
class Principal:
    """Authenticated actor, as handed over by the auth layer."""
    node_id: int
    role: str
    is_super_admin: bool = False

    @classmethod
    def from_node(cls, node: HierarchyNode) -> "Principal":
        return cls(node_id=node.id, role=node.role, is_super_admin=bool(node.is_super_admin))


@dataclass(frozen=True)
class Scope:
    """Set of nodes a principal is authorized to view/act upon."""
    level: str
    node_id: int
    descendant_ids: frozenset[int] = field(default_factory=frozenset)
    is_super_admin: bool = False

    @property
    def node_ids(self) -> frozenset[int]:
        return self.descendant_ids | {self.node_id}

    def contains(self, node_id: int | None) -> bool:
        return node_id is not None and (node_id == self.node_id or node_id in self.descendant_ids)

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "node_id": self.node_id,
            "is_super_admin": self.is_super_admin,
            "descendant_ids": sorted(self.descendant_ids),
        }


class NodeIndex:
    """
    In-memory view of the whole tree, built from one query.

    Used where many lookups are needed against the same point-in-time tree
    (scope resolution, rollup attribution).
    """

    def __init__(self, nodes: list[HierarchyNode]):
        self.nodes: dict[int, HierarchyNode] = {n.id: n for n in nodes}
        self.children: dict[int, list[int]] = {}
        for node in nodes:
            if node.parent_id is not None:
                self.children.setdefault(node.parent_id, []).append(node.id)

    @classmethod
    def load(cls) -> "NodeIndex":
        return cls(db.session.query(HierarchyNode).all())

    def get(self, node_id: int) -> HierarchyNode | None:
        return self.nodes.get(node_id)

    def descendants(self, node_id: int) -> list[int]:
        result: list[int] = []
        seen = {node_id}
        stack = list(self.children.get(node_id, []))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            result.append(current)
            stack.extend(self.children.get(current, []))
        return result

    def ancestors(self, node_id: int) -> list[int]:
        """Ancestor ids, nearest first. Bounded by MAX_TREE_DEPTH."""
        result: list[int] = []
        node = self.nodes.get(node_id)
        while node is not None and node.parent_id is not None and len(result) < MAX_TREE_DEPTH:
            result.append(node.parent_id)
            node = self.nodes.get(node.parent_id)
        return result

    def nearest_with_role(self, node_id: int, role: str) -> int | None:
        """Self or nearest ancestor holding `role`."""
        for candidate in [node_id, *self.ancestors(node_id)]:
            node = self.nodes.get(candidate)
            if node is not None and node.role == role:
                return candidate
        return None


# =============================================================================
# LOOKUPS
# =============================================================================

def get_node_or_404(node_id: int) -> HierarchyNode:
    node = db.session.query(HierarchyNode).filter_by(id=node_id).first()
    if not node:
        raise NotFound(f"Node {node_id} not found")
    return node


def principal_for_node(node_id: int) -> Principal | None:
    """Principal for an active node, or None when the node is unknown/inactive."""
    node = db.session.query(HierarchyNode).filter_by(id=node_id).first()
    if not node or not node.is_active:
        return None
    return Principal.from_node(node)


def get_descendant_ids(node_id: int, *, include_self: bool = True) -> list[int]:
    index = NodeIndex.load()
    if index.get(node_id) is None:
        raise NotFound(f"Node {node_id} not found")
    result = [node_id] if include_self else []
    result.extend(index.descendants(node_id))
    return result


def ancestors_of(node_id: int) -> list[HierarchyNode]:
    """Ancestor nodes, nearest first (parent, grandparent, ...)."""
    node = get_node_or_404(node_id)
    result: list[HierarchyNode] = []
    while node.parent_id is not None and len(result) < MAX_TREE_DEPTH:
        node = get_node_or_404(node.parent_id)
        result.append(node)
    return result


def resolve_scope(principal: Principal, *, index: NodeIndex | None = None) -> Scope:
    """
    Compute the principal's scope from the current tree.

    Never widened by client input: callers may only narrow it (see
    `narrow_scope`).
    """
    if principal.role == ROLE_CUSTOMER:
        return Scope(level=ROLE_CUSTOMER, node_id=principal.node_id)

    index = index or NodeIndex.load()
    if index.get(principal.node_id) is None:
        raise NotFound(f"Node {principal.node_id} not found")

    if principal.is_super_admin:
        descendants = frozenset(nid for nid in index.nodes if nid != principal.node_id)
    else:
        descendants = frozenset(index.descendants(principal.node_id))

    return Scope(
        level=principal.role,
        node_id=principal.node_id,
        descendant_ids=descendants,
        is_super_admin=principal.is_super_admin,
    )


def narrow_scope(scope: Scope, parent_id: int | None, *, index: NodeIndex | None = None) -> Scope:
    """
    Re-anchor a scope on one of its nodes (drill-down).

    Raises ScopeViolation when parent_id lies outside the scope.
    """
    if parent_id is None or parent_id == scope.node_id:
        return scope
    if not scope.contains(parent_id):
        raise ScopeViolation(f"Node {parent_id} is outside your scope")

    index = index or NodeIndex.load()
    anchor = index.get(parent_id)
    if anchor is None:
        raise NotFound(f"Node {parent_id} not found")
    return Scope(
        level=anchor.role,
        node_id=parent_id,
        descendant_ids=frozenset(index.descendants(parent_id)) & scope.node_ids,
        is_super_admin=False,
    )


def require_in_scope(principal: Principal, node_id: int) -> Scope:
    scope = resolve_scope(principal)
    if not scope.contains(node_id):
        raise ScopeViolation(f"Node {node_id} is outside your scope")
    return scope


def servicing_chain(customer_id: int) -> tuple[int, int | None]:
    """
    (distributor_id, admin_id) serving a customer.

    A customer attached directly to an admin is served by that admin, which
    then fills both positions.
    """
    customer = get_node_or_404(customer_id)
    if customer.role != ROLE_CUSTOMER:
        raise ValidationError(f"Node {customer_id} is not a customer")
    if customer.parent_id is None:
        raise ValidationError("Customer has no associated distributor")

    parent = get_node_or_404(customer.parent_id)
    if parent.role == ROLE_ADMIN:
        return parent.id, parent.id

    admin_id = None
    for ancestor in ancestors_of(parent.id):
        if ancestor.role == ROLE_ADMIN:
            admin_id = ancestor.id
            break
    return parent.id, admin_id


def list_nodes(
    principal: Principal,
    *,
    role: str | None = None,
    parent_id: int | None = None,
    include_inactive: bool = False,
) -> list[HierarchyNode]:
    scope = resolve_scope(principal)
    query = db.session.query(HierarchyNode).filter(HierarchyNode.id.in_(scope.node_ids))
    if role:
        if role not in VALID_ROLES:
            raise ValidationError(f"role must be one of {', '.join(VALID_ROLES)}")
        query = query.filter(HierarchyNode.role == role)
    if parent_id is not None:
        query = query.filter(HierarchyNode.parent_id == parent_id)
    if not include_inactive:
        query = query.filter(HierarchyNode.is_active.is_(True))
    return query.order_by(HierarchyNode.name.asc(), HierarchyNode.id.asc()).all()


def get_node(principal: Principal, node_id: int) -> HierarchyNode:
    node = get_node_or_404(node_id)
    require_in_scope(principal, node_id)
    return node


# =============================================================================
# TREE MAINTENANCE
# =============================================================================

def _validate_parent(role: str, is_super_admin: bool, parent: HierarchyNode | None) -> None:
    """Role-ordering rules for a (child role, parent) pair."""
    if role not in VALID_ROLES:
        raise ValidationError(f"role must be one of {', '.join(VALID_ROLES)}")

    if is_super_admin:
        if role != ROLE_ADMIN:
            raise ValidationError("Only admins can be super-admins")
        if parent is not None:
            raise ValidationError("A super-admin cannot have a parent")
        return

    if parent is None:
        raise ValidationError(f"A {role} must have a parent")
    if not parent.is_active:
        raise ValidationError("Parent node is inactive")

    if role == ROLE_ADMIN and not (parent.role == ROLE_ADMIN and parent.is_super_admin):
        raise ValidationError("An admin's parent must be a super-admin")
    if role == ROLE_DISTRIBUTOR and parent.role != ROLE_ADMIN:
        raise ValidationError("A distributor's parent must be an admin")
    if role == ROLE_CUSTOMER and parent.role not in (ROLE_DISTRIBUTOR, ROLE_ADMIN):
        raise ValidationError("A customer's parent must be a distributor or an admin")


def _can_manage(principal: Principal, role: str, parent_id: int | None) -> bool:
    if principal.is_super_admin:
        return True
    if principal.role == ROLE_CUSTOMER:
        return False
    if principal.role == ROLE_DISTRIBUTOR and role != ROLE_CUSTOMER:
        return False
    if principal.role == ROLE_ADMIN and role == ROLE_ADMIN:
        return False
    return parent_id is not None and resolve_scope(principal).contains(parent_id)


def _create_node(
    *,
    name: str,
    email: str,
    role: str,
    parent_id: int | None,
    is_super_admin: bool,
) -> HierarchyNode:
    name = (name or "").strip()
    email = (email or "").strip().lower()
    if not name:
        raise ValidationError("name is required")
    if not email:
        raise ValidationError("email is required")

    parent = get_node_or_404(parent_id) if parent_id is not None else None
    _validate_parent(role, is_super_admin, parent)

    if db.session.query(HierarchyNode).filter_by(email=email).first():
        raise ValidationError(f"Email {email} is already registered")

    node = HierarchyNode(
        name=name,
        email=email,
        role=role,
        is_super_admin=is_super_admin,
        parent_id=parent_id,
        is_active=True,
    )
    db.session.add(node)
    db.session.commit()
    return node


def create_node(
    principal: Principal,
    *,
    name: str,
    email: str,
    role: str,
    parent_id: int | None = None,
    is_super_admin: bool = False,
) -> HierarchyNode:
    """
    Create a node under `parent_id`.

    A missing parent defaults to the principal itself. Super-admins can create
    anything; admins create distributors/customers inside their scope;
    distributors create their own customers.
    """
    def _op():
        effective_parent = parent_id
        if effective_parent is None and not is_super_admin:
            effective_parent = principal.node_id
        if is_super_admin and not principal.is_super_admin:
            raise ScopeViolation("Only a super-admin can create super-admins")
        if not _can_manage(principal, role, effective_parent):
            raise ScopeViolation(f"Not allowed to create a {role} under node {effective_parent}")
        return _create_node(
            name=name,
            email=email,
            role=role,
            parent_id=effective_parent,
            is_super_admin=is_super_admin,
        )

    return run_with_retry(_op)


def bootstrap_super_admin(*, name: str, email: str) -> HierarchyNode:
    """Create the first super-admin (CLI bootstrap; no principal exists yet)."""
    existing = db.session.query(HierarchyNode).filter_by(email=(email or "").strip().lower()).first()
    if existing:
        return existing
    return _create_node(name=name, email=email, role=ROLE_ADMIN, parent_id=None, is_super_admin=True)


def reassign_parent(principal: Principal, node_id: int, new_parent_id: int) -> HierarchyNode:
    """Move a node under a new parent. Super-admin only."""
    if not principal.is_super_admin:
        raise ScopeViolation("Only a super-admin can reassign parents")

    def _op():
        node = lock_for_update(db.session.query(HierarchyNode).filter_by(id=node_id)).first()
        if not node:
            raise NotFound(f"Node {node_id} not found")
        if new_parent_id == node_id:
            raise ValidationError("A node cannot be its own parent")

        parent = get_node_or_404(new_parent_id)
        _validate_parent(node.role, bool(node.is_super_admin), parent)

        # Defensive: walk up from the new parent and refuse to close a loop
        cursor = parent
        for _ in range(MAX_TREE_DEPTH + 1):
            if cursor.id == node_id:
                raise ValidationError("Parent assignment would create a cycle")
            if cursor.parent_id is None:
                break
            cursor = get_node_or_404(cursor.parent_id)

        node.parent_id = new_parent_id
        db.session.commit()
        return node

    return run_with_retry(_op)


def deactivate_node(principal: Principal, node_id: int) -> HierarchyNode:
    """Soft-delete a node. Orders keep referencing it."""
    def _op():
        if node_id == principal.node_id:
            raise ValidationError("You cannot deactivate yourself")
        require_in_scope(principal, node_id)
        if principal.role == ROLE_CUSTOMER:
            raise ScopeViolation("Customers cannot deactivate accounts")

        node = lock_for_update(db.session.query(HierarchyNode).filter_by(id=node_id)).first()
        if not node:
            raise NotFound(f"Node {node_id} not found")
        if node.is_super_admin and not principal.is_super_admin:
            raise ScopeViolation("Only a super-admin can deactivate a super-admin")

        node.is_active = False
        db.session.commit()
        return node

    return run_with_retry(_op)


# =============================================================================
# USER STATISTICS
# =============================================================================

def user_stats(
    principal: Principal,
    *,
    scope_level: str | None = None,
    parent_id: int | None = None,
) -> dict:
    """
    Count active nodes below the anchor, by role.

    The anchor is `parent_id` (must be inside the principal's scope) or the
    principal itself; the anchor is not counted. `scope_level` restricts the
    count to one tier.
    """
    if scope_level is not None and scope_level not in VALID_ROLES:
        raise ValidationError(f"scope_level must be one of {', '.join(VALID_ROLES)}")

    index = NodeIndex.load()
    scope = narrow_scope(resolve_scope(principal, index=index), parent_id, index=index)

    counts = {role: 0 for role in VALID_ROLES}
    for node_id in scope.descendant_ids:
        node = index.get(node_id)
        if node is None or not node.is_active:
            continue
        if scope_level is not None and node.role != scope_level:
            continue
        counts[node.role] += 1

    return {
        "total": sum(counts.values()),
        "admin": counts[ROLE_ADMIN],
        "distributor": counts[ROLE_DISTRIBUTOR],
        "customer": counts[ROLE_CUSTOMER],
    }
