from __future__ import annotations

from ..extensions import db
from tierflow.time_utils import to_utc_z


class HierarchyNode(db.Model):
    """
    Account in the admin -> distributor -> customer tree.

    WHY: Every order, scope check and rollup is anchored on a node. The tree
    is shallow (super-admin, admin, distributor, customer) and role-ordered:
    - customer.parent is a distributor or an admin
    - distributor.parent is an admin
    - admin.parent is an admin (normally the super-admin)
    - only super-admins have no parent

    Nodes are never hard-deleted while orders reference them; deactivation
    flips is_active.
    """
    __tablename__ = "accounts"
    __table_args__ = (
        db.Index("ix_accounts_parent_role", "parent_id", "role"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)

    role = db.Column(db.String(16), nullable=False, index=True)  # admin, distributor, customer
    is_super_admin = db.Column(db.Boolean, nullable=False, default=False)

    parent_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )

    parent = db.relationship("HierarchyNode", remote_side=[id], backref=db.backref("children", lazy=True))

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<HierarchyNode id={self.id} role={self.role} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "is_super_admin": self.is_super_admin,
            "parent_id": self.parent_id,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }
