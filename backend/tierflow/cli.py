# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/tierflow/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init --name "Head Office" --email root@tierflow.local
#   Idempotent bootstrap: creates tables and the first super-admin.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Hierarchy inspection/bootstrap:
# - python -m flask nodes list [--role distributor]
#   List nodes with parent and active status.
# - python -m flask nodes create --name "North" --email north@tierflow.local --role distributor --parent-id 2
#   Create a node under a parent (validated like the API, acting as the super-admin).
#
# Catalogue:
# - python -m flask products create --sku MILK-1L --name "Milk 1L" --price-cents 5000
#   Create a product with a base price.
# - python -m flask products list [--all]
# - python -m flask products set-price --product-id 1 --node-id 5 --price-cents 4500
#   Per-node override (customer price beats distributor price beats base price).
#
# Reporting:
# - python -m flask stats revenue --node-id 2 --level distributor --date-filter thisMonth
#   Print the revenue rollup as seen by a node.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import HierarchyNode
from .money import format_cents
from .services import catalog_service, hierarchy_service, rollup_service
from .services.errors import TierflowError
from .services.hierarchy_service import Principal


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--name', default='Head Office', help='Super-admin display name')
@click.option('--email', default='root@tierflow.local', help='Super-admin email')
@with_appcontext
def init_system(name, email):
    """
    Initialize Tierflow: schema and the root super-admin.

    Safe to run repeatedly; an existing super-admin with the same email is
    reused.
    """
    click.echo("START Initializing Tierflow...")

    db.create_all()
    click.echo("PASS Schema ready")

    node = hierarchy_service.bootstrap_super_admin(name=name, email=email)
    click.echo(f"PASS Super-admin: {node.name} <{node.email}> (ID: {node.id})")
    click.echo("DONE Use this ID in the X-Principal-Id header to act as the super-admin.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("DONE Database reset complete")


def _root_principal():
    root = (
        db.session.query(HierarchyNode)
        .filter_by(is_super_admin=True, is_active=True)
        .order_by(HierarchyNode.id.asc())
        .first()
    )
    return Principal.from_node(root) if root else None


@click.group('nodes')
def nodes_group():
    """Hierarchy inspection and bootstrap commands."""


@nodes_group.command('list')
@click.option('--role', type=click.Choice(hierarchy_service.VALID_ROLES), help='Filter by role')
@with_appcontext
def list_nodes(role):
    """List all nodes."""
    query = db.session.query(HierarchyNode)
    if role:
        query = query.filter_by(role=role)
    nodes = query.order_by(HierarchyNode.id.asc()).all()

    if not nodes:
        click.echo("No nodes found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Name':<28} {'Role':<12} {'Parent':<8} {'Super':<6} {'Active'}")
    click.echo("="*80)

    for node in nodes:
        parent_str = str(node.parent_id) if node.parent_id else "-"
        super_str = "Yes" if node.is_super_admin else "No"
        active_str = "Yes" if node.is_active else "No"
        click.echo(f"{node.id:<5} {node.name:<28} {node.role:<12} {parent_str:<8} {super_str:<6} {active_str}")

    click.echo("="*80 + "\n")


@nodes_group.command('create')
@click.option('--name', required=True, help='Display name')
@click.option('--email', required=True, help='Unique email')
@click.option('--role', required=True, type=click.Choice(hierarchy_service.VALID_ROLES))
@click.option('--parent-id', type=int, required=True, help='Parent node ID')
@with_appcontext
def create_node_cli(name, email, role, parent_id):
    """Create a node, acting as the first active super-admin."""
    root = _root_principal()
    if root is None:
        click.echo("FAIL No super-admin found. Run: flask system init")
        return

    try:
        node = hierarchy_service.create_node(
            root,
            name=name,
            email=email,
            role=role,
            parent_id=parent_id,
        )
    except TierflowError as e:
        click.echo(f"FAIL {e}")
        return

    click.echo(f"PASS Created {node.role} {node.name} (ID: {node.id}, parent: {node.parent_id})")


@click.group('products')
def products_group():
    """Catalogue commands."""


@products_group.command('create')
@click.option('--sku', required=True)
@click.option('--name', required=True)
@click.option('--price-cents', type=int, required=True, help='Base price in minor units')
@with_appcontext
def create_product_cli(sku, name, price_cents):
    """Create a product."""
    try:
        product = catalog_service.create_product(sku=sku, name=name, price_cents=price_cents)
    except TierflowError as e:
        click.echo(f"FAIL {e}")
        return

    click.echo(f"PASS Created product {product.sku} (ID: {product.id}) at {format_cents(product.price_cents)}")


@products_group.command('list')
@click.option('--all', 'include_inactive', is_flag=True, help='Include inactive products')
@with_appcontext
def list_products_cli(include_inactive):
    """List products with base prices."""
    products = catalog_service.list_products(include_inactive=include_inactive)
    if not products:
        click.echo("No products found.")
        return

    click.echo(f"{'ID':<6} {'SKU':<16} {'Price':>12}  {'Active':<7} Name")
    click.echo("-" * 64)
    for p in products:
        click.echo(
            f"{p.id:<6} {p.sku:<16} {format_cents(p.price_cents):>12}  {str(p.is_active):<7} {p.name}"
        )


@products_group.command('set-price')
@click.option('--product-id', type=int, required=True)
@click.option('--node-id', type=int, required=True, help='Distributor or customer the price applies to')
@click.option('--price-cents', type=int, required=True)
@with_appcontext
def set_price_cli(product_id, node_id, price_cents):
    """Set a per-node price override, acting as the first active super-admin."""
    root = _root_principal()
    if root is None:
        click.echo("FAIL No super-admin found. Run: flask system init")
        return

    try:
        row = catalog_service.set_node_price(root, product_id=product_id, node_id=node_id, price_cents=price_cents)
    except TierflowError as e:
        click.echo(f"FAIL {e}")
        return

    click.echo(f"PASS Node {row.node_id} pays {format_cents(row.price_cents)} for product {row.product_id}")


@click.group('stats')
def stats_group():
    """Reporting commands."""


@stats_group.command('revenue')
@click.option('--node-id', type=int, required=True, help='Node whose scope is reported')
@click.option('--level', default='all', type=click.Choice(rollup_service.VALID_LEVELS))
@click.option('--parent-id', type=int, default=None, help='Drill-down anchor')
@click.option('--date-filter', default='all', type=click.Choice(rollup_service.VALID_DATE_FILTERS))
@click.option('--month', type=int, default=None)
@click.option('--year', type=int, default=None)
@click.option('--start-date', default=None, help='YYYY-MM-DD (custom filter)')
@click.option('--end-date', default=None, help='YYYY-MM-DD (custom filter)')
@with_appcontext
def revenue_cli(node_id, level, parent_id, date_filter, month, year, start_date, end_date):
    """Print the revenue rollup as seen by a node."""
    principal = hierarchy_service.principal_for_node(node_id)
    if principal is None:
        click.echo(f"FAIL Node {node_id} not found or inactive")
        return

    try:
        result = rollup_service.aggregate(
            principal,
            level=level,
            parent_id=parent_id,
            date_filter=date_filter,
            month=month,
            year=year,
            start_date=start_date,
            end_date=end_date,
        )
    except TierflowError as e:
        click.echo(f"FAIL {e}")
        return

    total = result["total"]
    click.echo(f"\nTotal: {total['revenue']} across {total['order_count']} order(s)")
    if not result["breakdown"]:
        return

    click.echo("="*64)
    click.echo(f"{'Node':<6} {'Name':<28} {'Revenue':>14} {'Orders':>8}")
    click.echo("="*64)
    for row in result["breakdown"]:
        click.echo(f"{str(row['node_id']):<6} {(row['name'] or '-'):<28} {row['revenue']:>14} {row['order_count']:>8}")
    click.echo("="*64 + "\n")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(nodes_group)
    app.cli.add_command(products_group)
    app.cli.add_command(stats_group)
