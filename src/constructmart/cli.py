"""Command-line interface for constructmart."""

import argparse
import json
import logging
import sys

from . import __version__
from .address_store import AddressStore
from .catalog_store import ProductStore
from .errors import MartError
from .json_store import get_data_dir
from .models import ADMIN, MERCHANT_APPROVED, MERCHANT_STATUSES, ROLES, Actor, Product
from .order_store import OrderStore
from .settings_store import SettingsStore
from .user_store import TokenStore, UserStore
from .workflow import OrderService

# Orders are inspected from the command line with admin visibility
CLI_ACTOR = Actor(user_id="cli", user_type=ADMIN, user_name="constructmart-cli")


def get_order_service() -> OrderService:
    return OrderService(
        orders=OrderStore(),
        products=ProductStore(),
        addresses=AddressStore(),
        settings=SettingsStore(),
        users=UserStore(),
    )


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


def cmd_users_add(args: argparse.Namespace) -> int:
    """Create a user account (the only way to create merchants and admins)."""
    try:
        user = UserStore().add_user(
            name=args.name,
            email=args.email,
            password=args.password,
            role=args.role,
            phone=args.phone,
        )
        print(f"Added {user.role}: {user.id}")
        print(f"  Name:  {user.name}")
        print(f"  Email: {user.email}")
        return 0

    except MartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_users_list(args: argparse.Namespace) -> int:
    """List user accounts."""
    try:
        users = UserStore().list_users(role=args.role)

        if args.json:
            _print_json([u.to_public_dict() for u in users])
            return 0
        if not users:
            print("No users.")
            return 0

        print(f"Users ({len(users)}):")
        for u in users:
            status = "" if u.active else " [inactive]"
            print(f"  {u.id[:8]}  {u.role:<8}  {u.name} <{u.email}>{status}")
        return 0

    except MartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_merchants_list(args: argparse.Namespace) -> int:
    """List merchant accounts with their approval status."""
    try:
        merchants = UserStore().list_merchants(status=args.status)

        if args.json:
            _print_json([m.to_public_dict() for m in merchants])
            return 0
        if not merchants:
            print("No merchants.")
            return 0

        print(f"Merchants ({len(merchants)}):")
        for m in merchants:
            print(f"  {m.id}  {m.merchant_status:<9}  {m.name} <{m.email}>")
        return 0

    except MartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_merchants_set_status(args: argparse.Namespace) -> int:
    """Approve, reject or suspend a merchant."""
    try:
        user = UserStore().set_merchant_status(args.merchant_id, args.status)
        if user.merchant_status != MERCHANT_APPROVED:
            revoked = TokenStore().revoke_user(user.id)
            if revoked:
                print(f"Signed out {revoked} session(s)")
        print(f"Merchant {user.name} is now {user.merchant_status}")
        return 0

    except MartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_products_add(args: argparse.Namespace) -> int:
    """Add a catalog product."""
    try:
        product = Product.create(
            name=args.name,
            price=args.price,
            stock=args.stock,
            unit=args.unit,
            weight=args.weight,
            sku=args.sku,
        )
        ProductStore().add_product(product)
        print(f"Added product: {product.id}")
        print(f"  {product.name}: {product.price:.2f} per {product.unit}, {product.stock} in stock")
        return 0

    except MartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_products_list(args: argparse.Namespace) -> int:
    """List catalog products."""
    try:
        products = ProductStore().list_products(include_disabled=args.all)

        if args.json:
            _print_json([p.to_dict() for p in products])
            return 0
        if not products:
            print("No products.")
            return 0

        print(f"Products ({len(products)}):")
        for p in products:
            flag = "" if p.enabled else " [disabled]"
            print(f"  {p.id[:8]}  {p.name:<30} {p.price:>10.2f}/{p.unit:<6} stock {p.stock}{flag}")
        return 0

    except MartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_products_update(args: argparse.Namespace) -> int:
    """Update price, stock or availability of a product."""
    updates = {
        key: value
        for key, value in (
            ("name", args.name),
            ("price", args.price),
            ("stock", args.stock),
            ("enabled", args.enabled),
        )
        if value is not None
    }
    if not updates:
        print("Nothing to update.", file=sys.stderr)
        return 1

    try:
        product = ProductStore().update_product(args.product_id, updates)
        print(f"Updated product: {product.id}")
        for key in sorted(updates):
            print(f"  {key}: {getattr(product, key)}")
        return 0

    except MartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_settings_show(args: argparse.Namespace) -> int:
    """Show marketplace settings."""
    try:
        _print_json(SettingsStore().get().to_dict())
        return 0

    except MartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _parse_delivery(pairs: list[str]) -> dict:
    config = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise ValueError(f"Expected KEY=VALUE, got '{pair}'")
        config[key] = value if key == "type" else float(value)
    return config


def cmd_settings_set(args: argparse.Namespace) -> int:
    """Update marketplace settings."""
    updates: dict = {}
    if args.tax_rate is not None:
        updates["tax_rate"] = args.tax_rate
    if args.platform_fee_rate is not None:
        updates["platform_fee_rate"] = args.platform_fee_rate
    if args.minimum_order_value is not None:
        updates["minimum_order_value"] = args.minimum_order_value
    try:
        if args.delivery:
            updates["delivery_config"] = _parse_delivery(args.delivery)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if not updates:
        print("Nothing to update.", file=sys.stderr)
        return 1

    try:
        settings = SettingsStore().update(updates, updated_by=CLI_ACTOR.user_id)
        _print_json(settings.to_dict())
        return 0

    except MartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_list(args: argparse.Namespace) -> int:
    """List orders, newest first."""
    try:
        result = get_order_service().list_orders(
            CLI_ACTOR, status=args.status, page=args.page, limit=args.limit
        )
        views = result["orders"]

        if args.json:
            _print_json(
                [{**v.order.to_dict(), "order_status": v.order_status.value} for v in views]
            )
            return 0
        if not views:
            print("No orders.")
            return 0

        print(f"Orders (page {result['page']}/{result['total_pages']}, {result['total']} total):")
        for v in views:
            o = v.order
            print(
                f"  {o.order_number}  {v.order_status.value:<10} {o.total_amount:>10.2f}"
                f"  {o.customer_name}  {o.created_at}"
            )
        return 0

    except MartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_show(args: argparse.Namespace) -> int:
    """Show one order with its items and history."""
    try:
        view = get_order_service().get_order(args.order_id, CLI_ACTOR)
        order = view.order

        if args.json:
            _print_json({**order.to_dict(), "order_status": view.order_status.value})
            return 0

        print(f"Order {order.order_number} ({view.order_status.value})")
        print(f"  Customer: {order.customer_name} {order.customer_phone}")
        addr = order.delivery_address
        print(f"  Deliver to: {addr.get('street')}, {addr.get('area')}, {addr.get('city')}")
        print()
        for item in order.items:
            merchant = item.assigned_merchant_name or item.assigned_merchant_id or "-"
            print(
                f"  {item.id[:8]}  {item.quantity} x {item.product_name:<28}"
                f" {item.total_price:>10.2f}  {item.item_status:<10} {merchant}"
            )
        print()
        print(f"  Subtotal:      {order.subtotal:>10.2f}")
        print(f"  Tax:           {order.tax:>10.2f}")
        print(f"  Delivery:      {order.delivery_charge:>10.2f}")
        print(f"  Platform fee:  {order.platform_fee:>10.2f}")
        print(f"  Total:         {order.total_amount:>10.2f}")

        if args.history:
            print()
            for event in order.lifecycle:
                print(f"  {event.timestamp}  {event.event_description}")
        return 0

    except MartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_unassigned(args: argparse.Namespace) -> int:
    """List items waiting for a merchant."""
    try:
        queue = get_order_service().list_unassigned_items(CLI_ACTOR)

        if args.json:
            _print_json([{**e, "item": e["item"].to_dict()} for e in queue])
            return 0
        if not queue:
            print("No unassigned items.")
            return 0

        print(f"Unassigned items ({len(queue)}):")
        for entry in queue:
            item = entry["item"]
            print(
                f"  {entry['order_number']}  {item.id[:8]}  {item.quantity} x {item.product_name}"
                f"  [{item.item_status}]  {entry['delivery_area'] or ''}"
            )
        return 0

    except MartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    import uvicorn

    print("Starting constructmart API server...")
    print(f"Data directory: {get_data_dir()}")
    print(f"API docs: http://{args.host}:{args.port}/docs")
    print()

    # When reload is enabled, uvicorn requires the app as an import string
    app_target = "constructmart.api:app" if args.reload else None
    if app_target is None:
        from .api import app
        app_target = app

    uvicorn.run(
        app_target,
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=1,
        log_level="info" if args.verbose else "warning",
    )
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="constructmart",
        description="Multi-merchant order service for construction materials.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Log workflow events to stderr"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve_parser.add_argument("--reload", action="store_true", help="Reload on code changes")

    # users
    users_parser = subparsers.add_parser("users", help="Manage user accounts")
    users_sub = users_parser.add_subparsers(dest="users_command")

    users_add = users_sub.add_parser("add", help="Create a user")
    users_add.add_argument("name", help="Display name")
    users_add.add_argument("email", help="Login email")
    users_add.add_argument("--password", "-p", required=True, help="Initial password")
    users_add.add_argument("--role", "-r", choices=ROLES, default="customer", help="Account role")
    users_add.add_argument("--phone", help="Contact phone")

    users_list = users_sub.add_parser("list", help="List users")
    users_list.add_argument("--role", "-r", choices=ROLES, help="Only this role")
    users_list.add_argument("--json", action="store_true", help="Output as JSON")

    # merchants
    merchants_parser = subparsers.add_parser("merchants", help="Review merchant sign-ups")
    merchants_sub = merchants_parser.add_subparsers(dest="merchants_command")

    merchants_list = merchants_sub.add_parser("list", help="List merchants")
    merchants_list.add_argument("--status", "-s", choices=MERCHANT_STATUSES, help="Only this status")
    merchants_list.add_argument("--json", action="store_true", help="Output as JSON")

    merchants_status = merchants_sub.add_parser("set-status", help="Change a merchant's status")
    merchants_status.add_argument("merchant_id", help="Merchant user ID")
    merchants_status.add_argument("status", choices=MERCHANT_STATUSES, help="New status")

    # products
    products_parser = subparsers.add_parser("products", help="Manage the product catalog")
    products_sub = products_parser.add_subparsers(dest="products_command")

    products_add = products_sub.add_parser("add", help="Add a product")
    products_add.add_argument("name", help="Product name")
    products_add.add_argument("--price", type=float, required=True, help="Unit price")
    products_add.add_argument("--stock", type=int, required=True, help="Units in stock")
    products_add.add_argument("--unit", default="piece", help="Sales unit (default: piece)")
    products_add.add_argument("--weight", type=float, default=0.0, help="Weight per unit in kg")
    products_add.add_argument("--sku", help="Stock keeping unit")

    products_list = products_sub.add_parser("list", help="List products")
    products_list.add_argument("--all", "-a", action="store_true", help="Include disabled products")
    products_list.add_argument("--json", action="store_true", help="Output as JSON")

    products_update = products_sub.add_parser("update", help="Update a product")
    products_update.add_argument("product_id", help="Product ID")
    products_update.add_argument("--name", help="New name")
    products_update.add_argument("--price", type=float, help="New unit price")
    products_update.add_argument("--stock", type=int, help="New stock level")
    availability = products_update.add_mutually_exclusive_group()
    availability.add_argument("--enable", dest="enabled", action="store_const", const=True)
    availability.add_argument("--disable", dest="enabled", action="store_const", const=False)

    # settings
    settings_parser = subparsers.add_parser("settings", help="Show or change pricing settings")
    settings_sub = settings_parser.add_subparsers(dest="settings_command")

    settings_sub.add_parser("show", help="Show settings")

    settings_set = settings_sub.add_parser("set", help="Change settings")
    settings_set.add_argument("--tax-rate", type=float, help="Tax rate, e.g. 0.18")
    settings_set.add_argument("--platform-fee-rate", type=float, help="Platform fee rate (0-0.1)")
    settings_set.add_argument("--minimum-order-value", type=float, help="Minimum order subtotal")
    settings_set.add_argument(
        "--delivery", "-d", action="append", metavar="KEY=VALUE",
        help="Delivery config field, e.g. type=fixed or fixed_charge=40 (repeatable)"
    )

    # orders
    orders_parser = subparsers.add_parser("orders", help="Inspect orders")
    orders_sub = orders_parser.add_subparsers(dest="orders_command")

    orders_list = orders_sub.add_parser("list", help="List orders")
    orders_list.add_argument("--status", "-s", help="Only orders with an item in this status")
    orders_list.add_argument("--page", type=int, default=1, help="Page number (default: 1)")
    orders_list.add_argument("--limit", type=int, default=20, help="Page size (default: 20)")
    orders_list.add_argument("--json", action="store_true", help="Output as JSON")

    orders_show = orders_sub.add_parser("show", help="Show an order")
    orders_show.add_argument("order_id", help="Order ID or order number")
    orders_show.add_argument("--history", action="store_true", help="Include lifecycle events")
    orders_show.add_argument("--json", action="store_true", help="Output as JSON")

    orders_unassigned = orders_sub.add_parser("unassigned", help="List the merchant claim queue")
    orders_unassigned.add_argument("--json", action="store_true", help="Output as JSON")

    return parser


GROUP_COMMANDS = {
    "users": ("users_command", {"add": cmd_users_add, "list": cmd_users_list}),
    "merchants": (
        "merchants_command",
        {"list": cmd_merchants_list, "set-status": cmd_merchants_set_status},
    ),
    "products": (
        "products_command",
        {"add": cmd_products_add, "list": cmd_products_list, "update": cmd_products_update},
    ),
    "settings": ("settings_command", {"show": cmd_settings_show, "set": cmd_settings_set}),
    "orders": (
        "orders_command",
        {"list": cmd_orders_list, "show": cmd_orders_show, "unassigned": cmd_orders_unassigned},
    ),
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "serve":
        return cmd_serve(args)

    dest, commands = GROUP_COMMANDS[args.command]
    sub = getattr(args, dest, None)
    if not sub:
        parser.parse_args([args.command, "--help"])
        return 0
    return commands[sub](args)


if __name__ == "__main__":
    sys.exit(main())
