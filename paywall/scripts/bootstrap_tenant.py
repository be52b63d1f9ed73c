#!/usr/bin/env python3
"""
Register a tenant, one product and its API keys.

Usage:
    python -m paywall.scripts.bootstrap_tenant \\
        --tenant-id acme --name "Acme" --admin-email ops@acme.test \\
        --product-id app --product-name "Acme App" \\
        --allowed-return-url https://app.acme.test/ \\
        --credentials-configured --create-tables

Stripe keys themselves are not stored here; put them in
STRIPE_TENANT_CREDENTIALS (or STRIPE_SECRET_KEY for a single tenant).
Raw API keys are printed once and only their hashes are stored.
"""
import argparse
import sys

from paywall.core.database import create_all_tables
from paywall.features.tenants.service import (
    create_product,
    create_tenant,
    get_tenant,
    issue_api_key,
    set_credentials_configured,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Register a paywall tenant and product")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--name", required=True)
    parser.add_argument("--admin-email", required=True)
    parser.add_argument("--product-id", required=True)
    parser.add_argument("--product-name", required=True)
    parser.add_argument("--checkout-domain")
    parser.add_argument("--allowed-return-url", action="append", default=[])
    parser.add_argument("--callback-url", help="subscription.created callback for the product")
    parser.add_argument("--credentials-configured", action="store_true")
    parser.add_argument("--create-tables", action="store_true", help="Create tables before inserting")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.create_tables:
        create_all_tables()

    if get_tenant(args.tenant_id) is None:
        create_tenant(
            args.tenant_id,
            args.name,
            args.admin_email,
            credentials_configured=args.credentials_configured,
        )
    elif args.credentials_configured:
        set_credentials_configured(args.tenant_id, True)

    create_product(
        args.tenant_id,
        args.product_id,
        args.product_name,
        checkout_domain=args.checkout_domain,
        allowed_return_urls=args.allowed_return_url,
        subscription_callback_url=args.callback_url,
    )

    admin_key = issue_api_key(args.tenant_id)
    product_key = issue_api_key(args.tenant_id, args.product_id)

    print(f"tenant:      {args.tenant_id}")
    print(f"product:     {args.product_id}")
    print(f"admin key:   {admin_key}")
    print(f"product key: {product_key}")
    print("Store these keys now; they cannot be shown again.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
