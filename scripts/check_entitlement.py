#!/usr/bin/env python3
"""Check whether a user currently holds the pro entitlement.

Usage:
    REVENUECAT_SECRET_KEY=sk_... python scripts/check_entitlement.py --user-id <id>

Queries the billing ledger with the same candidate-id walk the completion
proxy uses and prints the id variant that carries an active entitlement.

Exit codes:
    0  an active entitlement was found
    1  no candidate id has an active entitlement
    2  the ledger returned an error or the secret key is not configured
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def check_entitlement(user_id: str) -> int:
    # Import here to avoid loading config before env vars are set
    from quoteai.config import get_settings
    from quoteai.service.entitlements import EntitlementChecker, RevenueCatClient
    from quoteai.service.errors import SubscriptionRequiredError

    settings = get_settings()
    missing = settings.missing(("revenuecat_secret_key",))
    if missing:
        print(f"Missing configuration: {', '.join(missing)}", file=sys.stderr)
        return 2

    ledger = RevenueCatClient(
        settings.revenuecat_secret_key,
        api_base=settings.revenuecat_api_base,
        entitlement_id=settings.pro_entitlement_id,
        timeout=settings.http_timeout_seconds,
    )
    try:
        lookup = await EntitlementChecker(ledger).find_active(user_id)
    except SubscriptionRequiredError:
        print("Billing ledger returned an error", file=sys.stderr)
        return 2
    finally:
        await ledger.close()

    if lookup is None:
        print(f"No active '{settings.pro_entitlement_id}' entitlement for {user_id}")
        return 1
    print(f"Active entitlement under {lookup.app_user_id}:")
    print(json.dumps(lookup.entitlement, indent=2, sort_keys=True))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Check a user's pro entitlement")
    parser.add_argument("--user-id", required=True, help="Auth identity to check")
    args = parser.parse_args()
    sys.exit(asyncio.run(check_entitlement(args.user_id)))


if __name__ == "__main__":
    main()
