#!/usr/bin/env python3
"""
Reset a shop's catalog for fresh sync testing.
Deletes its products and recommendations and clears the initial-sync flag;
quota counters and sync logs are left alone.

Usage:
  python scripts/cleanup_shop_data.py <shop_domain_or_id>
  python scripts/cleanup_shop_data.py <shop_domain_or_id> --dry-run

Example:
  python scripts/cleanup_shop_data.py example.myshopify.com
"""

import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

from services.storage import storage


async def cleanup_shop(shop_ref: str, dry_run: bool = False):
    shop = await storage.get_shop_by_domain(shop_ref) or await storage.get_shop(shop_ref)
    if shop is None:
        print(f"\n❌ No shop found for: {shop_ref}")
        return

    products = await storage.count_products(shop.id)
    recommendations = await storage.count_recommendations(shop.id)
    print(f"\n📊 {shop.domain} ({shop.id}):")
    print(f"   - {products} products")
    print(f"   - {recommendations} recommendations")
    print(f"   - initial sync done: {shop.initial_sync_done}")

    if dry_run:
        print("\n🔸 DRY RUN - No changes made")
        return

    print("\n⚠️  This will permanently delete this shop's catalog!")
    confirm = input("Type 'yes' to confirm: ")
    if confirm.lower() != "yes":
        print("❌ Aborted")
        return

    deleted = await storage.reset_shop_data(shop.id)
    print(f"   ✓ Deleted {deleted['recommendations']} recommendations")
    print(f"   ✓ Deleted {deleted['products']} products")
    print(f"\n✅ Cleanup complete! {shop.domain} will run an initial sync next time.")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    asyncio.run(cleanup_shop(sys.argv[1], "--dry-run" in sys.argv))
