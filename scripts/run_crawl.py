#!/usr/bin/env python3
"""
Run a crawl from the shell.

Examples:
    python scripts/run_crawl.py full
    python scripts/run_crawl.py category https://signaturesolar.com/solar-panels/
    python scripts/run_crawl.py product https://signaturesolar.com/eg4-18kpv-hybrid-inverter/
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from catalog_crawler.db.session import init_db
from catalog_crawler.errors import CrawlerError
from catalog_crawler.logging_config import setup_logging
from catalog_crawler.worker.crawl_service import build_crawl_service, job_progress


async def run(args: argparse.Namespace) -> int:
    await init_db()
    service = build_crawl_service()

    try:
        if args.mode == "full":
            job = await service.run_full_crawl()
        elif args.mode == "category":
            job = await service.run_category_crawl(args.url)
        else:
            job = await service.run_product_refresh(args.url)
    except CrawlerError as e:
        print(f"Crawl failed: {e}")
        return 1
    finally:
        await service.close()

    progress = job_progress(job)
    print(f"Job {job.id} ({job.job_type}): {job.status}")
    print(f"  Products processed: {job.products_processed}")
    print(f"  Products updated:   {job.products_updated}")
    print(f"  Duration:           {progress.duration_seconds}s")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a catalog crawl")
    subparsers = parser.add_subparsers(dest="mode", required=True)

    subparsers.add_parser("full", help="Crawl every configured category")

    category = subparsers.add_parser("category", help="Crawl one category")
    category.add_argument("url", help="Category page URL")

    product = subparsers.add_parser("product", help="Refresh one product")
    product.add_argument("url", help="Product page URL")

    args = parser.parse_args()
    setup_logging(Path(__file__).parent.parent)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
