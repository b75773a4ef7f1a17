"""Storage adapters for products, price snapshots and crawl jobs."""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_crawler.db.models import CrawlJob, CrawlJobStatus, CrawlJobType, PriceSnapshot, Product
from catalog_crawler.errors import InvalidJobTransitionError
from catalog_crawler.logging_config import get_logger
from catalog_crawler.normalize.processor import NormalizedProduct, ProductUnit

logger = get_logger(__name__, component="storage")

CENT = Decimal("0.01")

# Allowed status changes; terminal states have no entry
JOB_TRANSITIONS = {
    CrawlJobStatus.PENDING: {CrawlJobStatus.RUNNING, CrawlJobStatus.FAILED},
    CrawlJobStatus.RUNNING: {CrawlJobStatus.COMPLETED, CrawlJobStatus.FAILED},
}

JOB_COUNTERS = ("products_processed", "products_updated")
JOB_UPDATABLE_FIELDS = {"status", "error_message", "target_url", "metadata", *JOB_COUNTERS}


def _quantize(price: Optional[Decimal]) -> Optional[Decimal]:
    if price is None:
        return None
    return Decimal(price).quantize(CENT)


class ProductRepository:
    """Product upserts with price-change snapshots."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def upsert_product(self, product: NormalizedProduct) -> Product:
        """
        Insert or update a product keyed by its derived id.

        A PriceSnapshot is written for the first stored price of a new
        product and whenever the stored price changes. A None price never
        produces a snapshot and never overwrites a stored price.
        """
        new_price = _quantize(product.price)

        async with self._session_factory() as db:
            row = await db.get(Product, product.id)
            price_changed = False

            if row is None:
                row = Product(id=product.id, created_at=datetime.utcnow())
                db.add(row)
                price_changed = new_price is not None
            elif new_price is not None:
                price_changed = row.price is None or _quantize(row.price) != new_price

            row.name = product.name
            row.sku = product.sku
            row.vendor = product.vendor
            row.brand = product.brand
            row.category = product.category
            row.unit = ProductUnit(product.unit).value
            row.currency = product.currency
            row.url = product.url
            row.image_urls = list(product.image_urls)
            row.description = product.description
            row.specifications = dict(product.specifications)
            row.features = list(product.features)
            row.is_active = product.is_active
            row.last_updated = product.last_updated
            if new_price is not None:
                row.price = new_price

            if price_changed:
                db.add(
                    PriceSnapshot(
                        product_id=product.id,
                        price=new_price,
                        currency=product.currency,
                        captured_at=datetime.utcnow(),
                    )
                )
                logger.debug(f"Price snapshot for {product.id}: {new_price} {product.currency}")

            await db.commit()
            await db.refresh(row)
            return row

    async def get_product_by_id(self, product_id: str) -> Optional[Product]:
        async with self._session_factory() as db:
            return await db.get(Product, product_id)

    async def get_price_history(self, product_id: str, days: int = 30) -> List[PriceSnapshot]:
        """Snapshots captured in the last ``days`` days, oldest first."""
        cutoff = datetime.utcnow() - timedelta(days=days)
        async with self._session_factory() as db:
            result = await db.execute(
                select(PriceSnapshot)
                .where(PriceSnapshot.product_id == product_id)
                .where(PriceSnapshot.captured_at >= cutoff)
                .order_by(PriceSnapshot.captured_at.asc(), PriceSnapshot.id.asc())
            )
            return list(result.scalars().all())


class CrawlJobRepository:
    """
    Crawl job records.

    ``update_job`` enforces the job lifecycle (pending -> running ->
    completed | failed) and refuses to lower progress counters.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_job(
        self,
        job_type: CrawlJobType,
        target_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CrawlJob:
        async with self._session_factory() as db:
            job = CrawlJob(
                job_type=CrawlJobType(job_type).value,
                status=CrawlJobStatus.PENDING.value,
                target_url=target_url,
                job_metadata=metadata,
                created_at=datetime.utcnow(),
            )
            db.add(job)
            await db.commit()
            await db.refresh(job)
            logger.info(f"Created {job.job_type} crawl job {job.id}")
            return job

    async def update_job(self, job_id: str, **fields: Any) -> CrawlJob:
        """
        Apply field changes to a job.

        Sets ``started_at`` on the move to running and ``completed_at`` on
        the move to completed or failed.

        Raises:
            LookupError: Unknown job id
            InvalidJobTransitionError: Status change not allowed, or the job
                is already finished
            ValueError: Unknown field or a decreasing counter
        """
        unknown = set(fields) - JOB_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {', '.join(sorted(unknown))}")

        async with self._session_factory() as db:
            job = await db.get(CrawlJob, job_id)
            if job is None:
                raise LookupError(f"Crawl job not found: {job_id}")

            current = CrawlJobStatus(job.status)
            requested = CrawlJobStatus(fields.pop("status", current))

            if current.is_terminal:
                raise InvalidJobTransitionError(job_id, current.value, requested.value)
            if requested != current and requested not in JOB_TRANSITIONS.get(current, set()):
                raise InvalidJobTransitionError(job_id, current.value, requested.value)

            for counter in JOB_COUNTERS:
                if counter in fields and fields[counter] < getattr(job, counter):
                    raise ValueError(
                        f"{counter} cannot decrease ({getattr(job, counter)} -> {fields[counter]})"
                    )

            if "metadata" in fields:
                job.job_metadata = fields.pop("metadata")
            for name, value in fields.items():
                setattr(job, name, value)

            if requested != current:
                job.status = requested.value
                now = datetime.utcnow()
                if requested == CrawlJobStatus.RUNNING and job.started_at is None:
                    job.started_at = now
                if requested.is_terminal:
                    job.completed_at = now

            await db.commit()
            await db.refresh(job)
            return job

    async def get_running_job(self) -> Optional[CrawlJob]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(CrawlJob)
                .where(CrawlJob.status == CrawlJobStatus.RUNNING.value)
                .order_by(CrawlJob.started_at.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def get_job_by_id(self, job_id: str) -> Optional[CrawlJob]:
        async with self._session_factory() as db:
            return await db.get(CrawlJob, job_id)

    async def get_recent_jobs(self, limit: int = 10) -> List[CrawlJob]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(CrawlJob).order_by(CrawlJob.created_at.desc()).limit(limit)
            )
            return list(result.scalars().all())
