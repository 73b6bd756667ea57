"""Marketplace sync coordinator: splits a sync into batches and rolls results back up."""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog

from orchestrator.config import Settings
from orchestrator.errors import CredentialError, PartialItemError, ValidationError
from orchestrator.manager import JobHandle, QueueManager
from orchestrator.models import EPOCH, Job, JobStatus, JobType, StoreConnection
from orchestrator.schemas import (
    AddJobOptions,
    MarketplaceSyncPayload,
    ProductBatchPayload,
    ProductIndividualPayload,
    ProductSyncFilters,
    StartSyncRequest,
)
from orchestrator.store import JobStore
from orchestrator.sync.adapters import MarketplaceAdapter
from orchestrator.sync.catalog import CatalogStore, ConnectionStore
from orchestrator.sync.filters import apply_post_fetch_filters, filters_exclude_all, normalize_filters
from orchestrator.sync.progress import (
    aggregate_progress,
    batch_progress,
    children_settled,
    split_batches,
    summarize_children,
)
from orchestrator.workers.job_executor import JobContext

logger = structlog.get_logger()


class SyncCoordinator:
    """Runs marketplace-sync parents and their product-batch children.

    A parent lists product ids, enqueues one child per batch and is released.
    From then on this class is the only writer of the parent: every child
    outcome triggers ``refresh_parent``, which completes the parent once all
    expected children have settled.
    """

    def __init__(
        self,
        manager: QueueManager,
        jobs: JobStore,
        catalog: CatalogStore,
        connections: ConnectionStore,
        adapters: Mapping[str, MarketplaceAdapter],
        settings: Settings,
    ):
        self.manager = manager
        self.jobs = jobs
        self.catalog = catalog
        self.connections = connections
        self.adapters = dict(adapters)
        self.settings = settings

    def register(self) -> None:
        """Bind handlers and lifecycle listeners on the queue manager."""
        self.manager.process(self.settings.sync_queue, JobType.MARKETPLACE_SYNC,
                             self.settings.sync_concurrency, self.handle_sync)
        self.manager.process(self.settings.batch_queue, JobType.PRODUCT_BATCH,
                             self.settings.batch_concurrency, self.handle_batch)
        self.manager.process(self.settings.batch_queue, JobType.PRODUCT_INDIVIDUAL,
                             self.settings.individual_concurrency, self.handle_individual)
        self.manager.on("completed", self._on_child_finished)
        self.manager.on("failed", self._on_failed)
        self.manager.on("released", self._on_released)
        self.manager.on("removed", self._on_child_finished)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def start_sync(self, user_id: str, workspace_id: str,
                         request: StartSyncRequest) -> Tuple[JobHandle, ProductSyncFilters]:
        """Enqueue a marketplace-sync parent for one of the workspace's connections."""
        connection = self.connections.get(request.connection_id, workspace_id)
        if connection is None:
            raise LookupError(f"Store connection {request.connection_id} not found")
        filters = normalize_filters(request.filters)
        payload = MarketplaceSyncPayload(
            user_id=user_id,
            workspace_id=workspace_id,
            connection_id=request.connection_id,
            marketplace=request.marketplace,
            filters=filters,
            force_full_sync=request.force_full_sync,
            batch_size=request.batch_size,
            priority=request.priority,
        )
        handle = await self.manager.add_job(self.settings.sync_queue, JobType.MARKETPLACE_SYNC, payload,
                                            AddJobOptions(priority=request.priority))
        logger.info("Marketplace sync requested", job_id=handle.job_id, connection_id=request.connection_id,
                    marketplace=request.marketplace, force_full_sync=request.force_full_sync)
        return handle, filters

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_sync(self, ctx: JobContext) -> Dict[str, Any]:
        payload: MarketplaceSyncPayload = ctx.payload
        connection = self._load_connection(payload.workspace_id, payload.connection_id, payload.marketplace)
        adapter = self._adapter(payload.marketplace)
        filters = normalize_filters(payload.filters)

        self.connections.mark_syncing(connection.id)

        if payload.force_full_sync:
            self.catalog.delete_for_connection(payload.workspace_id, connection.id)
            watermark = EPOCH
        else:
            watermark = self.catalog.watermark(payload.workspace_id, connection.id)

        summary: Dict[str, Any] = {
            "forceFullSync": payload.force_full_sync,
            "watermark": watermark.isoformat(),
            "appliedFilters": filters.model_dump(by_alias=True),
        }

        if filters_exclude_all(filters):
            logger.info("Sync filters exclude every product", job_id=ctx.job_id)
            self.connections.mark_completed(connection.id)
            return {**summary, **summarize_children([]), "totalProducts": 0}

        product_ids = await self._collect_identifiers(adapter, connection.credentials, filters, watermark)
        if not product_ids:
            logger.info("No products to sync", job_id=ctx.job_id, watermark=watermark.isoformat())
            self.connections.mark_completed(connection.id)
            return {**summary, **summarize_children([]), "totalProducts": 0}

        batch_size = payload.batch_size or self.settings.sync_batch_size
        batches = split_batches(product_ids, batch_size)
        self.jobs.expect_children(ctx.job_id, len(batches),
                                  details={"totalProducts": len(product_ids), "batchSize": batch_size})

        for number, batch in enumerate(batches, start=1):
            child = ProductBatchPayload(
                user_id=payload.user_id,
                workspace_id=payload.workspace_id,
                connection_id=connection.id,
                marketplace=payload.marketplace,
                product_ids=batch,
                parent_job_id=ctx.job_id,
                batch_number=number,
                total_batches=len(batches),
            )
            await self.manager.add_job(self.settings.batch_queue, JobType.PRODUCT_BATCH, child,
                                       AddJobOptions(priority=ctx.job.priority), parent_job_id=ctx.job_id)

        logger.info("Sync batches initiated", job_id=ctx.job_id, total_products=len(product_ids),
                    total_batches=len(batches))
        return {**summary, "totalProducts": len(product_ids), "totalBatches": len(batches)}

    async def handle_batch(self, ctx: JobContext) -> Dict[str, Any]:
        payload: ProductBatchPayload = ctx.payload
        connection = self._load_connection(payload.workspace_id, payload.connection_id, payload.marketplace)
        adapter = self._adapter(payload.marketplace)

        items: List[str] = []
        errors: List[str] = []
        total = len(payload.product_ids)
        for index, external_id in enumerate(payload.product_ids, start=1):
            try:
                record = await asyncio.to_thread(adapter.fetch_complete, connection.credentials, external_id)
                self.catalog.upsert(payload.workspace_id, connection.id, payload.marketplace, record)
                items.append(external_id)
            except CredentialError:
                raise
            except Exception as e:
                error = PartialItemError(external_id, str(e))
                logger.warning("Product sync failed", job_id=ctx.job_id, external_id=external_id, error=str(e))
                errors.append(str(error))
            await ctx.report_progress(batch_progress(index, total))

        logger.info("Batch processed", job_id=ctx.job_id, batch=payload.batch_number,
                    processed=len(items), failed=len(errors))
        return {"processed": len(items), "failed": len(errors), "errors": errors, "items": items}

    async def handle_individual(self, ctx: JobContext) -> Dict[str, Any]:
        payload: ProductIndividualPayload = ctx.payload
        connection = self._load_connection(payload.workspace_id, payload.connection_id, payload.marketplace)
        adapter = self._adapter(payload.marketplace)
        record = await asyncio.to_thread(adapter.fetch_complete, connection.credentials, payload.product_id)
        item = self.catalog.upsert(payload.workspace_id, connection.id, payload.marketplace, record)
        await ctx.report_progress(100)
        return {"processed": 1, "failed": 0, "errors": [], "items": [item.external_id]}

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    async def refresh_parent(self, parent_job_id: str) -> Optional[Job]:
        """Recompute a released parent's progress and complete it once its children settle."""
        parent = self.jobs.get(parent_job_id)
        if parent is None or parent.status != JobStatus.PROCESSING.value or parent.awaiting != "children":
            return parent

        children = self.jobs.children(parent_job_id)
        progress = aggregate_progress([child.progress for child in children], parent.expected_children)
        self.jobs.update_progress(parent_job_id, progress, record=True)

        if not children_settled(children, parent.expected_children):
            return self.jobs.get(parent_job_id)

        summary = summarize_children(children)
        result = {**(parent.result or {}), **summary}
        removed = (parent.meta or {}).get("removedChildren")
        if removed:
            result["removedBatches"] = removed
        completed = self.jobs.mark_completed(parent_job_id, result)
        if completed is None:
            # Another refresh finished it first.
            return self.jobs.get(parent_job_id)

        connection_id = (completed.data or {}).get("connectionId")
        if connection_id:
            self.connections.mark_completed(connection_id, completed.completed_at)
        logger.info("Marketplace sync completed", job_id=parent_job_id,
                    completed_batches=summary["completedBatches"], failed_batches=summary["failedBatches"],
                    processed=summary["processed"], failed=summary["failed"])
        await self.manager.job_completed(completed)
        return completed

    async def _on_child_finished(self, job: Job) -> None:
        if job.parent_job_id:
            await self.refresh_parent(job.parent_job_id)

    async def _on_failed(self, job: Job, error: Any) -> None:
        if job.parent_job_id:
            await self.refresh_parent(job.parent_job_id)
        if job.job_type == JobType.MARKETPLACE_SYNC.value:
            connection_id = (job.data or {}).get("connectionId")
            if connection_id:
                self.connections.mark_failed(connection_id, job.failed_reason or str(error))

    async def _on_released(self, job: Job) -> None:
        if job.awaiting == "children":
            await self.refresh_parent(job.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_connection(self, workspace_id: str, connection_id: str, marketplace: str) -> StoreConnection:
        connection = self.connections.get(connection_id, workspace_id)
        if connection is None:
            raise ValidationError(f"Store connection {connection_id} not found")
        if not connection.is_active:
            raise ValidationError(f"Store connection {connection_id} is inactive")
        if connection.marketplace != marketplace:
            raise ValidationError(
                f"Store connection {connection_id} is a {connection.marketplace} store, not {marketplace}"
            )
        return connection

    def _adapter(self, marketplace: str) -> MarketplaceAdapter:
        try:
            return self.adapters[marketplace]
        except KeyError:
            raise ValidationError(f"Unsupported marketplace: {marketplace}") from None

    async def _collect_identifiers(self, adapter: MarketplaceAdapter, credentials: Dict[str, Any],
                                   filters: ProductSyncFilters, updated_after: datetime) -> List[str]:
        """Walk every page of the adapter's listing and return matching product ids."""
        collected: List[str] = []
        page = None
        scanned = 0
        while True:
            result = await asyncio.to_thread(adapter.fetch_identifiers, credentials, filters, page, updated_after)
            if adapter.supports_query_filters:
                collected.extend(entry.external_id for entry in result.items)
            else:
                items = result.items[:self.settings.sync_max_scanned_items - scanned]
                scanned += len(items)
                kept = apply_post_fetch_filters(items, filters, updated_after)
                collected.extend(entry.external_id for entry in kept)
                if scanned >= self.settings.sync_max_scanned_items:
                    logger.warning("Stopped scanning products at limit", marketplace=adapter.marketplace,
                                   scanned=scanned, limit=self.settings.sync_max_scanned_items)
                    break
            if not result.has_more or result.next_page is None:
                break
            page = result.next_page
        # Cursor pagination can repeat an id across pages while the catalog changes.
        return list(dict.fromkeys(collected))
