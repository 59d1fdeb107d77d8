"""
Invoice Intake Web Application

FastAPI application exposing:
- the WhatsApp webhook (verification handshake and inbound messages)
- reviewer-facing review queue operations
- correction analytics, anomaly reports and vendor maintenance
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from ..analytics.anomaly_detection import AnomalyDetector, summarize
from ..core.data_persistence import IntakeRepository
from ..core.errors import AssignmentConflict, InvalidReviewTransition, ReviewItemNotFound, ReviewQueueError
from ..core.media_normalizer import MediaFetcher
from ..core.pipeline_manager import DocumentPipeline
from ..hitl.review_queue import ReviewQueueManager
from ..intake.channel import parse_webhook, verify_subscription
from ..intake.dispatcher import EventDispatcher
from ..intake.session import SessionManager
from ..intake.vendor_resolver import VendorResolver

logger = logging.getLogger(__name__)


class ReviewerAction(BaseModel):
    reviewer: str


class ApproveRequest(ReviewerAction):
    corrected_data: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


class RejectRequest(ReviewerAction):
    notes: str = ""


class EscalateRequest(ReviewerAction):
    reason: str = ""


class MergeRequest(BaseModel):
    keep_id: int
    duplicate_id: int


def _review_error(error: ReviewQueueError) -> HTTPException:
    if isinstance(error, ReviewItemNotFound):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, AssignmentConflict):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


def create_app(config: Dict[str, Any], repository: Optional[IntakeRepository] = None,
               pipeline: Optional[DocumentPipeline] = None,
               session_manager: Optional[SessionManager] = None) -> FastAPI:
    """Wire every component from configuration; collaborators can be injected."""
    intake = config.get('intake', {})
    repository = repository or IntakeRepository.from_config(config)
    pipeline = pipeline or DocumentPipeline.from_config(config, repository)
    review_queue = ReviewQueueManager(repository, pipeline.handoff)
    if session_manager is None:
        fetcher = None
        if intake.get('whatsapp_token'):
            fetcher = MediaFetcher(intake['whatsapp_token'], intake.get('graph_api_base', 'https://graph.facebook.com/v19.0'))
        session_manager = SessionManager.from_config(config, repository, pipeline, fetcher=fetcher)
    dispatcher = EventDispatcher(session_manager.handle_event, intake.get('worker_count', 4))
    vendor_resolver = VendorResolver.from_config(config, repository)
    region = intake.get('default_region', 'IN')

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await dispatcher.start()
        yield
        await dispatcher.stop()
        pipeline.close()

    app = FastAPI(title="Invoice Intake", version="1.0.0", lifespan=lifespan)
    app.state.repository = repository
    app.state.review_queue = review_queue
    app.state.session_manager = session_manager
    app.state.dispatcher = dispatcher

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "workers": dispatcher.worker_count if dispatcher.running else 0}

    @app.get("/webhook")
    async def verify_webhook(mode: Optional[str] = Query(None, alias="hub.mode"),
                             token: Optional[str] = Query(None, alias="hub.verify_token"),
                             challenge: Optional[str] = Query(None, alias="hub.challenge")):
        """Subscription verification handshake."""
        answer = verify_subscription(mode, token, challenge, intake.get('verify_token'))
        if answer is None:
            raise HTTPException(status_code=403, detail="Verification failed")
        return PlainTextResponse(answer)

    @app.post("/webhook")
    async def receive_webhook(request: Request):
        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON payload")
        events = parse_webhook(payload, region)
        for event in events:
            if dispatcher.running:
                await dispatcher.submit(event)
            else:
                await session_manager.handle_event(event)
        logger.info(f"📥 Webhook delivered {len(events)} event(s)")
        return {"status": "ok", "events": len(events)}

    @app.get("/api/review/summary")
    async def review_summary():
        return review_queue.queue_summary()

    @app.get("/api/review/items")
    async def list_review_items(status: Optional[str] = None, priority: Optional[str] = None,
                                limit: int = Query(100, ge=1, le=500)):
        return review_queue.list_items(status, priority, limit)

    @app.get("/api/review/items/{item_id}")
    async def get_review_item(item_id: int):
        try:
            return review_queue.get_item(item_id)
        except ReviewQueueError as e:
            raise _review_error(e)

    @app.post("/api/review/items/{item_id}/assign")
    async def assign_review_item(item_id: int, body: ReviewerAction):
        try:
            return review_queue.assign(item_id, body.reviewer)
        except ReviewQueueError as e:
            raise _review_error(e)

    @app.post("/api/review/items/{item_id}/release")
    async def release_review_item(item_id: int, body: ReviewerAction):
        try:
            return review_queue.release(item_id, body.reviewer)
        except ReviewQueueError as e:
            raise _review_error(e)

    @app.post("/api/review/items/{item_id}/approve")
    async def approve_review_item(item_id: int, body: ApproveRequest):
        try:
            item = review_queue.approve(item_id, body.reviewer, body.corrected_data, body.notes)
        except ReviewQueueError as e:
            raise _review_error(e)
        await session_manager.review_completed(item['document_id'], approved=True)
        return item

    @app.post("/api/review/items/{item_id}/reject")
    async def reject_review_item(item_id: int, body: RejectRequest):
        try:
            item = review_queue.reject(item_id, body.reviewer, body.notes)
        except ReviewQueueError as e:
            raise _review_error(e)
        await session_manager.review_completed(item['document_id'], approved=False, notes=item['reviewer_notes'])
        return item

    @app.post("/api/review/items/{item_id}/escalate")
    async def escalate_review_item(item_id: int, body: EscalateRequest):
        try:
            return review_queue.escalate(item_id, body.reviewer, body.reason)
        except ReviewQueueError as e:
            raise _review_error(e)

    @app.get("/api/corrections/rates")
    async def correction_rates():
        return review_queue.corrections.field_correction_rates()

    @app.get("/api/corrections/patterns")
    async def correction_patterns(field_name: str, limit: int = Query(10, ge=1, le=100)):
        patterns = review_queue.corrections.correction_patterns(field_name, limit)
        return [{'original': o, 'corrected': c, 'count': n} for o, c, n in patterns]

    @app.get("/api/anomalies")
    async def anomalies(client_id: Optional[int] = None):
        report = AnomalyDetector().detect_for_repository(repository, client_id)
        return {**report.to_dict(), 'summary': summarize(report)}

    @app.get("/api/vendors")
    async def list_vendors(include_inactive: bool = False):
        return repository.list_vendors(include_inactive)

    @app.post("/api/vendors/resolve")
    async def resolve_vendors(client_id: Optional[int] = None):
        return vendor_resolver.resolve_completed_documents(client_id)

    @app.post("/api/vendors/merge")
    async def merge_vendors(body: MergeRequest):
        try:
            return vendor_resolver.merge(body.keep_id, body.duplicate_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    return app
