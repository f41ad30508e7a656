"""
Strava Webhook Router

Receives Strava push events. Each event is stored first and then handed to
the worker, so the endpoint answers quickly and nothing is lost if the
queue is down (the stored row is picked up by the re-drive task).
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from core.database import get_db
from core.exceptions import NotFoundError
from models import StravaWebhookEvent
from schemas import RedriveResponse, WebhookAcceptedResponse, WebhookEventResponse
from services.strava_webhook import StravaWebhookPayload, WebhookProcessor, record_webhook_event
from tasks.strava_tasks import process_webhook_event_task

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/strava/webhook", tags=["strava-webhook"])


@router.post("/events", response_model=WebhookAcceptedResponse, status_code=status.HTTP_200_OK)
def handle_webhook_event(payload: StravaWebhookPayload, db: Session = Depends(get_db)):
    event = record_webhook_event(db, payload)
    try:
        process_webhook_event_task.delay(event.id)
    except Exception as e:
        # Left for the re-drive task.
        logger.error(f"Failed to enqueue webhook event {event.id}: {e}")
        event.processed = False
        event.error_message = f"enqueue failed: {e}"[:1000]
        db.commit()
        return WebhookAcceptedResponse(event_id=event.id, status="stored")
    return WebhookAcceptedResponse(event_id=event.id, status="queued")


@router.get("/events", response_model=List[WebhookEventResponse])
def list_webhook_events(
    processed: Optional[bool] = Query(None, description="Filter by processing state"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    query = db.query(StravaWebhookEvent)
    if processed is not None:
        query = query.filter(StravaWebhookEvent.processed.is_(processed))
    return query.order_by(StravaWebhookEvent.created_at.desc()).limit(limit).all()


@router.post("/events/{event_id}/process", response_model=WebhookEventResponse)
def process_webhook_event(event_id: str, db: Session = Depends(get_db)):
    """Process one stored event inline (manual retry)."""
    event = db.query(StravaWebhookEvent).filter(StravaWebhookEvent.id == event_id).first()
    if event is None:
        raise NotFoundError("Webhook event", event_id)
    WebhookProcessor(db).process(event)
    db.refresh(event)
    return event


@router.post("/redrive", response_model=RedriveResponse)
def redrive_webhook_events(limit: int = Query(100, ge=1, le=1000), db: Session = Depends(get_db)):
    return WebhookProcessor(db).redrive(limit=limit)
