import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from sqlmodel import select

from db import SessionDep
from models import Feedback, UserRole
from schemas import FeedbackCreate, FeedbackList, FeedbackRead, Pagination, page_window
from .auth import CurrentUserDep, OptionalUserDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["feedback"])


@router.post("")
def submit_feedback(
    body: FeedbackCreate,
    session: SessionDep,
    current: OptionalUserDep,
):
    """
    Submit feedback; signed-in callers are linked to it.
    """
    if not body.message:
        raise HTTPException(status_code=400, detail="Message is required")
    if body.rating is not None and not 1 <= body.rating <= 5:
        raise HTTPException(status_code=400, detail="Rating must be between 1 and 5")

    feedback = Feedback(
        user_id=current.id if current else None,
        name=body.name or None,
        email=body.email or None,
        subject=body.subject or None,
        message=body.message,
        rating=body.rating,
        category=body.category or "general",
        status="open",
    )
    session.add(feedback)
    session.commit()
    session.refresh(feedback)
    logger.info("Feedback %s submitted (%s)", feedback.id, feedback.category)

    return {
        "message": "Feedback submitted successfully",
        "feedback": {"id": feedback.id, "status": feedback.status},
    }


@router.get("", response_model=FeedbackList)
def list_feedback(
    session: SessionDep,
    current: CurrentUserDep,
    status: Optional[str] = None,
    category: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
):
    """
    List feedback (admin only).
    """
    if current.role != UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")

    limit, offset = page_window(limit, offset)
    query = select(Feedback)
    if status is not None:
        query = query.where(Feedback.status == status)
    if category is not None:
        query = query.where(Feedback.category == category)
    rows = session.exec(
        query.order_by(Feedback.created_at.desc(), Feedback.id.desc())
        .offset(offset)
        .limit(limit + 1)
    ).all()

    return FeedbackList(
        feedback=[FeedbackRead.model_validate(f) for f in rows[:limit]],
        pagination=Pagination(limit=limit, offset=offset, has_more=len(rows) > limit),
    )
