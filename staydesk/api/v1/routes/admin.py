from datetime import date
from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from staydesk.db.session import get_db
from staydesk.api.deps import require
from staydesk.core.access import Operation
from staydesk.models.user import User
from staydesk.schemas.auth import UserOut, UserUpdate
from staydesk.schemas.payments import PaymentOut, ReviewResolveRequest
from staydesk.services import payment_service, report_service, user_service

router = APIRouter(tags=["admin"])

@router.get("/admin/reports/financial")
def financial_report(fromDate: date | None = None, toDate: date | None = None,
                     db: Session = Depends(get_db),
                     me: User = Depends(require(Operation.VIEW_FINANCIAL_REPORTS))):
    return report_service.financial_report(db, me, fromDate, toDate)

@router.get("/admin/review-queue")
def review_queue(db: Session = Depends(get_db), me: User = Depends(require(Operation.ISSUE_REFUND))):
    return {"items": [PaymentOut.from_model(p) for p in payment_service.list_review_queue(db, me)]}

@router.put("/admin/review-queue/{payment_id}/resolve", response_model=PaymentOut)
def resolve_review(payment_id: str, body: ReviewResolveRequest | None = None, db: Session = Depends(get_db),
                   me: User = Depends(require(Operation.ISSUE_REFUND))):
    return PaymentOut.from_model(payment_service.resolve_review(db, me, payment_id, (body.note if body else "")))

@router.get("/admin/users")
def list_users(role: str | None = None, q: str | None = None, limit: int = 50, offset: int = 0,
               db: Session = Depends(get_db),
               me: User = Depends(require(Operation.MANAGE_USERS))):
    query = select(User)
    if role:
        query = query.where(User.role == role.upper())
    if q:
        ql = f"%{q.lower()}%"
        query = query.where(func.lower(User.email).like(ql) | func.lower(User.full_name).like(ql))
    users = db.scalars(query.order_by(User.created_at.desc()).limit(min(limit, 200)).offset(max(offset, 0)))
    return {"items": [UserOut.from_model(u) for u in users]}

@router.patch("/admin/users/{user_id}", response_model=UserOut)
def update_user(user_id: str, body: UserUpdate, db: Session = Depends(get_db),
                me: User = Depends(require(Operation.MANAGE_USERS))):
    u = user_service.update_user(db, me, user_id, role=body.role, is_active=body.isActive, full_name=body.fullName)
    return UserOut.from_model(u)
