"""Order CRUD routes."""

import math
from datetime import datetime
from decimal import Decimal
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy import func as sa_func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import UnknownStatusError
from app.database.session import get_db
from app.models.client import Client
from app.models.order import Order, OrderStatus
from app.services.status_mapping import normalize_status

router = APIRouter(prefix="/orders", tags=["orders"])

API_ACTOR = "API"


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class OrderResponse(BaseModel):
    id: int
    external_id: str | None = None
    order_number: str
    client_id: int
    client_name: str | None = None
    client_email: str | None = None
    amount: float
    status: OrderStatus
    description: str | None = None
    created_at: datetime
    last_modified_at: datetime
    last_synced_at: datetime | None = None

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class OrderListResponse(BaseModel):
    data: List[OrderResponse]
    pagination: Pagination


class OrderStatsResponse(BaseModel):
    total: int
    by_status: Dict[str, int]
    total_amount: float
    average_amount: float | None = None


class OrderCreateRequest(BaseModel):
    order_number: str = Field(..., min_length=1, max_length=20)
    client_id: int
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    status: str = OrderStatus.PREPARING.value
    description: str | None = Field(None, max_length=500)


class StatusUpdateRequest(BaseModel):
    status: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_status(value: str) -> OrderStatus:
    try:
        return normalize_status(value)
    except UnknownStatusError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _to_response(order: Order) -> OrderResponse:
    response = OrderResponse.model_validate(order)
    if order.client is not None:
        response.client_name = order.client.name
        response.client_email = order.client.email
    return response


def _get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return order


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.get("", response_model=OrderListResponse)
def list_orders(
    client_id: int | None = Query(None),
    order_status: str | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
):
    q = db.query(Order)
    if client_id is not None:
        q = q.filter(Order.client_id == client_id)
    if order_status:
        q = q.filter(Order.status == _parse_status(order_status))

    total = q.count()
    orders = (
        q.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return OrderListResponse(
        data=[_to_response(o) for o in orders],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit),
        ),
    )


@router.get("/stats", response_model=OrderStatsResponse)
def order_stats(db: Session = Depends(get_db)):
    rows = (
        db.query(Order.status, sa_func.count(Order.id), sa_func.sum(Order.amount))
        .group_by(Order.status)
        .all()
    )
    by_status = {s.value: 0 for s in OrderStatus}
    total = 0
    total_amount = Decimal(0)
    for order_status, count, amount in rows:
        by_status[OrderStatus(order_status).value] = count
        total += count
        total_amount += Decimal(str(amount or 0))

    return OrderStatsResponse(
        total=total,
        by_status=by_status,
        total_amount=float(total_amount),
        average_amount=float(total_amount / total) if total else None,
    )


@router.get("/{order_id}", response_model=OrderResponse)
def get_order(order_id: int, db: Session = Depends(get_db)):
    return _to_response(_get_order(db, order_id))


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
def create_order(body: OrderCreateRequest, db: Session = Depends(get_db)):
    order_status = _parse_status(body.status)
    if not db.get(Client, body.client_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown client")

    order = Order(
        order_number=body.order_number,
        client_id=body.client_id,
        amount=body.amount,
        status=order_status,
        description=body.description,
        created_by=API_ACTOR,
        last_modified_by=API_ACTOR,
    )
    db.add(order)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Order number already exists")
    db.refresh(order)
    return _to_response(order)


@router.put("/{order_id}/status", response_model=OrderResponse)
def update_order_status(order_id: int, body: StatusUpdateRequest, db: Session = Depends(get_db)):
    new_status = _parse_status(body.status)
    order = _get_order(db, order_id)

    order.status = new_status
    order.last_modified_by = API_ACTOR
    db.commit()
    db.refresh(order)
    return _to_response(order)


@router.delete("/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_order(order_id: int, db: Session = Depends(get_db)):
    order = _get_order(db, order_id)
    db.delete(order)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
