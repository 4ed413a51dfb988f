"""Invoice Routes"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import Optional
from datetime import datetime
from motor.motor_asyncio import AsyncIOMotorDatabase
from database.mongodb import get_database
from services.auth_deps import get_current_user
from services.invoice_service import InvoiceService
from services.mydata_client import MyDataClient
from models.invoice import (
    CancelRequest,
    InvoiceCreate,
    InvoiceListResponse,
    InvoiceResponse,
    InvoiceStatus,
    InvoiceUpdate,
    NextNumberResponse,
    PaymentRequest,
    RevenueStats,
    TransmissionStatus,
)
from models.user import User
from routes.common import SERVICE_ERRORS, get_mydata_client, rejection_to_http, service_error_to_http
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/invoices", tags=["invoices"])


def parse_date_string(date_str: Optional[str]) -> Optional[datetime]:
    """Parse date string to datetime object"""
    if not date_str:
        return None
    try:
        if 'T' in date_str:
            return datetime.fromisoformat(date_str.replace('Z', '+00:00')).replace(tzinfo=None)
        return datetime.strptime(date_str, '%Y-%m-%d')
    except (ValueError, TypeError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid date: {date_str}"
        )


@router.get("/", response_model=InvoiceListResponse)
async def list_invoices(
    status_filter: Optional[InvoiceStatus] = Query(default=None, alias="status"),
    transmission_status: Optional[TransmissionStatus] = None,
    series: Optional[str] = None,
    customer_id: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """List invoices with filters"""
    service = InvoiceService(db)
    return await service.list_invoices(
        current_user.id,
        status=status_filter.value if status_filter else None,
        transmission_status=transmission_status.value if transmission_status else None,
        series=series,
        customer_id=customer_id,
        date_from=parse_date_string(date_from),
        date_to=parse_date_string(date_to),
        page=page,
        limit=limit
    )


@router.get("/next-number", response_model=NextNumberResponse)
async def preview_next_number(
    series: str = "A",
    current_user: User = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """Number the next invoice of a series would get (not reserved)"""
    try:
        next_number = await InvoiceService(db).next_number(current_user.id, series)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return NextNumberResponse(series=series, next_number=next_number)


@router.get("/stats", response_model=RevenueStats)
async def revenue_stats(
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """Revenue statistics for the current user"""
    return await InvoiceService(db).revenue_stats(
        current_user.id,
        date_from=parse_date_string(date_from),
        date_to=parse_date_string(date_to)
    )


@router.post("/", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    invoice_data: InvoiceCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_database),
    client: MyDataClient = Depends(get_mydata_client)
):
    """Create an invoice; with send=true it is issued and transmitted to myDATA"""
    service = InvoiceService(db, client)
    try:
        outcome = await service.create_invoice(current_user.id, invoice_data)
    except SERVICE_ERRORS as e:
        raise service_error_to_http(e)

    if outcome.status == "rejected":
        raise rejection_to_http(outcome)
    return InvoiceResponse.from_invoice(outcome.invoice)


@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """Get a specific invoice"""
    try:
        invoice = await InvoiceService(db).get_invoice(current_user.id, invoice_id)
    except SERVICE_ERRORS as e:
        raise service_error_to_http(e)
    return InvoiceResponse.from_invoice(invoice)


@router.put("/{invoice_id}", response_model=InvoiceResponse)
async def update_invoice(
    invoice_id: str,
    invoice_data: InvoiceUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_database),
    client: MyDataClient = Depends(get_mydata_client)
):
    """Update an invoice that has not been transmitted"""
    service = InvoiceService(db, client)
    try:
        outcome = await service.update_invoice(current_user.id, invoice_id, invoice_data)
    except SERVICE_ERRORS as e:
        raise service_error_to_http(e)

    if outcome.status == "rejected":
        raise rejection_to_http(outcome)
    return InvoiceResponse.from_invoice(outcome.invoice)


@router.delete("/{invoice_id}", response_model=InvoiceResponse)
async def cancel_invoice(
    invoice_id: str,
    payload: Optional[CancelRequest] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """Cancel an invoice locally (only before transmission to myDATA)"""
    try:
        invoice = await InvoiceService(db).cancel_locally(
            current_user.id, invoice_id, payload.reason if payload else None
        )
    except SERVICE_ERRORS as e:
        raise service_error_to_http(e)
    return InvoiceResponse.from_invoice(invoice)


@router.post("/{invoice_id}/pay", response_model=InvoiceResponse)
async def pay_invoice(
    invoice_id: str,
    payload: PaymentRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """Settle the invoice (amount defaults to the total); partial=true accumulates instead"""
    try:
        invoice = await InvoiceService(db).record_payment(current_user.id, invoice_id, payload)
    except SERVICE_ERRORS as e:
        raise service_error_to_http(e)
    return InvoiceResponse.from_invoice(invoice)


@router.post("/{invoice_id}/transmit", response_model=InvoiceResponse)
async def transmit_invoice(
    invoice_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_database),
    client: MyDataClient = Depends(get_mydata_client)
):
    """Transmit an invoice to myDATA, or retry a failed transmission"""
    service = InvoiceService(db, client)
    try:
        outcome = await service.transmit_invoice(current_user.id, invoice_id)
    except SERVICE_ERRORS as e:
        raise service_error_to_http(e)

    if outcome.status == "rejected":
        raise rejection_to_http(outcome)
    return InvoiceResponse.from_invoice(outcome.invoice)


@router.post("/{invoice_id}/cancel-mydata", response_model=InvoiceResponse)
async def cancel_in_mydata(
    invoice_id: str,
    payload: Optional[CancelRequest] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_database),
    client: MyDataClient = Depends(get_mydata_client)
):
    """Cancel a transmitted invoice in myDATA (issues a cancellation mark)"""
    service = InvoiceService(db, client)
    try:
        outcome = await service.cancel_in_mydata(
            current_user.id, invoice_id, payload.reason if payload else None
        )
    except SERVICE_ERRORS as e:
        raise service_error_to_http(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if outcome.status == "rejected":
        raise rejection_to_http(outcome, "myDATA rejected the cancellation")
    return InvoiceResponse.from_invoice(outcome.invoice)
