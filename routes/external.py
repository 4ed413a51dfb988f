"""
External integration routes (X-API-Key)

Payment webhooks and partner apps create receipts and B2B invoices here.
Repeated deliveries with the same reference return the original document.
"""

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase
from database.mongodb import get_database
from services.auth_deps import get_api_client
from services.invoice_service import InvoiceService
from services.mydata_client import MyDataClient
from models.external import ExternalDocumentResponse, ExternalInvoiceCreate, ExternalReceiptCreate
from models.invoice import InvoiceSource
from models.user import ApiClient
from routes.common import SERVICE_ERRORS, get_mydata_client, service_error_to_http
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/external", tags=["external"])


def _created_or_existing(document: ExternalDocumentResponse) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_201_CREATED if document.created else status.HTTP_200_OK,
        content=document.model_dump(mode="json")
    )


@router.post("/receipts", response_model=ExternalDocumentResponse, status_code=status.HTTP_201_CREATED)
async def create_receipt(
    payload: ExternalReceiptCreate,
    api_client: ApiClient = Depends(get_api_client),
    db: AsyncIOMotorDatabase = Depends(get_database),
    client: MyDataClient = Depends(get_mydata_client)
):
    """Create a paid retail receipt (series R) and transmit it"""
    logger.info(f"External receipt request from key {api_client.key_prefix}...")
    service = InvoiceService(db, client)
    try:
        document = await service.create_external_receipt(
            api_client.owner_id, payload, source=InvoiceSource(api_client.source)
        )
    except SERVICE_ERRORS as e:
        raise service_error_to_http(e)
    return _created_or_existing(document)


@router.post("/invoices", response_model=ExternalDocumentResponse, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    payload: ExternalInvoiceCreate,
    api_client: ApiClient = Depends(get_api_client),
    db: AsyncIOMotorDatabase = Depends(get_database),
    client: MyDataClient = Depends(get_mydata_client)
):
    """Create a B2B service invoice (series A) and transmit it"""
    logger.info(f"External invoice request from key {api_client.key_prefix}...")
    service = InvoiceService(db, client)
    try:
        document = await service.create_external_invoice(
            api_client.owner_id, payload, source=InvoiceSource(api_client.source)
        )
    except SERVICE_ERRORS as e:
        raise service_error_to_http(e)
    return _created_or_existing(document)


@router.get("/receipts/by-external/{reference}", response_model=ExternalDocumentResponse)
async def get_receipt_by_reference(
    reference: str,
    api_client: ApiClient = Depends(get_api_client),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    try:
        return await InvoiceService(db).get_by_external_reference(api_client.owner_id, reference)
    except SERVICE_ERRORS as e:
        raise service_error_to_http(e)


@router.get("/receipts/{receipt_id}", response_model=ExternalDocumentResponse)
async def get_receipt(
    receipt_id: str,
    api_client: ApiClient = Depends(get_api_client),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    try:
        return await InvoiceService(db).get_external_document(api_client.owner_id, receipt_id)
    except SERVICE_ERRORS as e:
        raise service_error_to_http(e)
