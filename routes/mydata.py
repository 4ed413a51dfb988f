"""myDATA diagnostics and queries for the current business"""

from fastapi import APIRouter, Depends, HTTPException, status
from typing import List
from datetime import datetime
from motor.motor_asyncio import AsyncIOMotorDatabase
from database.mongodb import get_database
from services.auth_deps import get_current_user
from services.business_settings_service import BusinessSettingsService
from services.invoice_service import InvoiceService
from services.mydata_client import CredentialsNotConfiguredError, MyDataClient
from models.mydata import ConnectionStatus, TransmittedDoc
from models.user import User
from routes.common import SERVICE_ERRORS, get_mydata_client, service_error_to_http
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mydata", tags=["mydata"])


@router.get("/status", response_model=ConnectionStatus)
async def connection_status(
    current_user: User = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_database),
    client: MyDataClient = Depends(get_mydata_client)
):
    """Check that the business credentials reach myDATA"""
    try:
        credentials = await BusinessSettingsService(db).get_credentials(current_user.id)
    except CredentialsNotConfiguredError as e:
        raise service_error_to_http(e)

    result = await client.test_connection(credentials)
    logger.info(f"[MYDATA] Connection test for {current_user.id}: {result.error or 'ok'}")
    return result


@router.get("/transmitted", response_model=List[TransmittedDoc])
async def transmitted_documents(
    date_from: str,
    date_to: str,
    current_user: User = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_database),
    client: MyDataClient = Depends(get_mydata_client)
):
    """Documents myDATA holds for the business in a date range (YYYY-MM-DD)"""
    try:
        start = datetime.strptime(date_from, "%Y-%m-%d")
        end = datetime.strptime(date_to, "%Y-%m-%d")
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Dates must use the YYYY-MM-DD format"
        )
    if end < start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="date_to cannot precede date_from"
        )

    try:
        return await InvoiceService(db, client).transmitted_documents(current_user.id, start, end)
    except SERVICE_ERRORS as e:
        raise service_error_to_http(e)
