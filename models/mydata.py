"""myDATA wire-level models for the transmission client"""

from pydantic import BaseModel
from typing import Optional, List
from datetime import date
from enum import Enum


class MyDataEnvironment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class ProtocolError(BaseModel):
    """One (code, message) pair reported by the authority, kept verbatim"""
    code: str = ""
    message: str = ""


class MyDataCredentials(BaseModel):
    """Resolved credential record for one business"""
    user_id: str
    subscription_key: str
    environment: MyDataEnvironment = MyDataEnvironment.DEVELOPMENT
    source: str = "settings"  # 'settings' or 'default'

    def masked(self) -> str:
        return f"{self.user_id} / {self.subscription_key[:4]}..."


class ResponseItem(BaseModel):
    """A single <response> entry of a ResponseDoc"""
    index: Optional[int] = None
    status_code: str = ""
    invoice_uid: Optional[str] = None
    invoice_mark: Optional[str] = None
    authentication_code: Optional[str] = None
    cancellation_mark: Optional[str] = None
    errors: List[ProtocolError] = []

    @property
    def is_success(self) -> bool:
        return self.status_code == SUCCESS_STATUS_CODE


class Acknowledgment(BaseModel):
    """Successful transmission result"""
    index: Optional[int] = None
    mark: str
    uid: str
    authentication_code: str


class SendResult(BaseModel):
    """Outcome of a SendInvoices call: either an acknowledgment or the error set"""
    success: bool
    status_code: str = ""
    acknowledgment: Optional[Acknowledgment] = None
    errors: List[ProtocolError] = []


class CancellationResult(BaseModel):
    """Outcome of a CancelInvoice call"""
    success: bool
    status_code: str = ""
    cancellation_mark: Optional[str] = None
    errors: List[ProtocolError] = []


class TransmittedDoc(BaseModel):
    """Summary of a document returned by RequestTransmittedDocs"""
    mark: Optional[str] = None
    uid: Optional[str] = None
    authentication_code: Optional[str] = None
    issuer_vat_number: Optional[str] = None
    counterpart_vat_number: Optional[str] = None
    series: Optional[str] = None
    aa: Optional[str] = None
    issue_date: Optional[date] = None
    invoice_type: Optional[str] = None
    total_gross_value: Optional[float] = None
    cancelled_by_mark: Optional[str] = None


class ConnectionStatus(BaseModel):
    """Diagnostic result of a connectivity check against myDATA"""
    success: bool
    endpoint: str
    environment: str
    error: Optional[str] = None
    message: str = ""
    status: Optional[int] = None


SUCCESS_STATUS_CODE = "Success"
