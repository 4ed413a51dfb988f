"""Shared route helpers: the myDATA client handle and service error mapping"""

from fastapi import HTTPException, Request, status

from services.business_settings_service import BusinessNotConfiguredError
from services.invoice_service import InvoiceNotFoundError, TransmissionOutcome
from services.invoice_state import InvalidTransitionError
from services.invoice_validation import InvoiceValidationError
from services.mydata_client import (
    CredentialsNotConfiguredError,
    MyDataClient,
    TransmissionAuthError,
    TransmissionError,
    TransmissionNetworkError,
)
from services.numbering_service import AllocationError

SERVICE_ERRORS = (
    InvoiceNotFoundError,
    InvoiceValidationError,
    BusinessNotConfiguredError,
    InvalidTransitionError,
    AllocationError,
    CredentialsNotConfiguredError,
    TransmissionError,
)


async def get_mydata_client(request: Request) -> MyDataClient:
    """The client handle opened in the application lifespan"""
    return request.app.state.mydata_client


def error_list(errors) -> list:
    return [{"code": e.code, "message": e.message} for e in errors]


def service_error_to_http(error: Exception) -> HTTPException:
    if isinstance(error, InvoiceNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))

    if isinstance(error, InvoiceValidationError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "message": "Invoice validation failed",
                "errors": [e.model_dump() for e in error.errors],
            }
        )

    if isinstance(error, (BusinessNotConfiguredError, CredentialsNotConfiguredError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))

    if isinstance(error, InvalidTransitionError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(error), "current": error.current, "requested": error.requested}
        )

    if isinstance(error, AllocationError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": str(error), "retryable": True}
        )

    if isinstance(error, TransmissionAuthError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "authentication", "message": str(error), "status": error.status_code}
        )

    if isinstance(error, TransmissionNetworkError):
        return HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT if error.timeout else status.HTTP_502_BAD_GATEWAY,
            detail={"error": "network", "message": str(error), "retryable": True}
        )

    if isinstance(error, TransmissionError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": error.failure.value, "message": str(error), "retryable": True}
        )

    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Unexpected error")


def rejection_to_http(outcome: TransmissionOutcome, message: str = "myDATA rejected the invoice") -> HTTPException:
    """Protocol rejection: the authority's errors, verbatim and in order"""
    invoice = outcome.invoice
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={
            "message": message,
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "transmission_status": invoice.transmission_status.value,
            "errors": error_list(outcome.errors),
        }
    )
