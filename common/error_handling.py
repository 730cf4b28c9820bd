"""
Standardized error responses for the HTTP services
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
import logging
import traceback
import time

from common.tracing import get_current_trace_id

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    """Detailed error information"""
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """Standard error response format"""
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None

class ErrorCodes:
    """Standard error codes"""
    # Webhook authentication
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    UNSUPPORTED_PROVIDER = "UNSUPPORTED_PROVIDER"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"

    # Business Logic
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    RESELLER_NOT_FOUND = "RESELLER_NOT_FOUND"
    BUNDLE_NOT_FOUND = "BUNDLE_NOT_FOUND"
    BUNDLE_INACTIVE = "BUNDLE_INACTIVE"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    QUEUE_NOT_FOUND = "QUEUE_NOT_FOUND"
    NOT_FOUND = "NOT_FOUND"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    QUEUE_UNAVAILABLE = "QUEUE_UNAVAILABLE"

    # External Service Errors
    PAYMENT_INIT_FAILED = "PAYMENT_INIT_FAILED"

class BusinessLogicError(Exception):
    """Custom exception for business logic errors"""
    def __init__(self, code: str, message: str, field: str = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ServiceError(Exception):
    """Custom exception for service-level errors"""
    def __init__(self, code: str, message: str, original_error: Exception = None):
        self.code = code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

BUSINESS_STATUS_CODES = {
    ErrorCodes.INVALID_SIGNATURE: 400,
    ErrorCodes.INVALID_PAYLOAD: 400,
    ErrorCodes.VALIDATION_ERROR: 400,
    ErrorCodes.BUNDLE_INACTIVE: 400,
    ErrorCodes.UNSUPPORTED_PROVIDER: 404,
    ErrorCodes.ORDER_NOT_FOUND: 404,
    ErrorCodes.RESELLER_NOT_FOUND: 404,
    ErrorCodes.BUNDLE_NOT_FOUND: 404,
    ErrorCodes.JOB_NOT_FOUND: 404,
    ErrorCodes.QUEUE_NOT_FOUND: 404,
    ErrorCodes.NOT_FOUND: 404,
}

SERVICE_STATUS_CODES = {
    # the gateway redelivers a webhook only on a 5xx, so queue outages must be 500
    ErrorCodes.QUEUE_UNAVAILABLE: 500,
    ErrorCodes.SERVICE_UNAVAILABLE: 503,
    ErrorCodes.PAYMENT_INIT_FAILED: 502,
}

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
) -> JSONResponse:
    """Create standardized error response"""

    error_detail = ErrorDetail(
        code=error_code,
        message=message,
        field=field,
        context=context
    )

    error_response = StandardErrorResponse(
        error=error_detail,
        timestamp=time.time(),
        trace_id=trace_id or get_current_trace_id()
    )

    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(error_response.model_dump())
    )

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Handle business logic exceptions"""

    status_code = BUSINESS_STATUS_CODES.get(exc.code, 400)

    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": get_current_trace_id(),
        "path": request.url.path,
        "field": exc.field,
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        field=exc.field,
        context=exc.context,
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    """Handle service-level exceptions"""

    status_code = SERVICE_STATUS_CODES.get(exc.code, 500)

    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": get_current_trace_id(),
        "path": request.url.path,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation exceptions"""

    # Extract first validation error
    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={
        "trace_id": get_current_trace_id(),
    })

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""

    status_to_code = {
        400: ErrorCodes.VALIDATION_ERROR,
        404: ErrorCodes.NOT_FOUND,
        500: ErrorCodes.INTERNAL_SERVER_ERROR,
        503: ErrorCodes.SERVICE_UNAVAILABLE,
    }

    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={
        "status_code": exc.status_code,
        "trace_id": get_current_trace_id(),
    })

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "trace_id": get_current_trace_id(),
        "traceback": traceback.format_exc()
    })

    # Don't expose internal error details
    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
