"""
Error Handling Module for MoMo Billing

This module provides centralized error handling with:
- Custom exception hierarchy for billing and gateway failures
- Standardized error responses
- Error logging and tracking
- Ghana mobile money input validation
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import UUID
import logging
import re

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
    DataError,
)
from starlette.exceptions import HTTPException as StarletteHTTPException

from momo_billing.models.momo import MoMoNetwork

# Configure logging
logger = logging.getLogger("momo_billing.errors")


def _timestamp() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""
    
    # Validation Errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_PHONE_OR_NETWORK = "INVALID_PHONE_OR_NETWORK"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    
    # Authentication/Authorization Errors (401/403)
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    
    # Resource Errors (404/409)
    NOT_FOUND = "NOT_FOUND"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    REFERENCE_NOT_FOUND = "REFERENCE_NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    SUBSCRIPTION_EXISTS = "SUBSCRIPTION_EXISTS"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    
    # Business Logic Errors (422)
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    
    # Rate Limiting (429)
    RATE_LIMITED = "RATE_LIMITED"
    
    # External Service Errors (502/503/504)
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"
    MANDATE_CANCELLATION_FAILED = "MANDATE_CANCELLATION_FAILED"
    TEMPORARILY_UNAVAILABLE = "TEMPORARILY_UNAVAILABLE"
    
    # Database Errors (500)
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"
    
    # Internal Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(Exception):
    """Base exception for all application exceptions"""
    
    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.timestamp = _timestamp()
        super().__init__(self.message)
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Validation Exceptions
# ============================================================================

class ValidationException(AppException):
    """Base validation exception"""
    
    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            field=field,
        )


class InvalidPhoneOrNetwork(ValidationException):
    """Phone number is not a chargeable mobile money wallet"""
    
    def __init__(self, phone: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"Invalid mobile money number: {phone}. Expected a Ghana number like 0241234567 or +233241234567.",
            field="phone",
            code=ErrorCode.INVALID_PHONE_OR_NETWORK,
            details={"provided_phone": phone},
        )


class InvalidAmountException(ValidationException):
    """Invalid monetary amount"""
    
    def __init__(self, amount: Any, field: str = "amount", message: Optional[str] = None):
        super().__init__(
            message=message or f"Invalid amount: {amount}. Amount must be a positive number.",
            field=field,
            code=ErrorCode.INVALID_AMOUNT,
            details={"provided_amount": str(amount)},
        )


# ============================================================================
# Resource Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found exception"""
    
    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Union[str, UUID]] = None,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        if message is None:
            if resource_id:
                message = f"{resource_type} with ID '{resource_id}' not found"
            else:
                message = f"{resource_type} not found"
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": str(resource_id) if resource_id else None},
        )


class SubscriptionNotFound(NotFoundException):
    """No subscription matches the request (also used for ownership mismatches)"""
    
    def __init__(self, subscription_id: Optional[Union[str, UUID]] = None, message: Optional[str] = None):
        super().__init__(
            resource_type="Subscription",
            resource_id=subscription_id,
            message=message,
            code=ErrorCode.SUBSCRIPTION_NOT_FOUND,
        )


class ReferenceNotFound(NotFoundException):
    """Gateway has no transaction for the reference"""
    
    def __init__(self, reference: str):
        super().__init__(
            resource_type="Payment reference",
            resource_id=reference,
            code=ErrorCode.REFERENCE_NOT_FOUND,
        )
        self.reference = reference


class ConflictException(AppException):
    """Resource conflict exception"""
    
    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if resource_type:
            _details["resource_type"] = resource_type
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=_details,
        )


class SubscriptionAlreadyExists(ConflictException):
    """User already holds a live subscription for the tier"""
    
    def __init__(self, tier: str, subscription_id: Optional[Union[str, UUID]] = None):
        details = {"tier": tier}
        if subscription_id:
            details["subscription_id"] = str(subscription_id)
        super().__init__(
            message=f"An active subscription for tier '{tier}' already exists",
            resource_type="Subscription",
            code=ErrorCode.SUBSCRIPTION_EXISTS,
            details=details,
        )


class ConcurrentUpdateConflict(ConflictException):
    """Lost an optimistic-concurrency race; retried internally by the store"""
    
    def __init__(self, subscription_id: Optional[Union[str, UUID]] = None, original_error: Optional[Exception] = None):
        super().__init__(
            message="Subscription was modified concurrently",
            resource_type="Subscription",
            code=ErrorCode.VERSION_CONFLICT,
            details={"subscription_id": str(subscription_id) if subscription_id else None},
        )
        self.original_error = original_error


# ============================================================================
# Business Logic Exceptions
# ============================================================================

class BusinessRuleException(AppException):
    """Business rule violation exception"""
    
    def __init__(
        self,
        message: str,
        rule: Optional[str] = None,
        code: ErrorCode = ErrorCode.BUSINESS_RULE_VIOLATION,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if rule:
            _details["violated_rule"] = rule
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=_details,
        )


class SubscriptionInactive(BusinessRuleException):
    """Operation requires a non-terminal subscription"""
    
    def __init__(self, subscription_id: Union[str, UUID], current_status: str):
        super().__init__(
            message=f"Subscription is {current_status} and can no longer be charged",
            rule="terminal_subscription",
            code=ErrorCode.SUBSCRIPTION_INACTIVE,
            details={"subscription_id": str(subscription_id), "status": current_status},
        )


# ============================================================================
# External Service Exceptions
# ============================================================================

class ExternalServiceException(AppException):
    """External service error exception"""
    
    def __init__(
        self,
        service_name: str,
        message: str,
        code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR,
        original_error: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = status.HTTP_502_BAD_GATEWAY,
    ):
        _details = details or {}
        _details["service"] = service_name
        super().__init__(
            code=code,
            message=message,
            status_code=status_code,
            details=_details,
            original_error=original_error,
        )


class GatewayError(ExternalServiceException):
    """Payment gateway error; no local state was mutated"""
    
    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR,
        original_error: Optional[Exception] = None,
        status_code: int = status.HTTP_502_BAD_GATEWAY,
    ):
        super().__init__(
            service_name="Paystack",
            message=message,
            code=code,
            original_error=original_error,
            status_code=status_code,
        )


class GatewayUnavailable(GatewayError):
    """Gateway unreachable or returned a server error"""
    
    def __init__(self, message: str = "Payment gateway is unavailable", original_error: Optional[Exception] = None):
        super().__init__(
            message=message,
            code=ErrorCode.GATEWAY_UNAVAILABLE,
            original_error=original_error,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


class GatewayTimeout(GatewayError):
    """Gateway did not answer within the configured timeout"""
    
    def __init__(self, message: str = "Payment gateway timed out", original_error: Optional[Exception] = None):
        super().__init__(
            message=message,
            code=ErrorCode.GATEWAY_TIMEOUT,
            original_error=original_error,
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
        )


class MandateCancellationFailed(GatewayError):
    """Gateway refused to disable the recurring mandate"""
    
    def __init__(self, message: str = "Could not cancel recurring mandate", original_error: Optional[Exception] = None):
        super().__init__(
            message=message,
            code=ErrorCode.MANDATE_CANCELLATION_FAILED,
            original_error=original_error,
        )


class TemporarilyUnavailable(AppException):
    """Concurrency retries exhausted; the caller should retry later"""
    
    def __init__(self, message: str = "Service temporarily unavailable, please retry", retry_after: int = 5):
        super().__init__(
            code=ErrorCode.TEMPORARILY_UNAVAILABLE,
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after},
        )


# ============================================================================
# Exception Handlers
# ============================================================================

def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
) -> JSONResponse:
    """Create a standardized error response"""
    content = {
        "detail": {
            "code": code.value,
            "message": message,
            "timestamp": _timestamp(),
        }
    }
    
    if field:
        content["detail"]["field"] = field
    if details:
        content["detail"]["details"] = details
    
    return JSONResponse(status_code=status_code, content=content)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle AppException"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"AppException: {exc.code.value} - {exc.message}",
        extra={
            "code": exc.code.value,
            "path": request.url.path,
            "method": request.method,
            "details": exc.details,
        },
        exc_info=exc.original_error,
    )
    
    response = create_error_response(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        field=exc.field,
    )
    retry_after = exc.details.get("retry_after_seconds")
    if retry_after:
        response.headers["Retry-After"] = str(retry_after)
    return response


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException"""
    # Map status codes to error codes
    code_map = {
        400: ErrorCode.INVALID_INPUT,
        401: ErrorCode.UNAUTHORIZED,
        403: ErrorCode.FORBIDDEN,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.RESOURCE_CONFLICT,
        422: ErrorCode.VALIDATION_ERROR,
        429: ErrorCode.RATE_LIMITED,
        500: ErrorCode.INTERNAL_ERROR,
        502: ErrorCode.EXTERNAL_SERVICE_ERROR,
        503: ErrorCode.EXTERNAL_SERVICE_ERROR,
    }
    
    error_code = code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    
    logger.warning(
        f"HTTPException: {exc.status_code} - {message}",
        extra={"path": request.url.path, "method": request.method},
    )
    
    return create_error_response(
        code=error_code,
        message=message,
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors"""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })
    
    logger.warning(
        f"ValidationError: {len(errors)} validation errors",
        extra={"path": request.url.path, "method": request.method, "errors": errors},
    )
    
    return create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"errors": errors},
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy errors without exposing storage internals"""
    error_message = "A database error occurred"
    error_code = ErrorCode.DATABASE_ERROR
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    
    if isinstance(exc, IntegrityError):
        error_message = "Data integrity constraint violated"
        error_code = ErrorCode.DATA_INTEGRITY_ERROR
        
        error_str = str(exc.orig).lower() if exc.orig else ""
        if "unique" in error_str or "duplicate" in error_str:
            error_message = "A record with this value already exists"
            error_code = ErrorCode.DUPLICATE_ENTRY
            status_code = status.HTTP_409_CONFLICT
    
    elif isinstance(exc, OperationalError):
        error_message = "Database operation failed"
        error_code = ErrorCode.CONNECTION_ERROR
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    
    elif isinstance(exc, DataError):
        error_message = "Invalid data format for database"
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    
    logger.error(
        f"SQLAlchemyError: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )
    
    return create_error_response(
        code=error_code,
        message=error_message,
        status_code=status_code,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions"""
    logger.critical(
        f"UnhandledException: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )
    
    # Don't expose internal error details
    return create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


# ============================================================================
# Error Tracking Middleware
# ============================================================================

class ErrorTrackingMiddleware:
    """Middleware for tracking and logging all errors"""
    
    def __init__(self, app: FastAPI):
        self.app = app
    
    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        
        try:
            await self.app(scope, receive, send)
        except Exception as exc:
            logger.error(
                f"Request failed: {scope.get('path', 'unknown')}",
                extra={
                    "path": scope.get("path"),
                    "method": scope.get("method"),
                    "exception_type": type(exc).__name__,
                },
                exc_info=True,
            )
            raise


# ============================================================================
# Utility Functions
# ============================================================================

GHANA_MOMO_PATTERN = re.compile(r"^(\+233|0)([2-9][0-9]{8})$")

# Two-digit prefixes following the leading 0 / +233
NETWORK_PREFIXES: Dict[MoMoNetwork, tuple] = {
    MoMoNetwork.MTN: ("24", "25", "53", "54", "55", "59"),
    MoMoNetwork.VODAFONE: ("20", "50", "23", "28", "29"),
    MoMoNetwork.AIRTELTIGO: ("26", "27", "56", "57"),
}


def validate_momo_phone(phone: str) -> str:
    """Validate a Ghana mobile money number and return it in local 0XXXXXXXXX form"""
    cleaned = (phone or "").replace("-", "").replace(" ", "")
    match = GHANA_MOMO_PATTERN.match(cleaned)
    if not match:
        raise InvalidPhoneOrNetwork(phone)
    return "0" + match.group(2)


def detect_network(phone: str) -> MoMoNetwork:
    """Detect the mobile money network from the number prefix (defaults to MTN)"""
    local = validate_momo_phone(phone)
    prefix = local[1:3]
    for network, prefixes in NETWORK_PREFIXES.items():
        if prefix in prefixes:
            return network
    return MoMoNetwork.MTN


def validate_amount(amount: Any, field: str = "amount", allow_zero: bool = False) -> Decimal:
    """Validate monetary amount"""
    try:
        value = Decimal(str(amount))
    except (TypeError, ValueError, InvalidOperation):
        raise InvalidAmountException(amount, field)
    if not value.is_finite() or value < 0 or (not allow_zero and value == 0):
        raise InvalidAmountException(amount, field)
    return value.quantize(Decimal("0.01"))


# Export all exceptions for easy importing
__all__ = [
    # Base
    "AppException",
    "ErrorCode",
    # Validation
    "ValidationException",
    "InvalidPhoneOrNetwork",
    "InvalidAmountException",
    # Resource
    "NotFoundException",
    "SubscriptionNotFound",
    "ReferenceNotFound",
    "ConflictException",
    "SubscriptionAlreadyExists",
    "ConcurrentUpdateConflict",
    # Business Logic
    "BusinessRuleException",
    "SubscriptionInactive",
    # External Services
    "ExternalServiceException",
    "GatewayError",
    "GatewayUnavailable",
    "GatewayTimeout",
    "MandateCancellationFailed",
    "TemporarilyUnavailable",
    # Handlers
    "setup_exception_handlers",
    "create_error_response",
    "ErrorTrackingMiddleware",
    # Utilities
    "validate_momo_phone",
    "detect_network",
    "validate_amount",
]
