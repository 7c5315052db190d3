import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError, TimeoutError as SQLAlchemyTimeoutError

from reservation_engine.domain.exceptions import (
    AlreadyHeldError,
    AlreadyTerminalError,
    AlreadyWaitlistedError,
    BookingNotOpenError,
    CapacityAdjustmentError,
    ContentionError,
    ExtensionNotAllowedError,
    HoldNotFoundError,
    InvalidAccessCodeError,
    InvalidDiscountCodeError,
    InvalidStateTransitionError,
    NotAuthorizedError,
    NotEligibleError,
    PaymentInProgressError,
    PaymentNotFoundError,
    PaymentProviderError,
    PlayerNotFoundError,
    ProviderNotConfiguredError,
    RefundNotAllowedError,
    ReservationEngineError,
    ReservationExpiredDuringPaymentError,
    SessionFullError,
    SessionNotFoundError,
    WaitlistEntryNotFoundError,
    WaitlistOfferExpiredError,
    WaitlistOfferNotActiveError,
    WaitlistUnavailableError,
)


logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: dict[type, int] = {
    SessionNotFoundError: status.HTTP_404_NOT_FOUND,
    PlayerNotFoundError: status.HTTP_404_NOT_FOUND,
    HoldNotFoundError: status.HTTP_404_NOT_FOUND,
    PaymentNotFoundError: status.HTTP_404_NOT_FOUND,
    WaitlistEntryNotFoundError: status.HTTP_404_NOT_FOUND,
    SessionFullError: status.HTTP_409_CONFLICT,
    AlreadyHeldError: status.HTTP_409_CONFLICT,
    ContentionError: status.HTTP_409_CONFLICT,
    PaymentInProgressError: status.HTTP_409_CONFLICT,
    AlreadyTerminalError: status.HTTP_409_CONFLICT,
    InvalidStateTransitionError: status.HTTP_409_CONFLICT,
    ReservationExpiredDuringPaymentError: status.HTTP_409_CONFLICT,
    CapacityAdjustmentError: status.HTTP_409_CONFLICT,
    WaitlistUnavailableError: status.HTTP_409_CONFLICT,
    AlreadyWaitlistedError: status.HTTP_409_CONFLICT,
    WaitlistOfferNotActiveError: status.HTTP_409_CONFLICT,
    WaitlistOfferExpiredError: status.HTTP_409_CONFLICT,
    NotEligibleError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    BookingNotOpenError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidAccessCodeError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidDiscountCodeError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ExtensionNotAllowedError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    RefundNotAllowedError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ProviderNotConfiguredError: status.HTTP_400_BAD_REQUEST,
    PaymentProviderError: status.HTTP_402_PAYMENT_REQUIRED,
    NotAuthorizedError: status.HTTP_403_FORBIDDEN,
}


def status_for(exc: ReservationEngineError) -> int:
    return _STATUS_BY_ERROR.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)


def reservation_error_handler(request: Request, exc: ReservationEngineError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error("Unhandled engine error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc), "code": exc.code})


def storage_error_handler(request: Request, exc: Exception) -> JSONResponse:
    # The transaction was rolled back; nothing partial was committed.
    logger.warning("Storage unavailable on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage temporarily unavailable. Please retry.", "code": "STORAGE_UNAVAILABLE"},
    )


def install_error_handlers(app) -> None:
    app.add_exception_handler(ReservationEngineError, reservation_error_handler)
    app.add_exception_handler(OperationalError, storage_error_handler)
    app.add_exception_handler(SQLAlchemyTimeoutError, storage_error_handler)
