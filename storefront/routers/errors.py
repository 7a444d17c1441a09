"""
Error code → HTTP status mapping shared by the routers.
"""
from fastapi import HTTPException, status

from storefront.exceptions import StorefrontError

_STATUS_BY_CODE = {
    "INSUFFICIENT_FUNDS": status.HTTP_402_PAYMENT_REQUIRED,
    "ACCOUNT_NOT_FOUND":  status.HTTP_404_NOT_FOUND,
    "ITEM_UNAVAILABLE":   status.HTTP_404_NOT_FOUND,
    "ORDER_NOT_FOUND":    status.HTTP_404_NOT_FOUND,
    "PAYMENT_NOT_FOUND":  status.HTTP_404_NOT_FOUND,
    "INSUFFICIENT_STOCK": status.HTTP_409_CONFLICT,
    "INVALID_STATUS":     status.HTTP_409_CONFLICT,
    "INVALID_REQUEST":    status.HTTP_400_BAD_REQUEST,
    "INVALID_QUANTITY":   status.HTTP_400_BAD_REQUEST,
    "INVALID_AMOUNT":     status.HTTP_400_BAD_REQUEST,
    "METHOD_UNAVAILABLE": status.HTTP_400_BAD_REQUEST,
    "REFUND_UNSUPPORTED": status.HTTP_400_BAD_REQUEST,
    "CANCELLED":          status.HTTP_400_BAD_REQUEST,
    "DECLINED":           status.HTTP_400_BAD_REQUEST,
    "PROVIDER_ERROR":     status.HTTP_502_BAD_GATEWAY,
}


def status_for_code(code: str) -> int:
    return _STATUS_BY_CODE.get(code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def handle_service_error(exc: StorefrontError) -> HTTPException:
    return HTTPException(
        status_code=status_for_code(exc.code),
        detail={"code": exc.code, "message": str(exc)},
    )
