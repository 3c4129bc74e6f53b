from fastapi import HTTPException, status


class FulfillmentError(HTTPException):
    """
    Base for every error the order/return engine surfaces.
    Subclasses fix the HTTP status so routers can let them propagate untouched.
    """

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        super().__init__(status_code=type(self).status_code, detail=detail)


class ValidationError(FulfillmentError):
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(FulfillmentError):
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(FulfillmentError):
    status_code = status.HTTP_403_FORBIDDEN


class InvalidTransitionError(FulfillmentError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move from '{current}' to '{target}'")


class InvalidStateError(FulfillmentError):
    status_code = status.HTTP_400_BAD_REQUEST


class ReturnWindowExpiredError(InvalidStateError):
    pass


class NotReturnableError(InvalidStateError):
    pass


class InvalidOtpError(FulfillmentError):
    status_code = status.HTTP_400_BAD_REQUEST


class OtpExpiredError(InvalidOtpError):
    pass


class OtpMismatchError(InvalidOtpError):
    pass


class ConflictError(FulfillmentError):
    status_code = status.HTTP_409_CONFLICT


class InventoryError(FulfillmentError):
    status_code = status.HTTP_409_CONFLICT


class PaymentGatewayError(FulfillmentError):
    status_code = status.HTTP_502_BAD_GATEWAY
