"""Errors raised by the messaging service and the attachment pipeline."""


class MessagingError(Exception):

    status_code = 400
    code = "messaging_error"
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class AccessDenied(MessagingError):

    status_code = 403
    code = "access_denied"


class Forbidden(MessagingError):

    status_code = 403
    code = "forbidden"


class NotFound(MessagingError):

    status_code = 404
    code = "not_found"


class InvalidInput(MessagingError):

    status_code = 400
    code = "invalid_input"


class NoFiles(InvalidInput):

    code = "no_files"


class PayloadTooLarge(InvalidInput):

    status_code = 413
    code = "payload_too_large"


class UnsupportedType(InvalidInput):

    status_code = 415
    code = "unsupported_type"


class TranscodeFailed(InvalidInput):

    status_code = 422
    code = "transcode_failed"


class EditWindowExpired(MessagingError):

    status_code = 400
    code = "edit_window_expired"


class UnsupportedOperation(MessagingError):

    status_code = 400
    code = "unsupported_operation"


class UploadTransportError(MessagingError):

    status_code = 502
    code = "upload_transport_error"
    retryable = True
