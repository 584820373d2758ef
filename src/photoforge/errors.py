class PhotoforgeError(RuntimeError):
    status_code = 500
    code = "internal_error"

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self)}


class ValidationError(PhotoforgeError):
    status_code = 400
    code = "invalid_request"


class AuthError(PhotoforgeError):
    status_code = 401
    code = "unauthorized"


class NotFoundError(PhotoforgeError):
    status_code = 404
    code = "not_found"


class InsufficientCreditsError(PhotoforgeError):
    status_code = 402
    code = "insufficient_credits"

    def __init__(self, required: int, available: int) -> None:
        super().__init__("Insufficient credits")
        self.required = required
        self.available = available

    def to_dict(self) -> dict:
        return {**super().to_dict(), "required": self.required, "available": self.available}


class UploadError(PhotoforgeError):
    code = "upload_failed"


class DispatchError(PhotoforgeError):
    code = "dispatch_failed"


class InternalError(PhotoforgeError):
    pass
