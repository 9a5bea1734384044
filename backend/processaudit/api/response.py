import uuid

from fastapi import Request


def envelope(request: Request, data: dict | None, error: dict | None = None) -> dict:
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    return {
        "data": data,
        "meta": {
            "request_id": request_id,
        },
        "error": error,
    }


def exception_envelope(request: Request, status_code: int, message: str, code: str, details: dict | None = None) -> dict:
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    return {
        "data": None,
        "meta": {
            "request_id": request_id,
            "status_code": status_code,
        },
        "error": {"code": code, "message": message, "details": details or {}},
    }


def unauthorized_webhook_body() -> dict:
    return {"message": "Unauthorized", "reason_code": "webhook_unauthorized"}
