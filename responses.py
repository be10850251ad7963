from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from bson import ObjectId


def envelope(message: str, data: Any = None, success: bool = True) -> dict:
    return {
        "success": success,
        "message": message,
        "data": jsonable_encoder(data, custom_encoder={ObjectId: str}),
    }


def error_response(status_code: int, message: str, data: Any = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope(message, data, success=False))
