from typing import Generic, TypeVar, Optional
from pydantic import BaseModel

T = TypeVar('T')


class StandardResponse(BaseModel, Generic[T]):
    success: bool = True
    message: str = "OK"
    data: Optional[T] = None


def error_response(message: str, data=None):
    """Helper function tạo error response"""
    return StandardResponse(success=False, message=message, data=data)
