"""
Request and response bodies for the Coloring Studio API.

Field names follow the JSON the web client already sends
(Razorpay's checkout callback fields and camelCase user ids).
"""

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError

from errors import RequestValidationFailed

M = TypeVar("M", bound=BaseModel)


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)
    userId: str = Field(..., min_length=1)


class GenerateImageRequest(BaseModel):
    prompt: str = Field(..., min_length=3)
    userId: str = Field(..., min_length=1)


class CreateOrderRequest(BaseModel):
    userId: str = Field(..., min_length=1)


class CreateUserRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    email: Optional[str] = None


class ApiResponse(BaseModel):
    success: bool
    message: str


class ImageResult(BaseModel):
    imageUrl: str
    prompt: str


class GenerateImageResponse(ApiResponse):
    image: ImageResult
    prompt: str


class CreateOrderResponse(ApiResponse):
    orderId: str
    amount: int
    currency: str
    keyId: str


class GalleryResponse(BaseModel):
    success: bool = True
    images: List[Dict[str, Any]]


def parse_body(model: Type[M], body: Any, message: str) -> M:
    """Validate a decoded JSON body, raising a 400 with ``message`` on failure."""
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise RequestValidationFailed(message) from exc


def parse_generate_request(body: Any) -> GenerateImageRequest:
    """Like parse_body, but tells the user what is wrong with the prompt."""
    try:
        return GenerateImageRequest.model_validate(body)
    except ValidationError as exc:
        for error in exc.errors():
            if error["loc"][:1] != ("prompt",):
                continue
            if error["type"] == "missing":
                raise RequestValidationFailed("Please enter a prompt.") from exc
            if error["type"] == "string_too_short":
                raise RequestValidationFailed("Prompt must be at least 3 characters long.") from exc
        raise RequestValidationFailed("Invalid input.") from exc
