"""
Base Pydantic schemas with common patterns.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class BaseSchema(BaseModel):
    """Base schema: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        use_enum_values=True,
    )


class ErrorResponse(BaseModel):
    """problem+json body returned by the exception handlers."""

    type: str = Field(..., description="Problem type URI")
    title: str = Field(..., description="Short summary")
    status: int = Field(..., description="HTTP status code")
    detail: str = Field(..., description="Human readable explanation")
    code: Optional[str] = Field(None, description="Error code")
    instance: Optional[str] = Field(None, description="Request URL")
    extra: Optional[dict] = Field(None, description="Additional data")


class SuccessResponse(BaseSchema):
    success: bool = True
