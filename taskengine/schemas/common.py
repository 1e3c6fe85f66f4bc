"""
Common/shared Pydantic schemas.
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class BaseSchema(BaseModel):
    """
    Base schema with common configuration.

    All schemas should inherit from this.
    """

    model_config = ConfigDict(
        from_attributes=True,  # Allow ORM mode (SQLAlchemy objects)
        populate_by_name=True,  # Allow population by field name or alias
        str_strip_whitespace=True,
        validate_assignment=True,
    )


class WireSchema(BaseSchema):
    """
    Schema serialized for other processes or browsers.

    Field names are camelCase on the wire; dump with by_alias=True.
    """

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


class MessageResponse(BaseModel):
    """Simple message response."""
    message: str
