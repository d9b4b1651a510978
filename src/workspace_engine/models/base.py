"""Base model shared by every API-facing model."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Model serialized with camelCase keys for the UI layer.

    Python code uses snake_case attribute names; both spellings are accepted
    on input.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
