"""Queue message schema shared by producers and the workflow consumer."""

from typing import Annotated, List, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


class ItemProcessMessage(BaseModel):
    """Process one newly inserted item."""
    kind: Literal["item_process"] = "item_process"
    item_id: int
    source_type: str = "default"


class BatchProcessMessage(BaseModel):
    """Reprocess a batch of existing items (retry sweep, manual trigger)."""
    kind: Literal["batch_process"] = "batch_process"
    item_ids: List[int] = Field(..., min_length=1)
    triggered_by: str = "manual"

    @field_validator("item_ids")
    @classmethod
    def dedupe_ids(cls, v: List[int]) -> List[int]:
        return list(dict.fromkeys(v))


QueueMessage = Annotated[Union[ItemProcessMessage, BatchProcessMessage], Field(discriminator="kind")]

_message_adapter = TypeAdapter(QueueMessage)


def parse_message(payload) -> Union[ItemProcessMessage, BatchProcessMessage]:
    """
    Validate a raw payload (dict, JSON str or bytes) into a queue message.

    Raises:
        pydantic.ValidationError: unknown kind or malformed fields
    """
    if isinstance(payload, (str, bytes, bytearray)):
        return _message_adapter.validate_json(payload)
    return _message_adapter.validate_python(payload)
