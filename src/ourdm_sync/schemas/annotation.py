# src/ourdm_sync/schemas/annotation.py
"""Schema for annotation changes exchanged between devices."""

from typing import Literal

from pydantic import BaseModel, Field

AnnotationKind = Literal["reaction", "unreact", "edit", "delete"]


class AnnotationEvent(BaseModel):
    """A single mutable-annotation change on a message.

    `content` is plaintext in-process; it is sealed before it reaches the relay.
    """

    kind: AnnotationKind
    message_id: str
    actor_id: str
    at: int = Field(..., description="Epoch milliseconds when the change was made")
    symbol: str | None = None
    content: str | None = None

    def relay_marker(self) -> dict[str, object]:
        """Return the content-free part of the event stored on the relay row."""
        return self.model_dump(exclude={"content"})
