"""ORM Models — every model imported here so Base.metadata is complete."""

from turnloop.models.conversation import Conversation

__all__ = ["Conversation"]
