"""
Shared data models for adapters.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Mention(BaseModel):
    """
    A single post on X that mentions the tracked handle.

    Attributes:
        id: Unique post ID
        author_id: ID of the posting account
        created_at: When the post was created
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unique post ID")
    author_id: str = Field(description="ID of the posting account")
    created_at: datetime = Field(description="When the post was created")


class Author(BaseModel):
    """
    An X account that authored at least one mention.

    Attributes:
        id: Unique account ID
        handle: Account handle (without @)
        display_name: Profile display name
        verified: Whether the account carries a verified badge
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unique account ID")
    handle: str = Field(description="Account handle (without @)")
    display_name: str = Field(default="", description="Profile display name")
    verified: bool = Field(default=False, description="Verified badge")


class SearchPage(BaseModel):
    """One page of a recent-search response, already unpacked."""
    mentions: List[Mention] = Field(default_factory=list)
    authors: List[Author] = Field(default_factory=list)
    next_token: Optional[str] = Field(default=None, description="Continuation cursor")
    result_count: int = Field(default=0)


__all__ = ["Mention", "Author", "SearchPage"]
