"""
Catalogue data models.
Upstream entries stay server-side; only descriptors leave the relay.
"""
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ChannelType = Literal["live", "movie"]
ChannelFormat = Literal["hls", "ts", "direct"]


class CatalogueEntry(BaseModel):
    """One playable item as known to the relay, including its real URL."""
    id: str
    type: ChannelType = "live"
    name: str
    tvg_id: str = ""
    logo_url: str = ""
    group_title: str = "General"
    format: ChannelFormat = "hls"
    upstream_url: str


class ChannelDescriptor(BaseModel):
    """Client-facing view of a catalogue entry with a masked stream URL."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    type: ChannelType
    name: str
    tvg_id: str = ""
    logo_url: str = ""
    group_title: str
    format: ChannelFormat
    masked_stream_url: str


class ChannelPage(BaseModel):
    """Paginated channel list response."""
    total: int
    offset: int
    limit: int
    channels: list[ChannelDescriptor] = Field(default_factory=list)


class GroupCount(BaseModel):
    title: str
    count: int


class GroupList(BaseModel):
    groups: list[GroupCount] = Field(default_factory=list)
