"""Data models for flatvm-agent."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for everything that crosses the channel.

    Python attributes are snake_case; the wire uses camelCase names
    (``mount_tag`` <-> ``mountTag``). Both spellings are accepted on input
    and unknown fields are ignored.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class SharedDirKind(str, Enum):
    """Scope of a shared directory."""

    SYSTEM_DIR = "system_dir"
    USER_DIR = "user_dir"
    APP_DIR = "app_dir"


class SharedDirDescriptor(WireModel):
    """Host directory to be mounted inside the guest.

    Produced by whoever launches the VM. ``mount_tag`` must match the tag of
    the transport-level mount point that was configured for the VM; it is
    passed through as-is.
    """

    kind: SharedDirKind = Field(description="System, user or application scoped share")
    owner_app: str = Field(description="Application the share belongs to")
    source_path: str = Field(min_length=1, description="Directory path on the host")
    mount_tag: str = Field(min_length=1, description="Tag of the VM mount point backing this share")
    read_only: bool = Field(default=False, description="Mount read-only inside the guest")
