from __future__ import annotations

import enum
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _LenientEnum(str, enum.Enum):
    """Accepts any casing and ignores ``_``/``-`` (``RaspberryPi``, ``raspberry_pi``)."""

    @classmethod
    def _missing_(cls, value):
        if not isinstance(value, str):
            return None
        wanted = value.replace("_", "").replace("-", "").lower()
        for member in cls:
            if member.value.lower() == wanted or member.name.lower() == wanted:
                return member
        return None


class JobStatus(str, enum.Enum):
    running = "running"
    success = "success"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not JobStatus.running


class JobKind(str, enum.Enum):
    build = "build"
    flash = "flash"


class BoardType(_LenientEnum):
    raspberrypi = "raspberrypi"
    jetson = "jetson"


class BuildMode(_LenientEnum):
    flash = "flash"
    artifact = "artifact"


class PresetImage(_LenientEnum):
    raspberrypilite = "RaspberryPiLite"
    radxadesktop = "RadxaDesktop"
    radxaserver = "RadxaServer"


class JobInfo(BaseModel):
    id: str
    kind: JobKind
    status: JobStatus = JobStatus.running
    created_at: str
    finished_at: Optional[str] = None
    error: Optional[str] = None


class BuildConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    hostname: str = Field(min_length=1)
    change_username: bool = False
    new_username: Optional[str] = None
    set_root_password: bool = False
    root_password: Optional[str] = None
    enable_ssh: bool = False
    wifi_ssid: Optional[str] = None
    wifi_password: Optional[str] = None
    board_type: BoardType = Field(validation_alias=AliasChoices("board_type", "boardType", "board"))
    mode: BuildMode
    expand_image: bool = False
    extra_size: Optional[str] = None
    base_image_url: Optional[str] = None
    preset_image: Optional[PresetImage] = None
    docker_compose_content: Optional[str] = None
    custom_script_content: Optional[str] = None
    inline_command: Optional[str] = None


class FlashRequest(BaseModel):
    image_path: str = Field(min_length=1, validation_alias=AliasChoices("image_path", "imagePath"))
    device: str = Field(min_length=1, validation_alias=AliasChoices("device", "devicePath", "device_path"))


class Device(BaseModel):
    name: str
    path: str
    size: str
    removable: bool = True


class StoredImage(BaseModel):
    name: str
    path: str
    size_mb: int
    modified: Optional[int] = None


class ImageList(BaseModel):
    images: List[StoredImage] = []
    storage_path: str


class UploadResponse(BaseModel):
    path: str
    message: str = "File uploaded successfully"
