"""Small host-facing helpers: block devices, Wi-Fi profiles, stored images, uploads."""
import asyncio
import logging
import os
from pathlib import Path
from typing import List, Optional

from . import runner, storage
from .errors import BadRequestError, InternalError
from .models import Device, ImageList, StoredImage

logger = logging.getLogger(__name__)

LSBLK = os.environ.get("IMGFORGE_LSBLK", "lsblk")
NM_CONNECTIONS_DIR = Path(
    os.environ.get("IMGFORGE_NM_CONNECTIONS_DIR", "/etc/NetworkManager/system-connections")
)
IMAGE_SUFFIXES = (".img", ".img.xz")


def parse_lsblk(output: str) -> List[Device]:
    """Parse ``lsblk -ndo NAME,SIZE,TYPE,HOTPLUG`` keeping hot-pluggable disks."""
    devices = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) >= 4 and parts[2] == "disk" and parts[3] == "1":
            devices.append(Device(name=parts[0], path=f"/dev/{parts[0]}", size=parts[1], removable=True))
    return devices


async def list_devices() -> List[Device]:
    try:
        proc = await runner.start(LSBLK, ["-ndo", "NAME,SIZE,TYPE,HOTPLUG"])
    except InternalError as exc:
        raise InternalError(f"Failed to list devices: {exc}") from exc
    lines, _, outcome = await asyncio.gather(
        _collect(proc.stdout_lines()),
        _collect(proc.stderr_lines()),
        proc.wait(),
    )
    if not outcome.success:
        logger.warning("%s exited with %s", LSBLK, outcome.description)
    return parse_lsblk("\n".join(lines))


async def _collect(lines) -> List[str]:
    return [line async for line in lines]


def list_wifi_networks(connections_dir: Optional[Path] = None) -> List[str]:
    connections_dir = Path(connections_dir or NM_CONNECTIONS_DIR)
    ssids = []
    if not connections_dir.is_dir():
        return ssids
    for profile in sorted(connections_dir.rglob("*")):
        if not profile.is_file():
            continue
        try:
            text = profile.read_text(encoding="utf-8", errors="replace")
        except PermissionError:
            logger.debug("Skipping unreadable profile %s", profile)
            continue
        for line in text.splitlines():
            if line.startswith("ssid="):
                ssids.append(line.split("=", 1)[1].strip())
    return ssids


def list_stored_images() -> ImageList:
    images_dir = storage.images_dir()
    images = []
    for entry in images_dir.iterdir():
        if not entry.is_file() or not entry.name.endswith(IMAGE_SUFFIXES):
            continue
        st = entry.stat()
        images.append(
            StoredImage(
                name=entry.name,
                path=str(entry),
                size_mb=st.st_size // 1024 // 1024,
                modified=int(st.st_mtime),
            )
        )
    images.sort(key=lambda img: img.modified or 0, reverse=True)
    return ImageList(images=images, storage_path=str(images_dir))


def save_upload(filename: str, data: bytes) -> Path:
    name = Path(filename or "").name
    if not name or name in {".", ".."}:
        raise BadRequestError("No file provided")
    dest = storage.upload_dir() / name
    try:
        dest.write_bytes(data)
    except OSError as exc:
        raise InternalError(f"Failed to write file: {exc}") from exc
    return dest
