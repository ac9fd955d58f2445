"""Render a BuildConfig into the KEY=value environment read by imgforge.sh."""
from __future__ import annotations

from typing import Dict, Optional

from .models import BoardType, BuildConfig, BuildMode, PresetImage

BOARD_CODES = {
    BoardType.raspberrypi: "1",
    BoardType.jetson: "2",
}

PRESET_CODES = {
    PresetImage.raspberrypilite: "1",
    PresetImage.radxadesktop: "2",
    PresetImage.radxaserver: "3",
}

MODE_CODES = {
    BuildMode.flash: "1",
    BuildMode.artifact: "2",
}

WIFI_CONFIGURE = "1"
WIFI_SKIP = "3"
SCRIPT_FILE = "1"
SCRIPT_INLINE = "2"
NONE = "none"


def _yn(flag: bool) -> str:
    return "y" if flag else "n"


def render_env(
    config: BuildConfig,
    compose_path: Optional[str] = None,
    script_path: Optional[str] = None,
) -> Dict[str, str]:
    """Return the ordered environment for ``config``.

    ``compose_path`` / ``script_path`` are where the orchestrator put the
    compose definition and script body; they are only referenced when the
    config carries that content. Same inputs always give the same mapping.
    """
    env: Dict[str, str] = {"HOSTNAME": config.hostname}

    env["CHANGE_USERNAME"] = _yn(config.change_username)
    if config.new_username:
        env["NEW_USERNAME"] = config.new_username
    env["SET_ROOTPW"] = _yn(config.set_root_password)
    if config.root_password:
        env["ROOTPW"] = config.root_password
    env["ENABLE_SSH"] = _yn(config.enable_ssh)

    if config.wifi_ssid and config.wifi_password:
        env["WIFI_CHOICE"] = WIFI_CONFIGURE
        env["WIFI_SSID"] = config.wifi_ssid
        env["WIFI_PASS"] = config.wifi_password
    else:
        env["WIFI_CHOICE"] = WIFI_SKIP

    env["BOARD"] = BOARD_CODES[config.board_type]

    # preset wins over a base image URL
    if config.preset_image is not None:
        env["HAVE_IMG"] = "n"
        env["IMG_CHOICE"] = PRESET_CODES[config.preset_image]
    elif config.base_image_url:
        env["HAVE_IMG"] = "y"
        env["BASE_IMG"] = config.base_image_url
    else:
        env["HAVE_IMG"] = NONE

    env["EXPAND_IMG"] = _yn(config.expand_image)
    if config.extra_size:
        env["EXTRA_SIZE"] = config.extra_size

    if config.docker_compose_content is not None and compose_path:
        env["HAVE_COMPOSE"] = "y"
        env["COMPOSE_FILE"] = str(compose_path)
    else:
        env["HAVE_COMPOSE"] = "n"

    # script file wins over an inline command
    if config.custom_script_content is not None and script_path:
        env["HAVE_SCRIPT"] = "y"
        env["SCRIPT_TYPE"] = SCRIPT_FILE
        env["CUSTOM_SCRIPT"] = str(script_path)
    elif config.inline_command:
        env["HAVE_SCRIPT"] = "y"
        env["SCRIPT_TYPE"] = SCRIPT_INLINE
        env["INLINE_COMMAND"] = config.inline_command
    else:
        env["HAVE_SCRIPT"] = "n"

    env["SKIP_WIZARD"] = "y"
    return env


def mode_code(mode: BuildMode) -> str:
    return MODE_CODES[BuildMode(mode)]


def format_env(env: Dict[str, str]) -> str:
    return "".join(f"{key}={value}\n" for key, value in env.items())
