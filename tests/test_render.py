from imgforge.models import BuildConfig
from imgforge.render import format_env, mode_code, render_env


def _config(**overrides) -> BuildConfig:
    data = {"hostname": "pi1", "board_type": "raspberrypi", "mode": "artifact"}
    data.update(overrides)
    return BuildConfig(**data)


def test_raspberry_pi_preset_example():
    config = BuildConfig.model_validate(
        {"hostname": "pi1", "board": "RaspberryPi", "mode": "Artifact", "presetImage": "RaspberryPiLite"}
    )
    env = render_env(config)
    assert env["BOARD"] == "1"
    assert env["HAVE_IMG"] == "n"
    assert env["IMG_CHOICE"] == "1"
    assert env["SKIP_WIZARD"] == "y"
    assert env["HOSTNAME"] == "pi1"
    assert "BASE_IMG" not in env


def test_preset_takes_priority_over_base_url():
    env = render_env(_config(preset_image="RadxaServer", base_image_url="http://x/base.img"))
    assert env["HAVE_IMG"] == "n"
    assert env["IMG_CHOICE"] == "3"
    assert "BASE_IMG" not in env


def test_base_url_used_without_preset():
    env = render_env(_config(base_image_url="http://x/base.img.xz", board_type="jetson"))
    assert env["HAVE_IMG"] == "y"
    assert env["BASE_IMG"] == "http://x/base.img.xz"
    assert env["BOARD"] == "2"


def test_missing_image_source_records_none_marker():
    env = render_env(_config())
    assert env["HAVE_IMG"] == "none"
    assert "IMG_CHOICE" not in env


def test_wifi_requires_both_ssid_and_password():
    assert render_env(_config(wifi_ssid="home"))["WIFI_CHOICE"] == "3"
    env = render_env(_config(wifi_ssid="home", wifi_password="secret"))
    assert env["WIFI_CHOICE"] == "1"
    assert env["WIFI_SSID"] == "home"
    assert env["WIFI_PASS"] == "secret"


def test_script_file_wins_over_inline_command():
    config = _config(custom_script_content="echo hi", inline_command="apt-get update")
    env = render_env(config, script_path="/tmp/imgforge-1-script.sh")
    assert env["HAVE_SCRIPT"] == "y"
    assert env["SCRIPT_TYPE"] == "1"
    assert env["CUSTOM_SCRIPT"] == "/tmp/imgforge-1-script.sh"
    assert "INLINE_COMMAND" not in env


def test_inline_command_and_no_script():
    env = render_env(_config(inline_command="apt-get update"))
    assert (env["HAVE_SCRIPT"], env["SCRIPT_TYPE"], env["INLINE_COMMAND"]) == ("y", "2", "apt-get update")
    assert render_env(_config())["HAVE_SCRIPT"] == "n"


def test_compose_only_referenced_with_a_path():
    config = _config(docker_compose_content="services: {}")
    assert render_env(config)["HAVE_COMPOSE"] == "n"
    env = render_env(config, compose_path="/tmp/imgforge-1-compose.yml")
    assert env["HAVE_COMPOSE"] == "y"
    assert env["COMPOSE_FILE"] == "/tmp/imgforge-1-compose.yml"


def test_flags_and_optional_values():
    env = render_env(
        _config(
            change_username=True,
            new_username="ops",
            set_root_password=True,
            root_password="toor",
            enable_ssh=True,
            expand_image=True,
            extra_size="+2G",
        )
    )
    assert env["CHANGE_USERNAME"] == "y"
    assert env["NEW_USERNAME"] == "ops"
    assert env["SET_ROOTPW"] == "y"
    assert env["ROOTPW"] == "toor"
    assert env["ENABLE_SSH"] == "y"
    assert env["EXPAND_IMG"] == "y"
    assert env["EXTRA_SIZE"] == "+2G"


def test_rendering_is_deterministic():
    config = _config(preset_image="RadxaDesktop", wifi_ssid="a", wifi_password="b")
    first = format_env(render_env(config))
    assert first == format_env(render_env(config.model_copy()))
    assert first.startswith("HOSTNAME=pi1\nCHANGE_USERNAME=n\n")
    assert first.endswith("SKIP_WIZARD=y\n")


def test_mode_codes():
    assert mode_code("flash") == "1"
    assert mode_code("artifact") == "2"
