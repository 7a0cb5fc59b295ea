"""Tool configuration loading and validation."""

import os
from pathlib import Path

import tomllib
from pydantic import BaseModel, field_validator


DEFAULT_CONFIG_PATH = Path.home() / ".config" / "sshtool" / "config.toml"
DEFAULT_TARGETS = str(Path.home() / ".sshtool_targets")


class ToolConfig(BaseModel):
    """sshtool configuration model.

    Attributes:
        targets: Targets file, or inline comma-separated host list, used when
            -t is not given.
        ssh_command: Executable used to run remote commands.
        scp_command: Executable used to copy files and scripts.
        ssh_options: Values passed to ssh and scp as "-o <value>".
        identity_file: Identity file passed to ssh and scp with -i.
        safe_remote_dir: The only remote directory copies may write into.
        profile: Remote profile file sourced before the command, if present.
        substitute_target: Replace each target's own host name in its output
            with "$SSHTOOL_TARGET", so identical results group together.
        group_output: Print one block per distinct result instead of one
            block per target.
    """

    targets: str = DEFAULT_TARGETS
    ssh_command: str = "ssh"
    scp_command: str = "scp"
    ssh_options: list[str] = []
    identity_file: str | None = None
    safe_remote_dir: str = "/tmp/"
    profile: str = "~/.profile"
    substitute_target: bool = True
    group_output: bool = True

    @field_validator("targets", "ssh_command", "scp_command", "identity_file", mode="before")
    @classmethod
    def expand_env_vars(cls, v: str | None) -> str | None:
        """Expand environment variables and ~ in local string fields.

        Args:
            v: Raw string value that may contain env var references.

        Returns:
            str | None: String with env vars expanded.
        """
        if v is None:
            return v
        return os.path.expanduser(os.path.expandvars(v))

    @field_validator("safe_remote_dir")
    @classmethod
    def check_safe_remote_dir(cls, v: str) -> str:
        """Require an absolute directory path ending with a slash.

        Args:
            v: Configured remote directory.

        Returns:
            str: The validated directory.

        Raises:
            ValueError: If the path is relative, the root, or lacks the trailing slash.
        """
        if not v.startswith("/") or not v.endswith("/") or v == "/":
            raise ValueError("safe_remote_dir must be an absolute directory ending with '/'")
        return v


def load_config(path: Path | None = None) -> ToolConfig:
    """Load sshtool configuration from a TOML file.

    Reads the config from the given path (or the default
    ~/.config/sshtool/config.toml). If the file doesn't exist,
    returns a ToolConfig with default values.

    Args:
        path: Path to the config file. Defaults to ~/.config/sshtool/config.toml.

    Returns:
        ToolConfig: The loaded and validated configuration.

    Raises:
        pydantic.ValidationError: If the config file contains invalid values.
        tomllib.TOMLDecodeError: If the file is not valid TOML.
    """
    config_path = path or DEFAULT_CONFIG_PATH

    if not config_path.exists():
        return ToolConfig()

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    return ToolConfig(**data)
