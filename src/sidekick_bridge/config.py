"""Bridge configuration.

Values come from three layers, later ones winning:
1. Dataclass defaults
2. Environment variables (``BridgeConfig.from_env``)
3. A YAML file (``BridgeConfig.from_yaml``), used by the CLI ``--config`` flag
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from . import __version__


class SandboxMode(str, Enum):
    """Sandbox levels understood by the peer."""

    READ_ONLY = "read-only"
    WORKSPACE_WRITE = "workspace-write"
    DANGER_FULL_ACCESS = "danger-full-access"


DEFAULT_MODEL = "gpt-5.2-codex"
DEFAULT_APPROVAL_POLICY = "on-request"
DEFAULT_BINARY = "codex"
PEER_SUBCOMMAND = "app-server"


def normalize_sandbox(value: str | SandboxMode | None) -> SandboxMode:
    """Map a loose sandbox value to a SandboxMode, defaulting to workspace-write."""
    if isinstance(value, SandboxMode):
        return value
    try:
        return SandboxMode(value)
    except ValueError:
        return SandboxMode.WORKSPACE_WRITE


@dataclass
class BridgeConfig:
    """Configuration for one AgentBridge instance."""

    # Peer invocation
    command: list[str] = field(default_factory=lambda: [DEFAULT_BINARY, PEER_SUBCOMMAND])
    working_directory: str | None = None
    env: dict[str, str] | None = None
    shutdown_timeout: float = 5.0

    # Thread defaults sent on thread/start
    model: str = DEFAULT_MODEL
    sandbox: SandboxMode = SandboxMode.WORKSPACE_WRITE
    approval_policy: str = DEFAULT_APPROVAL_POLICY

    # Traffic log
    log_dir: str | None = None
    traffic_log: bool = True

    # Sent in the initialize handshake
    client_name: str = "sidekick"
    client_title: str = "Sidekick"
    client_version: str = __version__

    def __post_init__(self) -> None:
        self.sandbox = normalize_sandbox(self.sandbox)

    @property
    def client_info(self) -> dict[str, str]:
        return {
            "name": self.client_name,
            "title": self.client_title,
            "version": self.client_version,
        }

    def resolved_log_dir(self) -> Path:
        """Directory the traffic log is written to."""
        return Path(self.log_dir) if self.log_dir else Path.cwd()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BridgeConfig:
        """Build a config from CODEX_* / SIDEKICK_* environment variables."""
        env = os.environ if environ is None else environ
        config = cls()

        binary = env.get("CODEX_BIN")
        if binary:
            config.command = [binary, PEER_SUBCOMMAND]
        if env.get("CODEX_MODEL"):
            config.model = env["CODEX_MODEL"]
        config.sandbox = normalize_sandbox(env.get("CODEX_SANDBOX"))
        if env.get("CODEX_APPROVAL_POLICY"):
            config.approval_policy = env["CODEX_APPROVAL_POLICY"]
        config.log_dir = env.get("SIDEKICK_LOG_DIR") or env.get("CODEX_LOG_DIR") or env.get("INIT_CWD")
        return config

    @classmethod
    def from_yaml(cls, path: str | Path, base: BridgeConfig | None = None) -> BridgeConfig:
        """Overlay keys from a YAML mapping onto ``base`` (or the defaults).

        Raises:
            ValueError: If the file is not a mapping or names an unknown key
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"{path}: unknown config keys: {', '.join(unknown)}")

        overrides: dict[str, Any] = dict(data)
        if "command" in overrides and isinstance(overrides["command"], str):
            overrides["command"] = [overrides["command"], PEER_SUBCOMMAND]
        if "sandbox" in overrides:
            overrides["sandbox"] = normalize_sandbox(overrides["sandbox"])

        return replace(base or cls(), **overrides)

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict view, used by ``sidekick-bridge config``."""
        result = {f.name: getattr(self, f.name) for f in fields(self)}
        result["sandbox"] = self.sandbox.value
        result["log_dir"] = str(self.resolved_log_dir())
        return result
