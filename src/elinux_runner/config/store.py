"""Target config store - loads remote target definitions from a JSON file."""

from __future__ import annotations

import json
import os
from pathlib import Path

import structlog
from pydantic import ValidationError

from elinux_runner.config.models import TargetConfig, TargetsFile
from elinux_runner.errors import invalid_config_error, target_not_found_error

logger = structlog.get_logger()

STATE_DIR = Path.home() / ".elinux-runner"
DEFAULT_CONFIG_PATH = STATE_DIR / "targets.json"
CONFIG_ENV_VAR = "ELINUX_RUNNER_CONFIG"


def resolve_config_path(path: str | Path | None = None) -> Path:
    """Explicit path first, then $ELINUX_RUNNER_CONFIG, then the default location."""
    if path is not None:
        return Path(path).expanduser()
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


class TargetConfigStore:
    """Reads the targets file once and serves configs by id."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = resolve_config_path(path)
        self._targets: dict[str, TargetConfig] | None = None

    def load(self) -> list[TargetConfig]:
        """Parse the targets file. A missing file means no remote targets."""
        if self._targets is not None:
            return list(self._targets.values())

        if not self.path.exists():
            logger.debug("target_config_missing", path=str(self.path))
            self._targets = {}
            return []

        try:
            raw = json.loads(self.path.read_text())
            parsed = TargetsFile.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            raise invalid_config_error(str(self.path), str(exc)) from exc

        targets: dict[str, TargetConfig] = {}
        for config in parsed.targets:
            if config.id in targets:
                raise invalid_config_error(str(self.path), f"duplicate target id {config.id!r}")
            targets[config.id] = config
        self._targets = targets
        logger.info("target_config_loaded", path=str(self.path), target_count=len(targets))
        return list(targets.values())

    def enabled(self) -> list[TargetConfig]:
        return [config for config in self.load() if config.enabled]

    def get(self, target_id: str) -> TargetConfig:
        """Return the config for ``target_id``.

        Raises:
            RunnerError: If no target has that id
        """
        self.load()
        assert self._targets is not None
        config = self._targets.get(target_id)
        if config is None:
            raise target_not_found_error(target_id)
        return config
