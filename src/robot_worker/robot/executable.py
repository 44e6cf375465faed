"""Locate the robot executable once at startup."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path, PureWindowsPath

from robot_worker.errors import StartupConfigError

logger = logging.getLogger(__name__)

ROBOT_EXECUTABLE_RELATIVE_PATH = PureWindowsPath("UiPath", "Studio", "UiRobot.exe")

# Searched in order; unset variables are skipped.
INSTALLATION_ROOT_VARIABLES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("LOCALAPPDATA", ("Programs",)),
    ("ProgramFiles", ()),
    ("ProgramFiles(x86)", ()),
)


def installation_folders(environ: Mapping[str, str] | None = None) -> list[Path]:
    env = os.environ if environ is None else environ
    folders: list[Path] = []
    for variable, suffix in INSTALLATION_ROOT_VARIABLES:
        root = env.get(variable, "").strip()
        if root:
            folders.append(Path(root, *suffix))
    return folders


def resolve_robot_executable(
    override: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> Path:
    """Return the absolute robot executable path or raise ``StartupConfigError``."""

    if override is not None:
        if not override.is_file():
            raise StartupConfigError(f"Configured robot executable does not exist: {override}")
        resolved = override.absolute()
        logger.info("Using configured robot executable %s", resolved)
        return resolved

    folders = installation_folders(environ)
    for folder in folders:
        candidate = folder.joinpath(*ROBOT_EXECUTABLE_RELATIVE_PATH.parts)
        if candidate.is_file():
            resolved = candidate.absolute()
            logger.info("Found robot executable %s", resolved)
            return resolved

    searched = ", ".join(str(folder) for folder in folders) or "<no installation folders set>"
    raise StartupConfigError(
        f"Could not locate {ROBOT_EXECUTABLE_RELATIVE_PATH.name} in {searched}",
    )
