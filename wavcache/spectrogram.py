"""Spectrogram rendering through the ``sox`` command line tool."""

from __future__ import annotations

import contextlib
import logging
import os
import subprocess
from pathlib import Path
from typing import Protocol, Sequence

from .errors import LaunchError, TransformError

DEFAULT_COMMAND = "sox"
DEFAULT_OPTIONS: tuple[str, ...] = ("-Y", "130")
DEFAULT_TIMEOUT_SECONDS = 120.0


class SpectrogramRenderer(Protocol):
    def render(self, source: Path, destination: Path) -> None:  # pragma: no cover - interface only
        ...


def _remove_partial(path: Path) -> None:
    with contextlib.suppress(OSError):
        path.unlink(missing_ok=True)


class SoxSpectrogramRenderer:
    """Render a PNG spectrogram of ``source`` into ``destination`` using sox."""

    def __init__(
        self,
        *,
        command: str = DEFAULT_COMMAND,
        options: Sequence[str] = DEFAULT_OPTIONS,
        timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self._command = command.strip() or DEFAULT_COMMAND
        self._options = tuple(str(option) for option in options)
        self._timeout = timeout if timeout and timeout > 0 else None
        self._logger = logger or logging.getLogger("wavcache.spectrogram")

    def build_command(self, source: os.PathLike[str] | str, destination: os.PathLike[str] | str) -> list[str]:
        return [
            self._command,
            str(source),
            "-n",
            "spectrogram",
            *self._options,
            "-o",
            str(destination),
        ]

    def render(self, source: Path, destination: Path) -> None:
        cmd = self.build_command(source, destination)
        self._logger.debug("running %s", " ".join(cmd))
        try:
            subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except OSError as exc:
            _remove_partial(destination)
            raise LaunchError(f"unable to start {self._command}: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            _remove_partial(destination)
            raise TransformError(
                f"{self._command} timed out after {exc.timeout:g}s rendering {source}"
            ) from exc
        except subprocess.CalledProcessError as exc:
            _remove_partial(destination)
            stderr = (exc.stderr or "").strip()
            message = f"{self._command} exited with status {exc.returncode} rendering {source}"
            if stderr:
                message = f"{message}: {stderr}"
            raise TransformError(message, returncode=exc.returncode, stderr=stderr) from exc

        try:
            produced = destination.stat().st_size > 0
        except OSError:
            produced = False
        if not produced:
            _remove_partial(destination)
            raise TransformError(f"{self._command} completed without producing {destination}")
