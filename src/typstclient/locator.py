"""
Server executable resolution.

Candidates are tried in priority order and the first one that validates wins:

1. ``typst-lsp.serverPath`` from the configuration.  When set it is the *only*
   candidate: an explicit user choice is never silently bypassed.
2. The executable bundled next to the client (``extension_path``).
3. The bare executable name, found through the OS search path.

A candidate is validated by running it with no arguments and stdin closed.
The server exits with status 0 when its input stream ends immediately, so any
spawn error, non-zero status or timeout marks the candidate invalid.
"""
from __future__ import annotations

import enum
import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from typing import Callable, Sequence

from typstclient.config import ConfigurationSnapshot

logger = logging.getLogger(__name__)

SERVER_NAME = 'typst-lsp'
DEFAULT_PROBE_TIMEOUT = 10.0


def executable_name(name: str = SERVER_NAME, platform: str | None = None) -> str:
    """Return *name* with the executable suffix for *platform* (``.exe`` on Windows)."""
    platform = sys.platform if platform is None else platform
    return name + ('.exe' if platform == 'win32' else '')


class SourceKind(enum.Enum):
    USER_CONFIGURED = 'user-configured'
    BUNDLED = 'bundled'
    ON_SEARCH_PATH = 'on-search-path'


@dataclass(frozen=True)
class ServerCandidate:
    source_kind: SourceKind
    path: str


class ProbeOutcome(enum.Enum):
    OK = 'ok'
    SPAWN_ERROR = 'spawn-error'
    NONZERO_EXIT = 'nonzero-exit'
    TIMEOUT = 'timeout'


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    outcome: ProbeOutcome
    message: str | None = None
    returncode: int | None = None


# ---------------------------------------------------------------------------
# Probe
# ---------------------------------------------------------------------------

def validate_server(
    path: str,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> ValidationResult:
    """Run *path* with no arguments and classify the result.

    Blocks for at most *timeout* seconds.
    """
    try:
        result = runner(
            [path],
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return ValidationResult(
            valid=False,
            outcome=ProbeOutcome.TIMEOUT,
            message=f"Failed to launch '{path}':\n\ttimed out after {timeout:g}s",
        )
    except (OSError, ValueError) as e:
        return ValidationResult(
            valid=False,
            outcome=ProbeOutcome.SPAWN_ERROR,
            message=f"Failed to launch '{path}':\n\terror: {e}",
        )

    if result.returncode == 0:
        return ValidationResult(valid=True, outcome=ProbeOutcome.OK, returncode=0)

    lines = [f'return status: {result.returncode}']
    stderr = result.stderr.decode('utf-8', errors='replace').strip() if result.stderr else ''
    if stderr:
        lines.append(f'stderr: {stderr.splitlines()[-1]}')
    return ValidationResult(
        valid=False,
        outcome=ProbeOutcome.NONZERO_EXIT,
        message=f"Failed to launch '{path}':\n\t" + '\n\t'.join(lines),
        returncode=result.returncode,
    )


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

class ResolutionError(RuntimeError):
    """No candidate produced a working server executable."""

    def __init__(self, message: str,
                 attempts: Sequence[tuple[ServerCandidate, ValidationResult]] = ()):
        super().__init__(message)
        self.attempts = list(attempts)


_SOURCE_LABELS = {
    SourceKind.BUNDLED: 'Bundled',
    SourceKind.ON_SEARCH_PATH: 'In PATH',
}


class ServerLocator:
    """Resolves the path of the server executable for a configuration."""

    def __init__(self, extension_path: str, *,
                 binary_name: str | None = None,
                 probe: Callable[[str], ValidationResult] | None = None,
                 probe_timeout: float = DEFAULT_PROBE_TIMEOUT):
        self.extension_path = extension_path
        self.binary_name = binary_name or executable_name()
        self._probe = probe or (lambda path: validate_server(path, timeout=probe_timeout))

    @property
    def bundled_path(self) -> str:
        return os.path.join(os.path.abspath(self.extension_path), self.binary_name)

    def candidates(self, config: ConfigurationSnapshot) -> list[ServerCandidate]:
        if config.server_path:
            return [ServerCandidate(SourceKind.USER_CONFIGURED, config.server_path)]
        return [
            ServerCandidate(SourceKind.BUNDLED, self.bundled_path),
            ServerCandidate(SourceKind.ON_SEARCH_PATH, self.binary_name),
        ]

    def resolve(self, config: ConfigurationSnapshot) -> str:
        """Return the first valid candidate path or raise :class:`ResolutionError`."""
        attempts: list[tuple[ServerCandidate, ValidationResult]] = []
        for candidate in self.candidates(config):
            result = self._probe(candidate.path)
            attempts.append((candidate, result))
            if result.valid:
                logger.info('Using %s server at %s', candidate.source_kind.value, candidate.path)
                return candidate.path
            logger.debug('Rejected %s candidate %s: %s',
                         candidate.source_kind.value, candidate.path, result.message)
            if candidate.source_kind is SourceKind.USER_CONFIGURED:
                raise ResolutionError(
                    f'`{SERVER_NAME}.serverPath` ({candidate.path}) does not point to a '
                    f'valid {SERVER_NAME} binary:\n{result.message}',
                    attempts,
                )

        details = '\n'.join(
            f'{_SOURCE_LABELS[c.source_kind]}: {r.message}' for c, r in attempts
        )
        raise ResolutionError(f'Could not find a valid {SERVER_NAME} binary.\n{details}', attempts)
