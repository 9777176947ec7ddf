"""
Client configuration for typstclient.

Settings live under the ``typst-lsp`` section and are assembled from two
layers, highest priority first:

1. Editor settings read from the host (``Host.get_configuration``).
2. A ``.typst-lsp.toml`` project file in the workspace root.

A :class:`ConfigurationSnapshot` is read fresh every time it is needed and is
never cached across an edit.  The same camelCase mapping is sent to the
server as ``initializationOptions``, in ``workspace/didChangeConfiguration``
and in replies to ``workspace/configuration``.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, TYPE_CHECKING

if TYPE_CHECKING:
    from typstclient.host import Host

logger = logging.getLogger(__name__)

SECTION = 'typst-lsp'
PROJECT_CONFIG_FILE = '.typst-lsp.toml'

_KNOWN_KEYS = ('serverPath', 'exportPdf', 'logLevel')


class ExportPdfMode(str, enum.Enum):
    ON_SAVE = 'onSave'
    ON_TYPE = 'onType'
    NEVER = 'never'


def _export_mode_from_value(value: Any) -> ExportPdfMode:
    if value is None or value == '':
        return ExportPdfMode.ON_SAVE
    try:
        return ExportPdfMode(value)
    except ValueError:
        logger.warning('Unknown exportPdf mode %r; using %r', value, ExportPdfMode.ON_SAVE.value)
        return ExportPdfMode.ON_SAVE


@dataclass(frozen=True)
class ConfigurationSnapshot:
    server_path: str | None = None
    export_pdf: ExportPdfMode = ExportPdfMode.ON_SAVE
    log_level: str | None = None
    # Keys this client does not interpret; forwarded to the server untouched.
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any] | None) -> 'ConfigurationSnapshot':
        settings = dict(settings or {})
        server_path = settings.get('serverPath')
        if not isinstance(server_path, str) or not server_path.strip():
            server_path = None
        log_level = settings.get('logLevel') or None
        return cls(
            server_path=server_path,
            export_pdf=_export_mode_from_value(settings.get('exportPdf')),
            log_level=str(log_level) if log_level is not None else None,
            extra={k: v for k, v in settings.items() if k not in _KNOWN_KEYS},
        )

    def to_settings(self) -> dict[str, Any]:
        settings: dict[str, Any] = dict(self.extra)
        settings['serverPath'] = self.server_path
        settings['exportPdf'] = self.export_pdf.value
        if self.log_level is not None:
            settings['logLevel'] = self.log_level
        return settings


# ---------------------------------------------------------------------------
# Project config file
# ---------------------------------------------------------------------------

def read_project_config(workspace_root: str | None) -> dict[str, Any]:
    """Parse ``.typst-lsp.toml`` in *workspace_root*; empty dict if absent."""
    if not workspace_root:
        return {}
    try:
        import tomllib  # Python 3.11+
    except ImportError:
        import tomli as tomllib

    config_path = Path(workspace_root) / PROJECT_CONFIG_FILE
    if not config_path.is_file():
        return {}

    try:
        data = tomllib.loads(config_path.read_text(encoding='utf-8'))
    except (OSError, tomllib.TOMLDecodeError):
        logger.warning('Ignoring unreadable project config %s', config_path, exc_info=True)
        return {}
    # Accept both a bare table and one nested under [typst-lsp].
    section = data.get(SECTION)
    return dict(section) if isinstance(section, dict) else data


def read_snapshot(host: 'Host') -> ConfigurationSnapshot:
    """Read a fresh :class:`ConfigurationSnapshot` from *host* and apply its log level."""
    merged = read_project_config(getattr(host, 'workspace_root', None))
    merged.update(
        (k, v) for k, v in dict(host.get_configuration(SECTION) or {}).items() if v not in (None, '')
    )
    snapshot = ConfigurationSnapshot.from_settings(merged)
    apply_log_level(snapshot.log_level)
    return snapshot


def apply_log_level(raw: str | None) -> None:
    """Set the package logger level from a string like 'debug', 'warning', etc."""
    if not raw:
        return
    level = getattr(logging, raw.upper(), None)
    if isinstance(level, int):
        logging.getLogger('typstclient').setLevel(level)
