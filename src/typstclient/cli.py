"""
typst-lsp-client – run the client commands without an editor.

Usage
-----
    typst-lsp-client locate                 # print the server that would be used
    typst-lsp-client export doc.typ         # export doc.pdf through the server
    typst-lsp-client show doc.typ           # export if needed, then open doc.pdf
    typst-lsp-client clear-cache doc.typ    # drop the server's cache for doc.typ

Settings are read from ``.typst-lsp.toml`` in the workspace directory;
``--server-path`` overrides ``serverPath``.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import webbrowser
from pathlib import Path
from typing import Any, Callable, Mapping
from urllib.parse import urlsplit
from urllib.request import url2pathname

from typstclient.activation import Extension
from typstclient.commands import CLEAR_CACHE, EXPORT_CURRENT_PDF, SHOW_PDF
from typstclient.config import read_snapshot
from typstclient.host import ActiveDocument, CommandHandler, Disposable
from typstclient.locator import ResolutionError, ServerLocator
from typstclient.session import SessionError

logger = logging.getLogger(__name__)

_COMMANDS = {
    'export': EXPORT_CURRENT_PDF,
    'show': SHOW_PDF,
    'clear-cache': CLEAR_CACHE,
}


def uri_to_path(uri: str) -> Path:
    return Path(url2pathname(urlsplit(uri).path))


class HeadlessHost:
    """A :class:`~typstclient.host.Host` backed by the filesystem and stderr."""

    def __init__(self, *, workspace_root: str | None = None,
                 extension_path: str | None = None,
                 settings: Mapping[str, Any] | None = None,
                 document: str | None = None):
        self.workspace_root = workspace_root
        self.extension_path = extension_path or os.path.dirname(os.path.abspath(__file__))
        self.settings = dict(settings or {})
        self.document = document
        self.commands: dict[str, CommandHandler] = {}
        self._config_listeners: list[Callable[[], Any]] = []

    def get_configuration(self, section: str) -> Mapping[str, Any]:
        return dict(self.settings)

    def update_configuration(self, **changes: Any) -> None:
        self.settings.update(changes)
        for listener in list(self._config_listeners):
            listener()

    def on_did_change_configuration(self, callback: Callable[[], Any]) -> Disposable:
        self._config_listeners.append(callback)
        return Disposable(lambda: self._config_listeners.remove(callback))

    def register_command(self, name: str, handler: CommandHandler) -> Disposable:
        if name in self.commands:
            raise ValueError(f'command {name!r} is already registered')
        self.commands[name] = handler
        return Disposable(lambda: self.commands.pop(name, None))

    def active_document(self) -> ActiveDocument | None:
        if self.document is None:
            return None
        return ActiveDocument(uri=Path(self.document).resolve().as_uri())

    async def stat(self, uri: str) -> os.stat_result:
        return uri_to_path(uri).stat()

    async def open_beside(self, uri: str) -> None:
        if not webbrowser.open(uri):
            print(uri_to_path(uri))

    def show_error_message(self, text: str) -> None:
        print(f'error: {text}', file=sys.stderr)

    def show_info_message(self, text: str) -> None:
        print(text, file=sys.stderr)


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog='typst-lsp-client',
        description='Drive the typst-lsp language server from the command line.',
    )
    p.add_argument(
        '--server-path',
        metavar='PATH',
        default=None,
        help='Use this server executable instead of the bundled one or the one on PATH',
    )
    p.add_argument(
        '--workspace',
        metavar='DIR',
        default=None,
        help='Workspace root (default: current directory)',
    )
    p.add_argument(
        '--log-level',
        metavar='LEVEL',
        default='WARNING',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Logging level written to stderr (default: WARNING)',
    )
    p.add_argument(
        '--version',
        action='store_true',
        default=False,
        help='Print the typst-lsp-client version and exit',
    )
    p.add_argument('command', nargs='?', choices=['locate', *_COMMANDS])
    p.add_argument('file', nargs='?', help='The .typ document to act on')
    return p


async def run_command(host: HeadlessHost, command: str) -> bool:
    """Activate against *host*, run *command* on its document, then deactivate."""
    document = host.active_document()
    text = None
    if document is not None:
        text = uri_to_path(document.uri).read_text(encoding='utf-8')
    extension = Extension(host)
    await extension.activate()
    try:
        if text is not None:
            extension.session.did_open(document.uri, text)
        result = await host.commands[_COMMANDS[command]]()
    finally:
        await extension.deactivate()
    return bool(result)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``typst-lsp-client`` command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(levelname)s %(name)s: %(message)s',
        stream=sys.stderr,
    )

    from typstclient import __version__

    if args.version:
        print(f'typst-lsp-client {__version__}')
        return 0
    if args.command is None:
        parser.error('a command is required')
    if args.command != 'locate' and not args.file:
        parser.error(f'{args.command} needs a FILE')
    if args.file and not Path(args.file).is_file():
        parser.error(f'{args.file}: no such file')

    settings = {'serverPath': args.server_path} if args.server_path else {}
    host = HeadlessHost(
        workspace_root=args.workspace or os.getcwd(),
        settings=settings,
        document=args.file,
    )

    if args.command == 'locate':
        try:
            print(ServerLocator(host.extension_path).resolve(read_snapshot(host)))
        except ResolutionError as e:
            host.show_error_message(str(e))
            return 1
        return 0

    try:
        ok = asyncio.run(run_command(host, args.command))
    except (ResolutionError, SessionError):
        # Already reported through the host.
        logger.debug('typst-lsp-client %s failed', args.command, exc_info=True)
        return 1
    except OSError as e:
        host.show_error_message(str(e))
        return 1
    except UnicodeDecodeError as e:
        host.show_error_message(f'{args.file} is not valid UTF-8: {e}')
        return 1
    return 0 if ok else 1


if __name__ == '__main__':
    sys.exit(main())
