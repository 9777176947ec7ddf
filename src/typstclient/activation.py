"""
Activation and deactivation.

:class:`Extension` owns the one :class:`~typstclient.session.ClientSession`
and hands it to the command and configuration components.  Commands and the
configuration listener are registered only after the session is RUNNING.
"""
from __future__ import annotations

import logging
from typing import Callable, Mapping, TYPE_CHECKING

from lsprotocol import types as lsp

from typstclient.commands import CommandOrchestrator
from typstclient.config import read_snapshot
from typstclient.config_sync import ConfigSyncBridge
from typstclient.host import CompositeDisposable
from typstclient.locator import ServerLocator
from typstclient.session import ClientSession

if TYPE_CHECKING:
    from typstclient.host import Host

logger = logging.getLogger(__name__)


class Extension:
    def __init__(self, host: 'Host', *,
                 locator: ServerLocator | None = None,
                 session_factory: Callable[..., ClientSession] = ClientSession,
                 env: Mapping[str, str] | None = None):
        self.host = host
        self.locator = locator or ServerLocator(host.extension_path)
        self.session = session_factory(
            workspace_root=host.workspace_root,
            settings_provider=lambda: read_snapshot(host).to_settings(),
            message_sink=self._show_server_message,
        )
        self.env = env
        self.commands = CommandOrchestrator(host, self.session)
        self.config_sync = ConfigSyncBridge(host, self.session)
        self._subscriptions = CompositeDisposable()

    async def activate(self) -> None:
        """Resolve and start the server, then register commands and listeners.

        Failures are shown to the user and re-raised.
        """
        try:
            snapshot = read_snapshot(self.host)
            path = self.locator.resolve(snapshot)
            await self.session.start(path, env=self.env, settings=snapshot.to_settings())
        except Exception as e:
            logger.error('Activation failed', exc_info=True)
            self.host.show_error_message(f'Failed to activate typst-lsp: {e}')
            raise

        self._subscriptions.add(*self.commands.register())
        self._subscriptions.add(self.config_sync.register())

    async def deactivate(self) -> bool:
        self._subscriptions.dispose()
        return await self.session.stop()

    def _show_server_message(self, kind: lsp.MessageType, message: str) -> None:
        if kind == lsp.MessageType.Error:
            self.host.show_error_message(message)
        elif kind in (lsp.MessageType.Warning, lsp.MessageType.Info):
            self.host.show_info_message(message)
        else:
            logger.info('typst-lsp: %s', message)
