"""
Forward editor configuration edits to the running server.

Each change re-reads the whole ``typst-lsp`` section and sends it as
``workspace/didChangeConfiguration``.  The connection is never restarted.
When no session is running the change is dropped: the server reads the
configuration again through ``workspace/configuration`` (or the next
``initialize``), so nothing is queued for replay.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from lsprotocol import types as lsp

from typstclient.config import read_snapshot

if TYPE_CHECKING:
    from typstclient.host import Disposable, Host
    from typstclient.session import ClientSession

logger = logging.getLogger(__name__)


class ConfigSyncBridge:
    def __init__(self, host: 'Host', session: 'ClientSession'):
        self.host = host
        self.session = session

    def register(self) -> 'Disposable':
        return self.host.on_did_change_configuration(self.on_did_change)

    def on_did_change(self, *_event) -> bool:
        """Send the current settings; return ``False`` if there was no session to send to."""
        if not self.session.is_running:
            logger.debug('Configuration changed while typst-lsp is %s; '
                         'it will be read on the next request', self.session.state.value)
            return False

        snapshot = read_snapshot(self.host)
        try:
            self.session.send_notification(
                lsp.WORKSPACE_DID_CHANGE_CONFIGURATION,
                lsp.DidChangeConfigurationParams(settings=snapshot.to_settings()),
            )
        except Exception as e:
            logger.error('Failed to send configuration to typst-lsp', exc_info=True)
            self.host.show_error_message(f'typst-lsp: failed to update configuration: {e}')
            return False
        return True
