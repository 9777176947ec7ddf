"""
User-invokable commands.

Each command works on the document in the focused editor and silently does
nothing when there is none.  The export and clear-cache commands are thin
wrappers around ``workspace/executeCommand``; show-PDF combines a local stat
with an export:

* PDF present  → open it beside the source editor.
* PDF missing  → export once; open it only if the export request succeeded.
  A failed export is reported and the viewer is not opened, so a missing or
  stale file is never shown as if it were current.

Invocations are independent: nothing is locked across calls, and overlapping
requests for the same document are left for the server to order.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from urllib.parse import urlsplit, urlunsplit

if TYPE_CHECKING:
    from typstclient.host import ActiveDocument, Disposable, Host
    from typstclient.session import ClientSession

logger = logging.getLogger(__name__)

# Commands registered with the editor.
EXPORT_CURRENT_PDF = 'typst-lsp.exportCurrentPdf'
SHOW_PDF = 'typst-lsp.showPdf'
CLEAR_CACHE = 'typst-lsp.clearCache'

# Commands executed by the server.
DO_PDF_EXPORT = 'typst-lsp.doPdfExport'
DO_CLEAR_CACHE = 'typst-lsp.doClearCache'

PDF_EXTENSION = '.pdf'


def derived_artifact_uri(uri: str, extension: str = PDF_EXTENSION) -> str:
    """Replace the final extension of *uri*'s path with *extension*.

    ``file:///a/b/doc.typ`` → ``file:///a/b/doc.pdf``.  Only the last path
    segment is touched; a name without an extension gets *extension* appended.
    """
    parts = urlsplit(uri)
    head, sep, name = parts.path.rpartition('/')
    dot = name.rfind('.')
    if dot > 0:
        name = name[:dot]
    return urlunsplit(parts._replace(path=head + sep + name + extension))


class CommandOrchestrator:
    def __init__(self, host: 'Host', session: 'ClientSession'):
        self.host = host
        self.session = session

    def register(self) -> list['Disposable']:
        return [
            self.host.register_command(EXPORT_CURRENT_PDF, self.export_current_pdf),
            self.host.register_command(SHOW_PDF, self.show_pdf),
            self.host.register_command(CLEAR_CACHE, self.clear_cache),
        ]

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def export_current_pdf(self) -> bool | None:
        """Ask the server to export the active document; ``None`` if there is none."""
        document = self.host.active_document()
        if document is None:
            return None
        return await self._export(document)

    async def show_pdf(self) -> bool | None:
        """Open the active document's PDF beside the editor, exporting it first if missing."""
        document = self.host.active_document()
        if document is None:
            return None

        pdf_uri = derived_artifact_uri(document.uri)
        try:
            await self.host.stat(pdf_uri)
        except OSError:
            logger.debug('%s does not exist yet; exporting', pdf_uri)
            if not await self._export(document):
                return False

        try:
            await self.host.open_beside(pdf_uri)
        except Exception as e:
            logger.error('Failed to open %s', pdf_uri, exc_info=True)
            self.host.show_error_message(f'typst-lsp: failed to open {pdf_uri}: {e}')
            return False
        return True

    async def clear_cache(self) -> bool | None:
        """Ask the server to drop cached state for the active document."""
        document = self.host.active_document()
        if document is None:
            return None
        return await self._execute(DO_CLEAR_CACHE, document, 'clear the cache')

    # ------------------------------------------------------------------

    async def _export(self, document: 'ActiveDocument') -> bool:
        return await self._execute(DO_PDF_EXPORT, document, 'export PDF')

    async def _execute(self, command: str, document: 'ActiveDocument', action: str) -> bool:
        try:
            await self.session.execute_command(command, document.uri)
        except Exception as e:
            logger.error('%s failed for %s', command, document.uri, exc_info=True)
            self.host.show_error_message(f'typst-lsp: failed to {action} for {document.uri}: {e}')
            return False
        return True
