"""
Lifecycle of the single connection to the typst-lsp server process.

State machine::

    STOPPED --start()--> STARTING --(initialized)--> RUNNING
    RUNNING --stop()--> STOPPING --(process gone)--> STOPPED

``start()`` is only legal from STOPPED.  ``stop()`` is idempotent.  Requests
and notifications are only accepted while RUNNING; otherwise they raise
:class:`NoActiveSession` instead of failing inside the transport.

Message framing, request correlation and the child-process transport are
provided by :class:`pygls.lsp.client.LanguageClient`.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import os
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from lsprotocol import types as lsp
from pygls.lsp.client import LanguageClient

from typstclient import __version__
from typstclient.config import SECTION

logger = logging.getLogger(__name__)

CLIENT_NAME = 'typst-lsp-client'
DEFAULT_STOP_TIMEOUT = 5.0

# Always exported to the server process.
BASE_ENV_OVERRIDES = {'RUST_BACKTRACE': '1'}

CLIENT_CAPABILITIES = lsp.ClientCapabilities(
    workspace=lsp.WorkspaceClientCapabilities(
        configuration=True,
        did_change_configuration=lsp.DidChangeConfigurationClientCapabilities(
            dynamic_registration=False,
        ),
        execute_command=lsp.ExecuteCommandClientCapabilities(dynamic_registration=False),
    ),
    text_document=lsp.TextDocumentClientCapabilities(
        synchronization=lsp.TextDocumentSyncClientCapabilities(did_save=True),
    ),
)


class SessionState(enum.Enum):
    STOPPED = 'stopped'
    STARTING = 'starting'
    RUNNING = 'running'
    STOPPING = 'stopping'


class SessionError(RuntimeError):
    pass


class NoActiveSession(SessionError):
    """Raised when the channel is used while the session is not RUNNING."""

    def __init__(self, state: SessionState):
        super().__init__(f'no active typst-lsp session (session is {state.value})')
        self.state = state


class SessionStateError(SessionError):
    pass


class SessionStartError(SessionError):
    pass


def server_env(overrides: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return the parent environment plus the server-specific overrides."""
    env = dict(os.environ)
    env.update(BASE_ENV_OVERRIDES)
    if overrides:
        env.update(overrides)
    return env


# ---------------------------------------------------------------------------
# pygls client
# ---------------------------------------------------------------------------

class TypstLanguageClient(LanguageClient):
    """LanguageClient that reports unexpected server exits back to its session."""

    def __init__(self, on_exit: Callable[[int | None], None] | None = None):
        super().__init__(CLIENT_NAME, __version__)
        self._on_exit = on_exit

    async def server_exit(self, server):
        logger.debug('typst-lsp process %s exited with status %s',
                     getattr(server, 'pid', '?'), server.returncode)
        if self._on_exit is not None:
            self._on_exit(server.returncode)


def build_client(session: 'ClientSession') -> TypstLanguageClient:
    """Create the pygls client and wire the server-to-client handlers."""
    client = TypstLanguageClient(on_exit=session._handle_server_exit)

    @client.feature(lsp.WORKSPACE_CONFIGURATION)
    def workspace_configuration(params: lsp.ConfigurationParams):
        return session.configuration_for(params.items)

    @client.feature(lsp.WINDOW_LOG_MESSAGE)
    def log_message(params: lsp.LogMessageParams):
        logger.log(_LOG_LEVELS.get(params.type, logging.DEBUG), 'typst-lsp: %s', params.message)

    @client.feature(lsp.WINDOW_SHOW_MESSAGE)
    def show_message(params: lsp.ShowMessageParams):
        session._forward_message(params.type, params.message)

    return client


_LOG_LEVELS = {
    lsp.MessageType.Error: logging.ERROR,
    lsp.MessageType.Warning: logging.WARNING,
    lsp.MessageType.Info: logging.INFO,
    lsp.MessageType.Log: logging.DEBUG,
}


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class ClientSession:
    """The one live connection to the server process.

    Constructed by activation and handed to every component that needs the
    channel.  *settings_provider* is called each time the server asks for
    ``workspace/configuration``; *message_sink* receives ``window/showMessage``
    notifications and unexpected-exit reports.
    """

    def __init__(self, *,
                 workspace_root: str | None = None,
                 settings_provider: Callable[[], Mapping[str, Any]] | None = None,
                 message_sink: Callable[[lsp.MessageType, str], None] | None = None,
                 client_factory: Callable[['ClientSession'], Any] = build_client):
        self.workspace_root = workspace_root
        self._settings_provider = settings_provider
        self._message_sink = message_sink
        self._client_factory = client_factory
        self._client = None
        self._state = SessionState.STOPPED
        # Collects the transport of a server that exited on its own.
        self._exit_cleanup: asyncio.Task | None = None
        self.server_capabilities: lsp.ServerCapabilities | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SessionState.RUNNING

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, path: str, env: Mapping[str, str] | None = None,
                    settings: Mapping[str, Any] | None = None, *,
                    args: Sequence[str] = ()) -> None:
        """Launch *path* (with *args*) and complete the ``initialize`` handshake."""
        if self._state is not SessionState.STOPPED:
            raise SessionStateError(f'cannot start typst-lsp: session is {self._state.value}')

        self._state = SessionState.STARTING
        client = self._client_factory(self)
        self._client = client
        logger.info('Starting typst-lsp: %s', path)
        try:
            await client.start_io(path, *args, env=server_env(env))
            result = await client.initialize_async(lsp.InitializeParams(
                capabilities=CLIENT_CAPABILITIES,
                process_id=os.getpid(),
                root_uri=self._root_uri(),
                client_info=lsp.ClientInfo(name=CLIENT_NAME, version=__version__),
                initialization_options=dict(settings) if settings is not None else None,
            ))
            client.initialized(lsp.InitializedParams())
        except Exception as e:
            logger.error('typst-lsp failed to start', exc_info=True)
            self._client = None
            self._state = SessionState.STOPPED
            await _stop_transport(client)
            raise SessionStartError(f'failed to start {path}: {e}') from e

        self.server_capabilities = getattr(result, 'capabilities', None)
        self._state = SessionState.RUNNING
        logger.info('typst-lsp is running')

    async def stop(self, timeout: float = DEFAULT_STOP_TIMEOUT) -> bool:
        """Shut the server down.

        Returns ``True`` when the shutdown handshake completed within *timeout*,
        ``False`` otherwise.  A process that does not exit is terminated, then
        killed.  The session is STOPPED afterwards in both cases.  Calling this
        on a stopped session only waits for the cleanup of an exited server.
        """
        if self._state in (SessionState.STOPPED, SessionState.STOPPING) or self._client is None:
            cleanup, self._exit_cleanup = self._exit_cleanup, None
            if cleanup is not None and not cleanup.done():
                await cleanup
            return True

        client = self._client
        self._state = SessionState.STOPPING
        clean = True
        try:
            await asyncio.wait_for(_shutdown_handshake(client), timeout)
        except asyncio.TimeoutError:
            logger.warning('typst-lsp did not shut down within %gs', timeout)
            clean = False
        except Exception:
            logger.warning('typst-lsp shutdown handshake failed', exc_info=True)
            clean = False
        finally:
            self._client = None
            self.server_capabilities = None
            try:
                clean = await _stop_transport(client, timeout) and clean
            finally:
                self._state = SessionState.STOPPED
        logger.info('typst-lsp stopped')
        return clean

    def _handle_server_exit(self, returncode: int | None) -> None:
        if self._state is not SessionState.RUNNING:
            return
        logger.warning('typst-lsp exited unexpectedly with status %s', returncode)
        client, self._client = self._client, None
        self.server_capabilities = None
        self._state = SessionState.STOPPED
        if client is not None:
            self._collect_exited(client)
        self._forward_message(
            lsp.MessageType.Error,
            f'typst-lsp exited unexpectedly (status {returncode})',
        )

    def _collect_exited(self, client) -> None:
        # Runs as its own task: client.stop() waits on the task that
        # reported the exit, so it cannot be awaited from here.
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug('No running event loop; typst-lsp transport left to the caller')
            return
        self._exit_cleanup = loop.create_task(_stop_transport(client))

    # ------------------------------------------------------------------
    # Channel
    # ------------------------------------------------------------------

    def _require_running(self):
        if self._state is not SessionState.RUNNING or self._client is None:
            raise NoActiveSession(self._state)
        return self._client

    async def send_request(self, method: str, params: Any = None) -> Any:
        client = self._require_running()
        logger.debug('-> request %s', method)
        return await client.protocol.send_request_async(method, params)

    def send_notification(self, method: str, params: Any = None) -> None:
        client = self._require_running()
        logger.debug('-> notification %s', method)
        client.protocol.notify(method, params)

    async def execute_command(self, command: str, *arguments: Any) -> Any:
        """Run a server command via ``workspace/executeCommand``."""
        return await self.send_request(
            lsp.WORKSPACE_EXECUTE_COMMAND,
            lsp.ExecuteCommandParams(command=command, arguments=list(arguments)),
        )

    def did_open(self, uri: str, text: str, language_id: str = 'typst', version: int = 0) -> None:
        self.send_notification(
            lsp.TEXT_DOCUMENT_DID_OPEN,
            lsp.DidOpenTextDocumentParams(text_document=lsp.TextDocumentItem(
                uri=uri, language_id=language_id, version=version, text=text,
            )),
        )

    def did_close(self, uri: str) -> None:
        self.send_notification(
            lsp.TEXT_DOCUMENT_DID_CLOSE,
            lsp.DidCloseTextDocumentParams(text_document=lsp.TextDocumentIdentifier(uri=uri)),
        )

    # ------------------------------------------------------------------
    # Server-to-client
    # ------------------------------------------------------------------

    def configuration_for(self, items: list[lsp.ConfigurationItem]) -> list[Any]:
        """Answer ``workspace/configuration`` with freshly read settings."""
        settings = dict(self._settings_provider()) if self._settings_provider else {}
        return [settings if item.section in (None, SECTION) else None for item in items]

    def _forward_message(self, kind: lsp.MessageType, message: str) -> None:
        if self._message_sink is None:
            logger.info('typst-lsp: %s', message)
            return
        self._message_sink(kind, message)

    def _root_uri(self) -> str | None:
        if not self.workspace_root:
            return None
        return Path(self.workspace_root).resolve().as_uri()


async def _shutdown_handshake(client) -> None:
    await client.shutdown_async(None)
    client.exit(None)


async def _stop_transport(client, timeout: float = DEFAULT_STOP_TIMEOUT) -> bool:
    """Stop the transport, forcing the process down if it does not exit.

    Reports failure instead of raising.
    """
    try:
        await asyncio.wait_for(client.stop(), timeout)
    except asyncio.TimeoutError:
        logger.warning('typst-lsp process did not exit within %gs', timeout)
    except Exception:
        logger.warning('Failed to stop the typst-lsp transport', exc_info=True)
    else:
        return True
    await _terminate_process(getattr(client, '_server', None), timeout)
    return False


async def _terminate_process(process, timeout: float) -> None:
    """SIGTERM *process*, then SIGKILL it if it is still alive after *timeout*."""
    if process is None or process.returncode is not None:
        return
    try:
        logger.warning('Terminating typst-lsp process %s', process.pid)
        process.terminate()
        await asyncio.wait_for(process.wait(), timeout)
        return
    except ProcessLookupError:
        return
    except asyncio.TimeoutError:
        logger.warning('typst-lsp process %s ignored SIGTERM; killing it', process.pid)
    try:
        process.kill()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout)
    except asyncio.TimeoutError:
        logger.error('typst-lsp process %s survived SIGKILL', process.pid)
