"""Shared fakes: an editor host and a pygls client that never spawns a process."""
from __future__ import annotations

import asyncio

import pytest
from lsprotocol import types as lsp

from typstclient.host import ActiveDocument, Disposable


class FakeProtocol:
    def __init__(self, events: list):
        self.events = events
        self.requests: list[tuple[str, object]] = []
        self.notifications: list[tuple[str, object]] = []
        self.failures: dict[str, Exception] = {}

    async def send_request_async(self, method, params=None):
        command = getattr(params, 'command', None)
        self.events.append(('request', command or method))
        self.requests.append((method, params))
        failure = self.failures.get(command or method)
        if failure is not None:
            raise failure
        return None

    def notify(self, method, params=None):
        self.events.append(('notify', method))
        self.notifications.append((method, params))


class FakeProcess:
    """Stands in for the asyncio subprocess pygls keeps as ``_server``."""

    def __init__(self, ignore_terminate: bool = False):
        self.pid = 4242
        self.returncode: int | None = None
        self.ignore_terminate = ignore_terminate
        self.signals: list[str] = []

    def terminate(self):
        self.signals.append('terminate')
        if not self.ignore_terminate:
            self.returncode = -15

    def kill(self):
        self.signals.append('kill')
        self.returncode = -9

    async def wait(self):
        while self.returncode is None:
            await asyncio.sleep(0.001)
        return self.returncode


class FakeClient:
    def __init__(self, events: list):
        self.protocol = FakeProtocol(events)
        self.calls: list[str] = []
        self.start_error: Exception | None = None
        self.hang_on_shutdown = False
        self.hang_on_stop = False
        self.started_with = None
        self.initialize_params = None
        self.stopped = False
        self._server = FakeProcess()

    async def start_io(self, cmd, *args, env=None):
        self.calls.append('start_io')
        if self.start_error is not None:
            raise self.start_error
        self.started_with = (cmd, env)

    async def initialize_async(self, params):
        self.calls.append('initialize')
        self.initialize_params = params
        return lsp.InitializeResult(capabilities=lsp.ServerCapabilities())

    def initialized(self, params):
        self.calls.append('initialized')

    async def shutdown_async(self, params):
        self.calls.append('shutdown')
        if self.hang_on_shutdown:
            await asyncio.sleep(3600)

    def exit(self, params):
        self.calls.append('exit')

    async def stop(self):
        self.calls.append('stop')
        self.stopped = True
        if self.hang_on_stop:
            await asyncio.sleep(3600)


class FakeHost:
    def __init__(self, events: list, extension_path: str, workspace_root: str | None = None):
        self.events = events
        self.extension_path = extension_path
        self.workspace_root = workspace_root
        self.settings: dict = {}
        self.document: ActiveDocument | None = ActiveDocument(uri='file:///work/paper.typ')
        self.existing: set[str] = set()
        self.commands: dict = {}
        self.listeners: list = []
        self.errors: list[str] = []
        self.infos: list[str] = []
        self.configuration_reads = 0

    def get_configuration(self, section):
        self.configuration_reads += 1
        return dict(self.settings)

    def on_did_change_configuration(self, callback):
        self.listeners.append(callback)
        return Disposable(lambda: self.listeners.remove(callback))

    def fire_configuration_change(self):
        for listener in list(self.listeners):
            listener()

    def register_command(self, name, handler):
        self.commands[name] = handler
        return Disposable(lambda: self.commands.pop(name, None))

    def active_document(self):
        return self.document

    async def stat(self, uri):
        self.events.append(('stat', uri))
        if uri not in self.existing:
            raise FileNotFoundError(uri)
        return object()

    async def open_beside(self, uri):
        self.events.append(('open', uri))

    def show_error_message(self, text):
        self.errors.append(text)

    def show_info_message(self, text):
        self.infos.append(text)


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def fake_client(events) -> FakeClient:
    return FakeClient(events)


@pytest.fixture
def host(events, tmp_path) -> FakeHost:
    return FakeHost(events, extension_path=str(tmp_path / 'ext'), workspace_root=str(tmp_path))


@pytest.fixture
def session(fake_client):
    """A stopped ClientSession wired to ``fake_client``."""
    from typstclient.session import ClientSession
    return ClientSession(client_factory=lambda s: fake_client)


@pytest.fixture
def running_session(session):
    asyncio.run(session.start('typst-lsp'))
    return session
