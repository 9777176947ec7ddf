"""
Editor host capability surface.

The client core never talks to an editor directly.  Settings, command
registration, the focused document, file checks and user messages all go
through an object satisfying :class:`Host`.  Editor integrations (and the
headless CLI) provide one.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Protocol


@dataclass(frozen=True)
class ActiveDocument:
    uri: str
    language_id: str = 'typst'


class Disposable:
    """Wraps a release callback; ``dispose()`` runs it at most once."""

    def __init__(self, callback: Callable[[], None] | None = None):
        self._callback = callback

    def dispose(self) -> None:
        callback, self._callback = self._callback, None
        if callback is not None:
            callback()


class CompositeDisposable(Disposable):
    """Collects registrations and releases them in reverse order."""

    def __init__(self):
        super().__init__()
        self._items: list[Disposable] = []

    def add(self, *items: Disposable) -> None:
        self._items.extend(items)

    def __len__(self) -> int:
        return len(self._items)

    def dispose(self) -> None:
        while self._items:
            self._items.pop().dispose()


CommandHandler = Callable[[], Awaitable[Any]]


class Host(Protocol):
    extension_path: str
    workspace_root: str | None

    def get_configuration(self, section: str) -> Mapping[str, Any]: ...

    def on_did_change_configuration(self, callback: Callable[[], Any]) -> Disposable: ...

    def register_command(self, name: str, handler: CommandHandler) -> Disposable: ...

    def active_document(self) -> ActiveDocument | None: ...

    async def stat(self, uri: str) -> Any:
        """Raise :class:`FileNotFoundError` if *uri* does not exist."""
        ...

    async def open_beside(self, uri: str) -> None: ...

    def show_error_message(self, text: str) -> None: ...

    def show_info_message(self, text: str) -> None: ...
