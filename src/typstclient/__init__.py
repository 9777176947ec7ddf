"""typstclient – editor-side client for the typst-lsp language server."""
try:
    from importlib.metadata import version, PackageNotFoundError
    try:
        __version__ = version('typst-lsp-client')
    except PackageNotFoundError:
        __version__ = '0.0.0.dev0'
except ImportError:
    __version__ = '0.0.0.dev0'
