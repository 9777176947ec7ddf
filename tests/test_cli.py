"""Tests for typstclient.cli — argument handling and the headless host."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from typstclient.cli import HeadlessHost, _build_parser, main, uri_to_path


class TestParser:
    def test_defaults(self):
        args = _build_parser().parse_args(['locate'])
        assert args.command == 'locate'
        assert args.log_level == 'WARNING'
        assert args.server_path is None

    def test_rejects_unknown_command(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(['compile'])


class TestMain:
    def test_version(self, capsys):
        assert main(['--version']) == 0
        assert capsys.readouterr().out.startswith('typst-lsp-client ')

    def test_locate_with_valid_override(self, capsys, tmp_path):
        code = main(['--workspace', str(tmp_path), '--server-path', sys.executable, 'locate'])
        assert code == 0
        assert capsys.readouterr().out.strip() == sys.executable

    def test_locate_with_broken_override(self, capsys, tmp_path):
        missing = str(tmp_path / 'missing-typst-lsp')
        code = main(['--workspace', str(tmp_path), '--server-path', missing, 'locate'])
        assert code == 1
        err = capsys.readouterr().err
        assert '`typst-lsp.serverPath`' in err
        assert missing in err

    def test_command_requires_file(self):
        with pytest.raises(SystemExit) as info:
            main(['export'])
        assert info.value.code == 2

    def test_command_with_missing_file(self, tmp_path):
        with pytest.raises(SystemExit):
            main(['show', str(tmp_path / 'nope.typ')])

    def test_activation_failure_exit_status(self, capsys, tmp_path):
        doc = tmp_path / 'doc.typ'
        doc.write_text('= Hello\n')
        missing = str(tmp_path / 'missing-typst-lsp')
        code = main(['--workspace', str(tmp_path), '--server-path', missing, 'export', str(doc)])
        assert code == 1
        assert 'Failed to activate typst-lsp' in capsys.readouterr().err

    def test_document_that_is_not_utf8(self, capsys, tmp_path):
        doc = tmp_path / 'bad.typ'
        doc.write_bytes(b'= caf\xe9\n')
        missing = str(tmp_path / 'missing-typst-lsp')
        code = main(['--workspace', str(tmp_path), '--server-path', missing, 'export', str(doc)])
        assert code == 1
        err = capsys.readouterr().err
        assert 'is not valid UTF-8' in err
        # The document is read before any server is looked for.
        assert 'Failed to activate' not in err


class TestHeadlessHost:
    def test_active_document_uri(self, tmp_path):
        doc = tmp_path / 'doc.typ'
        doc.write_text('')
        host = HeadlessHost(document=str(doc))
        assert host.active_document().uri == doc.resolve().as_uri()
        assert uri_to_path(host.active_document().uri) == doc.resolve()

    def test_no_document(self):
        assert HeadlessHost().active_document() is None

    def test_stat_missing_raises_file_not_found(self, tmp_path):
        host = HeadlessHost()
        with pytest.raises(FileNotFoundError):
            asyncio.run(host.stat((tmp_path / 'doc.pdf').as_uri()))

    def test_stat_existing(self, tmp_path):
        pdf = tmp_path / 'doc.pdf'
        pdf.write_bytes(b'%PDF-1.7')
        assert asyncio.run(HeadlessHost().stat(pdf.as_uri())).st_size == 8

    def test_configuration_listeners(self):
        host = HeadlessHost(settings={'exportPdf': 'onSave'})
        seen = []
        subscription = host.on_did_change_configuration(
            lambda: seen.append(host.get_configuration('typst-lsp')['exportPdf'])
        )
        host.update_configuration(exportPdf='never')
        subscription.dispose()
        host.update_configuration(exportPdf='onType')
        assert seen == ['never']

    def test_duplicate_command_registration_rejected(self):
        host = HeadlessHost()

        async def handler():
            return None

        host.register_command('typst-lsp.showPdf', handler)
        with pytest.raises(ValueError):
            host.register_command('typst-lsp.showPdf', handler)

    def test_default_extension_path_is_package_dir(self):
        import typstclient
        assert Path(HeadlessHost().extension_path) == Path(typstclient.__file__).parent
