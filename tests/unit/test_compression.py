"""
Unit tests for artifact naming and compression (dumpwarden/backup/compression.py).
"""

import gzip
import os
import shutil
from datetime import datetime

import pytest

from dumpwarden.backup.compression import (
    sanitize_machine_name,
    generate_artifact_filename,
    timestamp_token,
    compress_artifact,
    get_artifact_size,
)
from dumpwarden.backup.errors import CompressionError


class TestSanitizeMachineName:
    """Test machine name sanitization for file names."""

    @pytest.mark.parametrize('name,expected', [
        ('Prod DB #1', 'Prod_DB_1'),
        ('web-01_primary', 'web-01_primary'),
        ('  spaced  out  ', 'spaced_out'),
        ('***', 'server'),
        ('', 'server'),
        ('café', 'caf'),
    ])
    def test_sanitize(self, name, expected):
        assert sanitize_machine_name(name) == expected

    def test_no_repeated_or_edge_underscores(self):
        result = sanitize_machine_name('__a!!!b__')
        assert result == 'a_b'


class TestArtifactFilename:
    """Test artifact file name generation."""

    def test_format(self):
        name = generate_artifact_filename('Prod DB #1', 'shop', '20240115_020000')
        assert name == 'backup_Prod_DB_1_shop_20240115_020000.sql'

    def test_empty_machine_name_uses_server(self):
        assert generate_artifact_filename('', 'crm', '20240115_020000') == 'backup_server_crm_20240115_020000.sql'


class TestTimestampToken:
    """Test timestamp tokens."""

    def test_format(self):
        token = timestamp_token(datetime(2031, 3, 4, 5, 6, 7))
        assert len(token) == 15
        assert token[8] == '_'

    def test_same_second_tokens_are_distinct(self):
        moment = datetime(2032, 1, 1, 12, 0, 0)
        first = timestamp_token(moment)
        second = timestamp_token(moment)

        assert first != second
        assert second > first

    def test_tokens_never_go_backwards(self):
        later = timestamp_token(datetime(2033, 6, 1, 0, 0, 0))
        earlier_clock = timestamp_token(datetime(2033, 5, 1, 0, 0, 0))
        assert earlier_clock > later


class TestCompressArtifact:
    """Test compression with the external gzip binary."""

    @pytest.mark.skipif(shutil.which('gzip') is None, reason='gzip not installed')
    def test_compress_replaces_raw_file(self, tmp_path):
        raw = tmp_path / 'backup_local_shop_20240115_020000.sql'
        raw.write_bytes(b'CREATE TABLE t (id INT);\n' * 100)

        final_path = compress_artifact(str(raw))

        assert final_path == f"{raw}.gz"
        assert not raw.exists()
        with gzip.open(final_path, 'rb') as f:
            assert f.read() == b'CREATE TABLE t (id INT);\n' * 100

    def test_missing_compressor_keeps_raw_file(self, tmp_path):
        raw = tmp_path / 'dump.sql'
        raw.write_bytes(b'data')

        final_path = compress_artifact(str(raw), compressor='no-such-compressor-binary')

        assert final_path == str(raw)
        assert raw.exists()

    @pytest.mark.skipif(shutil.which('false') is None, reason='false not available')
    def test_failing_compressor_raises_and_keeps_raw(self, tmp_path):
        raw = tmp_path / 'dump.sql'
        raw.write_bytes(b'data')

        with pytest.raises(CompressionError):
            compress_artifact(str(raw), compressor='false')

        assert raw.exists()
        assert not os.path.exists(f"{raw}.gz")


def test_get_artifact_size(tmp_path):
    artifact = tmp_path / 'dump.sql.gz'
    artifact.write_bytes(b'x' * 1234)
    assert get_artifact_size(str(artifact)) == 1234
