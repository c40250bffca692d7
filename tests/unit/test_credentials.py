"""
Unit tests for credential staging (backupdb/backup/credentials.py).
"""

import stat

import pytest

from backupdb.backup.credentials import CredentialRegistry, CredentialStager


class TestCredentialStager:
    """Test staging and unstaging of option files."""

    def test_stage_creates_private_option_file(self, credential_dir):
        stager = CredentialStager()

        artifact = stager.stage('p@ss word', username='backup')

        assert artifact.path.parent == credential_dir
        assert artifact.username == 'backup'
        assert stat.S_IMODE(artifact.path.stat().st_mode) == 0o600
        assert artifact.path.read_text() == '[client]\npassword="p@ss word"\n'

    def test_stage_escapes_quotes_and_backslashes(self, credential_dir):
        artifact = CredentialStager().stage('a"b\\c')

        assert 'password="a\\"b\\\\c"' in artifact.path.read_text()

    def test_unstage_removes_file(self, credential_dir):
        stager = CredentialStager()
        artifact = stager.stage('secret')

        stager.unstage()

        assert not artifact.path.exists()
        assert stager.artifact is None

    def test_restage_replaces_previous_file(self, credential_dir):
        """A stager never owns more than one live file."""
        stager = CredentialStager()
        first = stager.stage('one')
        second = stager.stage('two')

        assert not first.path.exists()
        assert second.path.exists()
        assert list(credential_dir.iterdir()) == [second.path]

    def test_staged_context_removes_file_on_error(self, credential_dir):
        stager = CredentialStager()

        with pytest.raises(RuntimeError):
            with stager.staged('secret') as artifact:
                assert artifact.path.exists()
                raise RuntimeError("dump failed")

        assert list(credential_dir.iterdir()) == []

    def test_unstage_without_stage_is_noop(self):
        CredentialStager().unstage()


class TestCredentialRegistry:
    """Test run-scoped credential tracking."""

    def test_registry_tracks_live_files(self, credential_dir):
        registry = CredentialRegistry()
        stager = CredentialStager(registry)

        stager.stage('secret')
        assert len(registry) == 1

        stager.unstage()
        assert len(registry) == 0

    def test_purge_removes_abandoned_files(self, credential_dir):
        """Files left behind by interrupted tasks are removed by the finalizer."""
        registry = CredentialRegistry()
        CredentialStager(registry).stage('one')
        CredentialStager(registry).stage('two')

        removed = registry.purge()

        assert removed == 2
        assert list(credential_dir.iterdir()) == []
        assert len(registry) == 0

    def test_purge_tolerates_already_removed_files(self, credential_dir):
        registry = CredentialRegistry()
        artifact = CredentialStager(registry).stage('secret')
        artifact.path.unlink()

        assert registry.purge() == 0
