"""Unit tests for SynchronizerFactory target parsing and routing."""

import pytest

from sitedeploy.deploy.base import LocalTarget, RemoteTarget
from sitedeploy.deploy.factory import SynchronizerFactory
from sitedeploy.deploy.local_synchronizer import LocalSynchronizer
from sitedeploy.deploy.rsync_synchronizer import RsyncSynchronizer


class TestTargetParsing:
    """Test target string formats."""

    def test_scp_style(self):
        target = SynchronizerFactory.from_target_string(
            "deploy@example.org:/usr/share/nginx/html/example.org/"
        )

        assert target == RemoteTarget(
            user='deploy', host='example.org', path='/usr/share/nginx/html/example.org/', port=22
        )
        assert target.is_remote

    def test_scp_style_uses_default_port(self):
        target = SynchronizerFactory.from_target_string("deploy@host:/var/www", default_port=2200)

        assert target.port == 2200

    def test_ipv6(self):
        target = SynchronizerFactory.from_target_string("deploy@[fe80::1]:/var/www")

        assert target.host == 'fe80::1'
        assert target.rsync_destination == 'deploy@[fe80::1]:/var/www/'

    def test_ssh_url_with_port(self):
        target = SynchronizerFactory.from_target_string("ssh://deploy@example.org:2222/var/www")

        assert target == RemoteTarget(user='deploy', host='example.org', path='/var/www', port=2222)

    def test_file_url(self):
        target = SynchronizerFactory.from_target_string("file:///srv/www")

        assert target == LocalTarget(path='/srv/www')
        assert not target.is_remote

    def test_absolute_path(self):
        assert SynchronizerFactory.from_target_string("/srv/www") == LocalTarget(path='/srv/www')

    def test_absolute_path_containing_at_sign(self):
        target = SynchronizerFactory.from_target_string("/srv/www/a@b:c")

        assert target == LocalTarget(path='/srv/www/a@b:c')

    @pytest.mark.parametrize("bad", [
        "",
        "example.org:/var/www",
        "deploy@example.org",
        "deploy@example.org:relative/path",
        "deploy@[fe80::1/var/www",
        "@example.org:/var/www",
        "deploy@example.org:/var/www/../etc",
        "relative/dir",
        "ssh://example.org/var/www",
    ])
    def test_rejects_malformed(self, bad):
        with pytest.raises(ValueError):
            SynchronizerFactory.from_target_string(bad)


class TestSynchronizerRouting:
    """Test create_synchronizer routing."""

    def test_remote_target_gets_rsync(self):
        sync = SynchronizerFactory.create_synchronizer(
            RemoteTarget(user='deploy', host='h', path='/var/www'),
            timeout_seconds=30,
            compress=False
        )

        assert isinstance(sync, RsyncSynchronizer)
        assert sync.requires_credential
        assert sync.timeout_seconds == 30
        assert sync.compress is False

    def test_local_target_gets_local(self):
        sync = SynchronizerFactory.create_synchronizer(LocalTarget(path='/srv/www'))

        assert isinstance(sync, LocalSynchronizer)
        assert not sync.requires_credential
