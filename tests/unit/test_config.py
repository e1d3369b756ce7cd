"""Unit tests for deployment configuration loading."""

from unittest.mock import Mock

import pytest

from sitedeploy.config import UNBOUNDED_LEASE_SECONDS, config_from_dict, load_config
from sitedeploy.core.protocols import ConfigLoader

MINIMAL = {
    'repository': 'https://github.com/example/site.git',
    'target': 'deploy@example.org:/usr/share/nginx/html/example.org/',
}


class TestConfigFromDict:
    """Test parsing, defaults and validation."""

    def test_defaults(self):
        config = config_from_dict(MINIMAL)

        assert config.workflow == 'Build and Deploy'
        assert config.branches == ['main']
        assert config.ssh_port == 22
        assert config.builder.command == ['hugo', '--minify']
        assert config.builder.output_dir == 'public'
        assert config.snapshot.full_history is True
        assert config.snapshot.submodules is True
        assert config.credentials.key_env == 'SSH_KEY'
        assert config.credentials.known_hosts_env == 'KNOWN_HOSTS'
        assert config.sync.compress is True

    def test_sections(self):
        config = config_from_dict(dict(
            MINIMAL,
            branches='production',
            builder={'command': 'hugo --minify --gc', 'required_version': '0.117.0', 'env': {'HUGO_ENV': 'production'}},
            serializer={'queue_timeout_seconds': 1800},
        ))

        assert config.branches == ['production']
        assert config.builder.command == ['hugo', '--minify', '--gc']
        assert config.builder.required_version == '0.117.0'
        assert config.builder.env == {'HUGO_ENV': 'production'}
        assert config.serializer.queue_timeout_seconds == 1800

    def test_overrides_win_and_none_is_ignored(self):
        config = config_from_dict(MINIMAL, overrides={'target': '/srv/www', 'repository': None})

        assert config.target == '/srv/www'
        assert config.repository == MINIMAL['repository']

    def test_missing_required_key(self):
        with pytest.raises(ValueError, match="target"):
            config_from_dict({'repository': 'repo'})

    @pytest.mark.parametrize("data,message", [
        (dict(MINIMAL, targets='typo'), "Unknown config key"),
        (dict(MINIMAL, builder={'cmd': ['hugo']}), "Unknown key"),
        (dict(MINIMAL, builder=['hugo']), "must be a mapping"),
        (dict(MINIMAL, builder={'command': []}), "must not be empty"),
        (dict(MINIMAL, ssh_port=70000), "ssh_port"),
        (dict(MINIMAL, serializer={'poll_interval_seconds': 0}), "positive"),
    ])
    def test_invalid(self, data, message):
        with pytest.raises(ValueError, match=message):
            config_from_dict(data)

    def test_lease_covers_stage_budgets(self):
        config = config_from_dict(dict(
            MINIMAL,
            snapshot={'timeout_seconds': 100},
            builder={'timeout_seconds': 200},
            sync={'timeout_seconds': 300},
        ))

        assert config.lease_seconds >= 7 * 100 + 200 + 300

    def test_unbounded_stage_gets_default_lease(self):
        config = config_from_dict(dict(MINIMAL, builder={'timeout_seconds': None}))

        assert config.lease_seconds == UNBOUNDED_LEASE_SECONDS


class TestLoadConfig:
    def test_loads_through_loader(self):
        loader = Mock(spec=ConfigLoader)
        loader.load_yaml.return_value = dict(MINIMAL, workflow='Deploy')

        config = load_config(loader, 'deploy.yaml')

        loader.load_yaml.assert_called_once_with('deploy.yaml')
        assert config.workflow == 'Deploy'

    def test_missing_file_raises_by_default(self):
        loader = Mock(spec=ConfigLoader)
        loader.load_yaml.side_effect = FileNotFoundError('sitedeploy.yaml')

        with pytest.raises(FileNotFoundError):
            load_config(loader, overrides=MINIMAL)

    def test_missing_file_allowed_when_flags_supply_keys(self):
        loader = Mock(spec=ConfigLoader)
        loader.load_yaml.side_effect = FileNotFoundError('sitedeploy.yaml')

        config = load_config(loader, overrides=MINIMAL, missing_ok=True)

        assert config.target == MINIMAL['target']
