"""Configuration loading, security checks, secrets and target building"""
import os

import pytest
import yaml

from config import (
    ConfigLoader,
    ContextStore,
    build_targets,
    copy_targets,
    resolve_active_backend,
    validate_file_permissions,
)
from models.errors import ConfigurationError
from models.settings import Settings
from services.paths import AppPaths


def write_config(path, data, mode=0o600):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data))
    os.chmod(path, mode)
    return path


BASE = {
    'repository': "/srv/restic/primary",
    'password': "file-secret",
    'directories': ["/etc"],
    'backends': {'b': {'repository': "/srv/restic/b", 'password': "b-secret"}},
    'copy_to_backends': ['b'],
}


@pytest.fixture
def paths(tmp_path):
    return AppPaths(root=False, home=tmp_path / "home")


@pytest.fixture
def loader(paths):
    return ConfigLoader(paths, environ={})


class TestPermissions:

    @pytest.mark.parametrize('mode', [0o600, 0o400])
    def test_secure_modes(self, tmp_path, mode):
        validate_file_permissions(write_config(tmp_path / "config.yaml", BASE, mode))

    @pytest.mark.parametrize('mode', [0o644, 0o640, 0o660])
    def test_insecure_modes(self, tmp_path, mode):
        path = write_config(tmp_path / "config.yaml", BASE, mode)

        with pytest.raises(ConfigurationError, match="insecure permissions"):
            validate_file_permissions(path)

    def test_load_rejects_world_readable(self, tmp_path, loader):
        path = write_config(tmp_path / "config.yaml", BASE, 0o644)

        with pytest.raises(ConfigurationError, match="chmod 600"):
            loader.load(str(path))


class TestLoading:

    def test_defaults(self, tmp_path, loader):
        settings = loader.load(str(write_config(tmp_path / "config.yaml", BASE)))

        assert settings.retention.keep_within == "7d"
        assert settings.retention.keep_yearly == 5
        assert settings.deep_check_interval_days == 30
        assert settings.cross_account_schemes == ["s3:"]
        assert settings.notifications.notify_on_error is True
        assert loader.loaded_path == tmp_path / "config.yaml"

    def test_environment_wins(self, tmp_path, paths):
        loader = ConfigLoader(paths, environ={'RESTIC_PASSWORD': 'env-secret', 'AWS_ACCESS_KEY_ID': 'AKIAENV'})

        settings = loader.load(str(write_config(tmp_path / "config.yaml", BASE)))

        assert settings.password == "env-secret"
        assert settings.aws_access_key_id == "AKIAENV"
        assert settings.backends['b'].password == "b-secret"

    def test_placeholders_from_dotenv(self, tmp_path, loader):
        data = dict(BASE, password="${PRIMARY_PASSWORD}")
        (tmp_path / ".env").write_text("PRIMARY_PASSWORD=from-dotenv\n")

        settings = loader.load(str(write_config(tmp_path / "config.yaml", data)))

        assert settings.password == "from-dotenv"

    def test_placeholders_from_environment(self, tmp_path, paths):
        data = dict(BASE, backends={'b': {'repository': "/srv/restic/b", 'password': "${B_PASSWORD}"}})
        loader = ConfigLoader(paths, environ={'B_PASSWORD': 'from-env'})

        settings = loader.load(str(write_config(tmp_path / "config.yaml", data)))

        assert settings.backends['b'].password == "from-env"

    def test_invalid_yaml(self, tmp_path, loader):
        path = tmp_path / "config.yaml"
        path.write_text("repository: [unclosed\n")
        os.chmod(path, 0o600)

        with pytest.raises(ConfigurationError, match="failed to parse"):
            loader.load(str(path))

    def test_invalid_field_type(self, tmp_path, loader):
        data = dict(BASE, retention={'keep_daily': -1})

        with pytest.raises(ConfigurationError, match="invalid configuration"):
            loader.load(str(write_config(tmp_path / "config.yaml", data)))


class TestValidation:

    def test_repository_required(self):
        with pytest.raises(ConfigurationError, match="repository is required"):
            ConfigLoader.validate(Settings(password="x", directories=["/etc"]))

    def test_password_required(self):
        with pytest.raises(ConfigurationError, match="password is required"):
            ConfigLoader.validate(Settings(repository="/srv/restic", directories=["/etc"]))

    def test_directories_required_for_backup(self):
        settings = Settings(repository="/srv/restic", password="x")

        with pytest.raises(ConfigurationError, match="directory"):
            ConfigLoader.validate(settings)
        ConfigLoader.validate(settings, require_directories=False)

    def test_copy_backend_must_exist(self):
        settings = Settings.model_validate(dict(BASE, copy_to_backends=['b', 'missing']))

        with pytest.raises(ConfigurationError, match="'missing' is not defined"):
            ConfigLoader.validate(settings)

    def test_copy_backend_needs_repository(self):
        settings = Settings.model_validate(dict(BASE, backends={'b': {'password': 'x'}}))

        with pytest.raises(ConfigurationError, match="has no repository"):
            ConfigLoader.validate(settings)

    def test_backend_cannot_reuse_primary_name(self):
        settings = Settings.model_validate(dict(
            BASE, backends={'primary': {'repository': "/srv/restic/mirror", 'password': "x"}},
            copy_to_backends=['primary']))

        with pytest.raises(ConfigurationError, match="'primary' is reserved"):
            ConfigLoader.validate(settings)


class TestResolution:

    def test_explicit_missing(self, loader):
        with pytest.raises(ConfigurationError, match="config file not found"):
            loader.resolve_path("/nonexistent/config.yaml")

    def test_nothing_found(self, loader, monkeypatch):
        monkeypatch.setattr(AppPaths, 'config_candidates', lambda self: [self.user_config_dir / "config.yaml"])

        with pytest.raises(ConfigurationError, match="no configuration file found"):
            loader.resolve_path()

    def test_user_config(self, paths, loader):
        path = write_config(paths.user_config_dir / "config.yaml", BASE)

        assert loader.resolve_path() == path

    def test_context_file_wins(self, tmp_path, paths, loader):
        write_config(paths.user_config_dir / "config.yaml", BASE)
        other = write_config(tmp_path / "other.yaml", BASE)
        ContextStore(paths).set_config_file(str(other))

        assert loader.resolve_path() == other.resolve()


class TestContext:

    def test_round_trip_and_primary_clears(self, paths):
        store = ContextStore(paths)
        store.set_active_backend('b')
        assert store.load().active_backend == 'b'

        store.set_active_backend('primary')
        assert store.load().active_backend == ""

    def test_reset(self, paths):
        store = ContextStore(paths)
        store.set_active_backend('b')
        store.reset()

        assert not store.path.exists()


class TestTargets:

    def test_build_targets(self):
        settings = Settings.model_validate(dict(BASE, cache_dir="/var/cache/restic"))

        primary, backends = build_targets(settings)

        assert primary.is_primary
        assert primary.location == "/srv/restic/primary"
        assert backends['b'].password == "b-secret"
        assert backends['b'].cache_dir == "/var/cache/restic"
        assert copy_targets(settings, backends) == [backends['b']]

    def test_active_backend(self):
        _, backends = build_targets(Settings.model_validate(BASE))

        assert resolve_active_backend("", backends) is None
        assert resolve_active_backend("primary", backends) is None
        assert resolve_active_backend("b", backends).name == "b"
        with pytest.raises(ConfigurationError, match="not found"):
            resolve_active_backend("nope", backends)


def test_write_example(tmp_path, loader):
    path = tmp_path / "new" / "config.yaml"

    loader.write_example(path)

    assert (path.stat().st_mode & 0o777) == 0o600
    assert yaml.safe_load(path.read_text())['retention']['keep_daily'] == 7
    with pytest.raises(ConfigurationError, match="already exists"):
        loader.write_example(path)
